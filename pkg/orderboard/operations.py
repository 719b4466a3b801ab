"""
Board mutations.

Each mutation is a read-modify-write of the whole metadata document:
load the board, apply file side effects in the task directory, update the
task's manifest, save the board. The store lock is held for the full cycle,
so concurrent requests are serialized instead of overwriting each other.

There is no rollback across files and metadata: a write failure part-way
leaves the files already written on disk and the metadata untouched.
"""
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings
from .errors import NotFound, ValidationError
from .files import FileArea, Upload, upload_target
from .sanitizer import archive_label, sanitize_relative_path
from .schema import BoardData, Task, is_board_document
from .search import RelayRanker, TaskSearch
from .store import BoardStore

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    """Updated task plus any upload paths that were rejected."""
    task: Task
    skipped: List[str] = field(default_factory=list)


def make_task_id(existing, now_ms: Optional[int] = None) -> str:
    """Millisecond timestamp id, bumped until it is unused. Always digits only."""
    candidate = now_ms if now_ms is not None else int(time.time() * 1000)
    while str(candidate) in existing:
        candidate += 1
    return str(candidate)


def apply_folder_name(uploads: List[Upload], folder_name: Optional[str]) -> List[Upload]:
    """Nest uploads under folder_name unless their relative path already starts with it."""
    folder = (folder_name or "").strip().replace("\\", "/").strip("/")
    if not sanitize_relative_path(folder):
        return uploads
    nested = []
    for u in uploads:
        rel = (u.relative_path or u.filename or "").replace("\\", "/")
        if rel != folder and not rel.startswith(folder + "/"):
            rel = f"{folder}/{rel}"
        nested.append(replace(u, relative_path=rel))
    return nested


class BoardService:
    """Coordinates the board store and task file areas."""

    def __init__(
        self,
        store: BoardStore,
        files: FileArea,
        start_column: str = "create",
        manifest_strategy: str = "incremental",
        searcher: Optional[TaskSearch] = None,
    ):
        self.store = store
        self.files = files
        self.start_column = start_column
        self.manifest_strategy = manifest_strategy
        self.searcher = searcher or TaskSearch(ranker=None)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BoardService":
        store = BoardStore(settings.storage_path, skeleton=settings.column_skeleton)
        ranker = None
        if settings.search_relay_url:
            ranker = RelayRanker(settings.search_relay_url, timeout=settings.search_timeout)
        return cls(
            store=store,
            files=FileArea(store.tasks_dir),
            start_column=settings.start_column,
            manifest_strategy=settings.manifest_strategy,
            searcher=TaskSearch(
                ranker,
                timeout=settings.search_timeout,
                max_results=settings.search_max_results,
            ),
        )

    # ── Reads ────────────────────────────────────────────────────────────

    def get_board(self) -> BoardData:
        return self.store.load()

    def get_task(self, task_id: str) -> Task:
        task = self.store.load().tasks.get(task_id)
        if task is None:
            raise NotFound(f"Task not found: {task_id}")
        return task

    def search(self, query: str) -> List[Dict[str, Any]]:
        return self.searcher.search(query, self.store.load())

    def archive(self, task_id: str) -> Tuple[str, bytes]:
        """Return (download filename, zip bytes) for a task's files."""
        task = self.get_task(task_id)
        label = archive_label(task.customer_name, task.representative, fallback=task.id)
        return f"{label}.zip", self.files.build_archive(label, task.id)

    # ── Mutations ────────────────────────────────────────────────────────

    def create_task(
        self,
        customer_name: str,
        representative: str,
        order_date: str,
        notes: str = "",
        uploads: Optional[List[Upload]] = None,
        folder_name: Optional[str] = None,
    ) -> MutationResult:
        """Create a task in the start column with at least one file."""
        customer_name = (customer_name or "").strip()
        representative = (representative or "").strip()
        order_date = (order_date or "").strip()
        notes = (notes or "").strip()
        if not customer_name or not representative or not order_date or not uploads:
            raise ValidationError("Missing required fields")

        uploads = apply_folder_name(uploads, folder_name)
        if all(upload_target(u) is None for u in uploads):
            raise ValidationError("No valid files provided")

        with self.store.lock:
            board = self.store.load()
            existing = set(board.tasks) | self._task_dirs_on_disk()
            task_id = make_task_id(existing)

            written = self.files.write_files(task_id, uploads)
            task = Task(
                id=task_id,
                column_id=self.start_column,
                customer_name=customer_name,
                representative=representative,
                order_date=order_date,
                notes=notes,
            )
            task.append_files(written.written)
            self._sync_manifest(task)

            board.tasks[task_id] = task
            column = board.get_column(self.start_column) or board.columns[0]
            board.place_task(task_id, column.id)
            self.store.save(board)

        logger.info(f"Task {task_id} created for {customer_name!r} with {len(task.files)} file(s)")
        return MutationResult(task=task, skipped=written.skipped)

    def upload_files(
        self,
        task_id: str,
        uploads: List[Upload],
        folder_name: Optional[str] = None,
    ) -> MutationResult:
        """Add files to a task, appending them to the manifest in upload order."""
        if not uploads:
            raise ValidationError("No files provided")
        uploads = apply_folder_name(uploads, folder_name)

        with self.store.lock:
            board = self.store.load()
            task = self._require_task(board, task_id)

            written = self.files.write_files(task_id, uploads)
            if not written.written:
                raise ValidationError("No valid files provided")
            task.append_files(written.written)
            self._sync_manifest(task)
            self.store.save(board)

        logger.info(f"Task {task_id}: uploaded {written.written}")
        return MutationResult(task=task, skipped=written.skipped)

    def replace_file(self, task_id: str, old_filename: str, upload: Optional[Upload]) -> Task:
        """Swap one file for another, keeping its position in the manifest."""
        if not old_filename or upload is None:
            raise ValidationError("Missing newFile or oldFilename")

        with self.store.lock:
            board = self.store.load()
            task = self._require_task(board, task_id)

            old_rel = self.files.relative_path(task_id, old_filename)
            new_name = self.files.replace_file(task_id, old_rel, upload.filename, upload.data)
            task.replace_file_entry(old_rel, new_name)
            self._sync_manifest(task)
            self.store.save(board)

        logger.info(f"Task {task_id}: replaced {old_filename!r} with {new_name!r}")
        return task

    def delete_file(self, task_id: str, filename: str) -> Task:
        """Remove a file from disk and manifest. Missing either way is not an error."""
        if not filename:
            raise ValidationError("Filename is required")

        with self.store.lock:
            board = self.store.load()
            task = self._require_task(board, task_id)

            rel = self.files.relative_path(task_id, filename)
            self.files.delete_file(task_id, rel)
            task.remove_file_entry(rel)
            self._sync_manifest(task)
            self.store.save(board)

        logger.info(f"Task {task_id}: deleted {filename!r}")
        return task

    def move_task(self, task_id: str, column_id: str) -> Task:
        """Move a task to the end of another column. Same column is a no-op."""
        if not column_id:
            raise ValidationError("columnId is required")

        with self.store.lock:
            board = self.store.load()
            task = self._require_task(board, task_id)
            if board.get_column(column_id) is None:
                raise ValidationError(f"Unknown column: {column_id}")
            if task.column_id == column_id:
                return task

            source = task.column_id
            board.place_task(task_id, column_id)
            self.store.save(board)

        logger.info(f"Task {task_id} moved {source} → {column_id}")
        return task

    def replace_board(self, payload: Any) -> None:
        """Persist a whole board document as sent (drag-and-drop saves)."""
        if not is_board_document(payload):
            raise ValidationError("Invalid payload")
        with self.store.lock:
            self.store.save(payload)
        logger.info(
            f"Board replaced: {len(payload['tasks'])} task(s), {len(payload['columns'])} column(s)"
        )

    def reconcile_files(self, task_id: str) -> Task:
        """Rebuild a task's manifest from its directory, keeping surviving order."""
        with self.store.lock:
            board = self.store.load()
            task = self._require_task(board, task_id)
            before = list(task.files)
            task.reconcile_files(self.files.list_files(task_id))
            if task.files != before:
                self.store.save(board)
                logger.info(f"Task {task_id}: manifest reconciled {before} → {task.files}")
        return task

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _require_task(board: BoardData, task_id: str) -> Task:
        task = board.tasks.get(task_id)
        if task is None:
            raise NotFound("Task not found in metadata")
        return task

    def _sync_manifest(self, task: Task) -> None:
        if self.manifest_strategy == "relist":
            task.reconcile_files(self.files.list_files(task.id))

    def _task_dirs_on_disk(self) -> set:
        root = self.files.tasks_root
        if not root.is_dir():
            return set()
        return {p.name for p in root.iterdir() if p.is_dir()}
