"""
Board storage backend (single JSON document).

metadata.json is the only shared mutable resource. Every read-modify-write
cycle must hold BoardStore.lock so concurrent requests cannot overwrite each
other's changes.
"""
import contextlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import StorageError
from .schema import DEFAULT_COLUMNS, BoardData, Column, default_columns, is_board_document

logger = logging.getLogger(__name__)

META_FILENAME = "metadata.json"
TASKS_DIRNAME = "tasks"


def reconcile_column_skeleton(
    loaded: List[Column],
    skeleton: Optional[List[Tuple[str, str]]] = None,
) -> List[Column]:
    """
    Merge stored columns with the configured column skeleton.

    Skeleton order and titles win. A skeleton column keeps the stored
    task_ids when the stored document has it, otherwise starts empty.
    Stored columns unknown to the skeleton are appended so none of their
    tasks disappear from the board.
    """
    by_id = {c.id: c for c in loaded}
    merged = []
    for col in default_columns(skeleton or DEFAULT_COLUMNS):
        stored = by_id.pop(col.id, None)
        if stored is not None:
            col.task_ids = list(stored.task_ids)
        merged.append(col)
    merged.extend(c for c in loaded if c.id in by_id)
    return merged


class BoardStore:
    """JSON-file store for the whole board."""

    def __init__(self, storage_dir: Union[str, Path], skeleton: Optional[List[Tuple[str, str]]] = None):
        self.storage_dir = Path(storage_dir)
        self.meta_path = self.storage_dir / META_FILENAME
        self.tasks_dir = self.storage_dir / TASKS_DIRNAME
        self.skeleton = list(skeleton or DEFAULT_COLUMNS)
        # Re-entrant so an operation holding it can call load()/save()
        self.lock = threading.RLock()

    def default_board(self) -> BoardData:
        return BoardData(tasks={}, columns=default_columns(self.skeleton))

    def reconcile_column_skeleton(self, loaded: List[Column]) -> List[Column]:
        return reconcile_column_skeleton(loaded, self.skeleton)

    def load(self) -> BoardData:
        """
        Read the board.

        An absent or structurally invalid document yields the default board
        (configured columns, no tasks). Other read failures raise StorageError.
        """
        with self.lock:
            try:
                raw = self.meta_path.read_bytes()
            except FileNotFoundError:
                return self.default_board()
            except OSError as e:
                raise StorageError(f"Cannot read {self.meta_path}: {e}") from e

            try:
                data = json.loads(raw.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Invalid JSON in {self.meta_path}, using default board: {e}")
                return self.default_board()

            if not is_board_document(data):
                logger.warning(
                    f"{self.meta_path} is missing 'tasks' or 'columns', using default board"
                )
                return self.default_board()

            board = BoardData.from_dict(data)
            board.columns = self.reconcile_column_skeleton(board.columns)
            return board

    def save(self, board: Union[BoardData, Dict[str, Any]]) -> None:
        """
        Write the whole document.

        Written to a temp file and renamed over metadata.json, so readers
        never see a partial document. Raises StorageError on failure.
        """
        data = board.to_dict() if isinstance(board, BoardData) else board
        payload = json.dumps(data, indent=2, ensure_ascii=False)
        with self.lock:
            tmp_path = self.meta_path.with_suffix(".json.tmp")
            try:
                self.storage_dir.mkdir(parents=True, exist_ok=True)
                tmp_path.write_text(payload, encoding="utf-8")
                os.replace(tmp_path, self.meta_path)
            except OSError as e:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
                raise StorageError(f"Cannot write {self.meta_path}: {e}") from e
