"""
Per-task file areas.

Each task owns storage/tasks/<task_id>/. Everything here is scoped to one
task directory and never touches metadata.json; keeping the manifest in
step is the caller's job (see operations.py).
"""
import io
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .errors import NotFound, StorageError, ValidationError
from .sanitizer import sanitize_filename, sanitize_relative_path

logger = logging.getLogger(__name__)

TASK_ID_RE = re.compile(r"[A-Za-z0-9_-]+")


@dataclass
class Upload:
    """One uploaded file as handed over by the transport layer."""
    filename: str
    data: bytes
    relative_path: Optional[str] = None   # set for folder uploads


@dataclass
class WriteResult:
    """Sanitized paths written, plus raw names rejected by sanitization."""
    written: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def safe_path(base: Path, relative: str) -> Path:
    """
    Resolve a path and assert it stays within base.
    Prevents path traversal (../../etc/passwd) through user-supplied names.
    """
    base_resolved = base.resolve()
    resolved = (base_resolved / relative).resolve()
    if resolved == base_resolved or base_resolved not in resolved.parents:
        raise ValidationError(f"Path escapes task directory: {relative}")
    return resolved


def upload_target(upload: Upload) -> Optional[str]:
    """Sanitized relative path for an upload, or None if it must be skipped."""
    if upload.relative_path:
        return sanitize_relative_path(upload.relative_path)
    return sanitize_filename(upload.filename)


class FileArea:
    """Filesystem side effects for task directories under one root."""

    def __init__(self, tasks_root: Union[str, Path]):
        self.tasks_root = Path(tasks_root)

    def task_dir(self, task_id: str) -> Path:
        if not task_id or not TASK_ID_RE.fullmatch(task_id):
            raise ValidationError(f"Invalid task id: {task_id!r}")
        return self.tasks_root / task_id

    def relative_path(self, task_id: str, path: str) -> str:
        """Canonical manifest form of a caller-supplied path (./a.txt, a.txt/ -> a.txt)."""
        task_dir = self.task_dir(task_id)
        return safe_path(task_dir, path).relative_to(task_dir.resolve()).as_posix()

    def write_files(self, task_id: str, uploads: List[Upload]) -> WriteResult:
        """
        Write uploads into the task directory, creating folders as needed.

        Files are written one after another. Uploads whose path fails
        sanitization are reported in skipped and not written. A write error
        aborts the loop with StorageError; files already written stay.
        """
        task_dir = self.task_dir(task_id)
        result = WriteResult()
        for upload in uploads:
            rel = upload_target(upload)
            if rel is None:
                result.skipped.append(upload.relative_path or upload.filename)
                continue
            self._write(task_dir, rel, upload.data)
            result.written.append(rel)

        if result.skipped:
            logger.warning(f"Task {task_id}: rejected unsafe upload paths {result.skipped}")
        return result

    def replace_file(self, task_id: str, old_path: str, new_name: str, data: bytes) -> str:
        """
        Remove old_path (absent is fine) and write new_name next to it.

        Returns the relative path of the new file.
        """
        task_dir = self.task_dir(task_id)
        old_file = safe_path(task_dir, old_path)
        folder = old_file.parent.relative_to(task_dir.resolve()).as_posix()
        name = sanitize_filename(new_name)
        new_rel = name if folder == "." else f"{folder}/{name}"

        try:
            old_file.unlink()
        except FileNotFoundError:
            logger.warning(
                f"Task {task_id}: file to replace not found, adding new file instead: {old_path}"
            )
        except OSError as e:
            raise StorageError(f"Cannot remove {old_path}: {e}") from e

        self._write(task_dir, new_rel, data)
        return new_rel

    def delete_file(self, task_id: str, path: str) -> bool:
        """
        Delete one file. A missing file is not an error.

        Returns True if a file was removed. Folders emptied by the delete
        are pruned up to the task directory.
        """
        task_dir = self.task_dir(task_id)
        target = safe_path(task_dir, path)
        try:
            target.unlink()
        except FileNotFoundError:
            logger.warning(f"Task {task_id}: file to delete not found on disk: {path}")
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete {path}: {e}") from e
        self._prune_empty_dirs(target.parent, task_dir.resolve())
        return True

    def list_files(self, task_id: str) -> List[str]:
        """Recursive listing of the task directory as sorted POSIX relative paths."""
        task_dir = self.task_dir(task_id)
        if not task_dir.is_dir():
            return []
        try:
            return sorted(
                p.relative_to(task_dir).as_posix() for p in task_dir.rglob("*") if p.is_file()
            )
        except OSError as e:
            raise StorageError(f"Cannot list {task_dir}: {e}") from e

    def build_archive(self, root_label: str, task_id: str) -> bytes:
        """
        Zip every file of a task under a single root folder.

        Entries are named <root_label>/<relative path>, DEFLATE level 9.
        Raises NotFound if the directory is missing or holds no files.
        """
        task_dir = self.task_dir(task_id)
        if not task_dir.is_dir():
            raise NotFound(f"Task folder not found: {task_id}")
        files = self.list_files(task_id)
        if not files:
            raise NotFound(f"No files to zip for task {task_id}")

        buf = io.BytesIO()
        try:
            with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                for rel in files:
                    zf.write(task_dir / rel, arcname=f"{root_label}/{rel}")
        except OSError as e:
            raise StorageError(f"Cannot archive task {task_id}: {e}") from e
        return buf.getvalue()

    def _write(self, task_dir: Path, rel: str, data: bytes) -> None:
        target = safe_path(task_dir, rel)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Cannot write {rel}: {e}") from e

    @staticmethod
    def _prune_empty_dirs(folder: Path, stop: Path) -> None:
        while folder != stop and stop in folder.parents:
            try:
                folder.rmdir()
            except OSError:
                break
            folder = folder.parent
