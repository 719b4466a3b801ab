"""
Order board schema.

A board is one JSON document:

    { "tasks": { "<id>": Task, ... }, "columns": [Column, ...] }

Tasks live in exactly one column; Task.column_id and the owning column's
task_ids must always agree. Keys are camelCase on disk for compatibility
with the existing metadata.json files.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

START_COLUMN_ID = "create"

# (id, title) pairs for the fixed workflow columns
DEFAULT_COLUMNS: List[Tuple[str, str]] = [
    ("create", "建单"),
    ("quote", "报价"),
    ("send", "发出"),
    ("archive", "存档"),
    ("sheet", "制单"),
    ("approval", "审批"),
    ("production", "投产"),
]

UNKNOWN_COLUMN_TITLE = "Unknown Column"


def task_folder_path(task_id: str) -> str:
    """Storage-relative folder of a task, e.g. tasks/1700000000000."""
    return f"tasks/{task_id}"


@dataclass
class Task:
    """One customer order and its file manifest."""

    id: str
    column_id: str
    customer_name: str = ""
    representative: str = ""
    order_date: str = ""
    notes: str = ""
    # Ordered, unique relative paths; order is the display order
    files: List[str] = field(default_factory=list)

    @property
    def folder_path(self) -> str:
        return task_folder_path(self.id)

    # ── Manifest edits ───────────────────────────────────────────────────

    def append_files(self, names: Iterable[str]) -> None:
        """Append names not already in the manifest, keeping upload order."""
        for name in names:
            if name not in self.files:
                self.files.append(name)

    def replace_file_entry(self, old: str, new: str) -> None:
        """Replace old with new in place, or append new if old is unknown."""
        if old not in self.files:
            self.append_files([new])
            return
        idx = self.files.index(old)
        self.files[idx] = new
        # The new name may already have been listed elsewhere
        self.files = [f for i, f in enumerate(self.files) if f != new or i == idx]

    def remove_file_entry(self, name: str) -> None:
        self.files = [f for f in self.files if f != name]

    def reconcile_files(self, on_disk: Iterable[str]) -> None:
        """
        Rebuild the manifest from a directory listing.

        Entries still present keep their position; files only found on disk
        are appended in sorted order.
        """
        present = set(on_disk)
        kept = [f for f in self.files if f in present]
        extra = sorted(present - set(kept))
        self.files = kept + extra

    # ── Serialization ────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "columnId": self.column_id,
            "customerName": self.customer_name,
            "representative": self.representative,
            "orderDate": self.order_date,
            "notes": self.notes,
            "folderPath": self.folder_path,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], task_id: Optional[str] = None) -> "Task":
        """Deserialize from dict. Legacy taskFolderPath is ignored; folderPath is derived."""
        files = data.get("files") or []
        if not isinstance(files, list):
            files = []
        return cls(
            id=str(data.get("id") or task_id or ""),
            column_id=str(data.get("columnId", "")),
            customer_name=data.get("customerName") or "",
            representative=data.get("representative") or "",
            order_date=data.get("orderDate") or "",
            notes=data.get("notes") or "",
            files=[f for f in files if isinstance(f, str)],
        )


@dataclass
class Column:
    """One workflow stage and the ordered ids of the tasks in it."""

    id: str
    title: str
    task_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "taskIds": list(self.task_ids)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        task_ids = data.get("taskIds") or []
        if not isinstance(task_ids, list):
            task_ids = []
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            task_ids=[str(t) for t in task_ids],
        )


def default_columns(skeleton: Optional[List[Tuple[str, str]]] = None) -> List[Column]:
    """Fresh, empty columns for the given (id, title) skeleton."""
    return [Column(id=cid, title=title) for cid, title in (skeleton or DEFAULT_COLUMNS)]


@dataclass
class BoardData:
    """Root aggregate: every task plus the ordered columns."""

    tasks: Dict[str, Task] = field(default_factory=dict)
    columns: List[Column] = field(default_factory=default_columns)

    def get_column(self, column_id: str) -> Optional[Column]:
        for col in self.columns:
            if col.id == column_id:
                return col
        return None

    def column_title(self, column_id: str) -> str:
        col = self.get_column(column_id)
        return col.title if col else UNKNOWN_COLUMN_TITLE

    def place_task(self, task_id: str, column_id: str) -> None:
        """
        Put a task at the end of a column, removing it from every other.

        Keeps the task id present in exactly one column's task_ids.
        """
        target = self.get_column(column_id)
        if target is None:
            raise KeyError(column_id)
        for col in self.columns:
            col.task_ids = [t for t in col.task_ids if t != task_id]
        target.task_ids.append(task_id)
        task = self.tasks.get(task_id)
        if task is not None:
            task.column_id = column_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": {tid: t.to_dict() for tid, t in self.tasks.items()},
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoardData":
        """Deserialize a validated document (both top-level keys present)."""
        tasks = {}
        for tid, raw in (data.get("tasks") or {}).items():
            if isinstance(raw, dict):
                tasks[str(tid)] = Task.from_dict(raw, task_id=str(tid))
        columns = [
            Column.from_dict(c) for c in (data.get("columns") or []) if isinstance(c, dict)
        ]
        return cls(tasks=tasks, columns=columns)


def is_board_document(data: Any) -> bool:
    """True when data has the two top-level keys a board document needs."""
    return (
        isinstance(data, dict)
        and isinstance(data.get("tasks"), dict)
        and isinstance(data.get("columns"), list)
    )
