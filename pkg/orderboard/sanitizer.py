"""
Upload name sanitization.

Flat names only lose characters that are illegal in file names; everything
else, including non-Latin scripts, is kept as-is. Relative paths from folder
uploads are normalized and must stay inside the task directory.

Nothing here touches the filesystem or raises.
"""
import posixpath
import re
from typing import Optional

# Path separators, Windows-reserved symbols and control characters
ILLEGAL_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
PLACEHOLDER = "_"


def sanitize_filename(raw: str) -> str:
    """
    Map an arbitrary file name to a single safe path segment.

        sanitize_filename('报告:v2.txt') -> '报告_v2.txt'
        sanitize_filename('..')          -> '__'
    """
    name = ILLEGAL_CHARS.sub(PLACEHOLDER, raw or "")
    # "", "." and ".." would name the directory itself or its parent
    if not name.strip("."):
        return PLACEHOLDER * max(len(name), 1)
    return name


def sanitize_relative_path(raw: str) -> Optional[str]:
    """
    Normalize a folder-upload relative path.

    Leading ".." segments and absolute prefixes are dropped; a path that
    still climbs out after normalization is rejected with None, as is a
    path with no usable segment. Each remaining segment goes through
    sanitize_filename.

        sanitize_relative_path('docs/a.pdf')       -> 'docs/a.pdf'
        sanitize_relative_path('../../etc/passwd') -> 'etc/passwd'
        sanitize_relative_path('')                 -> None
    """
    if not raw:
        return None
    path = posixpath.normpath(raw.replace("\\", "/"))
    parts = [p for p in path.split("/") if p not in ("", ".")]
    while parts and parts[0] == "..":
        parts.pop(0)
    if not parts or ".." in parts:
        return None
    return "/".join(sanitize_filename(p) for p in parts)


def archive_label(customer_name: str, representative: str, fallback: str = "task") -> str:
    """Human-readable root folder / download name for a task archive."""
    label = sanitize_filename(f"{customer_name} - {representative}".strip()).strip()
    if not label.strip("_ -"):
        return sanitize_filename(fallback)
    return label
