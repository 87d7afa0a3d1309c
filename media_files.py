"""
media_files.py - Delete / rename / replace clips

Thin wrappers over safe_file_ops that turn lock and permission errors into
messages a user can act on.
"""

from __future__ import annotations

import errno
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from safe_file_ops import CLEANUP_POLICY, atomic_file_replace, safe_rename, safe_unlink

log = logging.getLogger("media_files")

PathLike = Union[str, Path]


@dataclass
class FileOpResult:
    success: bool
    error: Optional[str] = None
    new_path: Optional[str] = None


def _friendly_error(e: OSError, action: str) -> str:
    if e.errno == errno.EBUSY:
        return "File is currently in use. Please close any programs using this file and try again."
    if e.errno in (errno.EACCES, errno.EPERM):
        return f"Permission denied. Cannot {action} file; it may be locked by another process."
    return str(e)


def delete_file(path: PathLike) -> FileOpResult:
    path = Path(path)
    if not path.exists():
        return FileOpResult(success=False, error="File not found")
    try:
        safe_unlink(path)
    except OSError as e:
        log.warning(f"Delete failed for {path}: {e}")
        return FileOpResult(success=False, error=_friendly_error(e, "delete"))
    return FileOpResult(success=True)


def rename_file(path: PathLike, new_name: str) -> FileOpResult:
    """Rename keeping the original extension. Never overwrites another file."""
    path = Path(path)
    if not path.exists():
        return FileOpResult(success=False, error="File not found")

    new_name = new_name.strip()
    if not new_name or Path(new_name).name != new_name:
        return FileOpResult(success=False, error="Invalid file name")

    ext = path.suffix
    stem = new_name[: -len(ext)] if ext and new_name.lower().endswith(ext.lower()) else new_name
    new_path = path.with_name(stem + ext)

    if new_path == path:
        return FileOpResult(success=True, new_path=str(path))
    if new_path.exists():
        return FileOpResult(success=False, error="A file with this name already exists")

    try:
        safe_rename(path, new_path)
    except OSError as e:
        log.warning(f"Rename failed for {path}: {e}")
        return FileOpResult(success=False, error=_friendly_error(e, "rename"))
    return FileOpResult(success=True, new_path=str(new_path))


def replace_file(target: PathLike, staged: PathLike) -> FileOpResult:
    """
    Put `staged` (e.g. a freshly trimmed copy) in place of `target`.

    On failure the original stays where it was and the staged file is
    cleaned up.
    """
    target = Path(target)
    staged = Path(staged)
    try:
        atomic_file_replace(target, staged)
    except OSError as e:
        log.warning(f"Replace failed for {target}: {e}")
        if staged.exists():
            try:
                safe_unlink(staged, CLEANUP_POLICY)
            except OSError as cleanup_error:
                log.warning(f"Could not remove staged file {staged}: {cleanup_error}")
        return FileOpResult(success=False, error=_friendly_error(e, "replace"))
    return FileOpResult(success=True, new_path=str(target))
