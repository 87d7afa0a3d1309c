"""
safe_file_ops.py - Lock-tolerant file operations

Deleting, renaming or overwriting a clip right after a recorder or player let
go of it often fails with a transient lock error (mostly on Windows). These
helpers retry such errors with exponential backoff and replace files without
ever leaving the original name empty.

Usage:
    from safe_file_ops import atomic_file_replace, safe_unlink, CLEANUP_POLICY

    atomic_file_replace(Path("clip.mp4"), Path("_temp_trim_clip.mp4"))
    safe_unlink(Path("leftover.tmp"), CLEANUP_POLICY)

Nothing in here logs. Errors are raised to the caller unchanged.
"""

from __future__ import annotations

import errno
import os
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar, Union

T = TypeVar("T")
PathLike = Union[str, Path]

# =========================
# Retry policy
# =========================

RETRYABLE_ERRNOS = frozenset({
    errno.EBUSY,    # file in use
    errno.EACCES,   # access transiently denied (Windows sharing violations land here)
    errno.EPERM,
    errno.EMFILE,   # too many open files (process)
    errno.ENFILE,   # too many open files (system)
})

# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
RETRYABLE_WINERRORS = frozenset({32, 33})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for one retried call"""
    max_retries: int = 5
    initial_delay_ms: int = 100
    backoff_multiplier: float = 1.5
    max_delay_ms: int = 5000


DEFAULT_POLICY = RetryPolicy()
CLEANUP_POLICY = RetryPolicy(max_retries=2)
BACKUP_CLEANUP_POLICY = RetryPolicy(max_retries=1, initial_delay_ms=50)


def is_retryable_error(exc: BaseException) -> bool:
    """True for OS errors that mean 'locked or busy right now, try again'"""
    if not isinstance(exc, OSError):
        return False
    if getattr(exc, "winerror", None) in RETRYABLE_WINERRORS:
        return True
    return exc.errno in RETRYABLE_ERRNOS


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy = DEFAULT_POLICY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying lock-type OS errors.

    At most `policy.max_retries + 1` attempts. Anything that is not a lock
    error, and the error of the final attempt, is re-raised as is.
    """
    delay_ms = float(policy.initial_delay_ms)
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not is_retryable_error(e) or attempt >= policy.max_retries:
                raise
        sleep(delay_ms / 1000.0)
        delay_ms = min(delay_ms * policy.backoff_multiplier, float(policy.max_delay_ms))
        attempt += 1


# =========================
# Single-call helpers
# =========================

def safe_unlink(path: PathLike, policy: RetryPolicy = DEFAULT_POLICY) -> None:
    """Delete a file, retrying while it is locked"""
    with_retry(lambda: os.unlink(path), policy)


def safe_copy_file(src: PathLike, dst: PathLike, policy: RetryPolicy = DEFAULT_POLICY) -> None:
    """Copy a file (with metadata), retrying while either side is locked"""
    with_retry(lambda: shutil.copy2(src, dst), policy)


def safe_rename(src: PathLike, dst: PathLike, policy: RetryPolicy = DEFAULT_POLICY) -> None:
    """Rename a file, retrying while it is locked. Fails if `dst` exists on Windows."""
    with_retry(lambda: os.rename(src, dst), policy)


def is_file_locked(path: PathLike) -> bool:
    """Return True if the file exists but cannot be opened read-write because of a lock"""
    if not os.path.exists(path):
        return False
    try:
        with open(path, "r+b"):
            pass
    except OSError as e:
        return is_retryable_error(e) and e.errno not in (errno.EMFILE, errno.ENFILE)
    return False


def wait_for_file_unlock(path: PathLike, timeout_s: float = 10.0, interval_s: float = 0.1) -> bool:
    """Poll until the file is no longer locked. Returns False on timeout."""
    t0 = time.monotonic()
    while time.monotonic() - t0 < timeout_s:
        if not is_file_locked(path):
            return True
        time.sleep(interval_s)
    return False


# =========================
# Atomic replace
# =========================

class ReplaceStrategy:
    """Puts a staged file in place of a target file"""

    name = "base"

    def __init__(
        self,
        rename: Optional[Callable[[str, str], None]] = None,
        unlink: Optional[Callable[[str], None]] = None,
    ):
        self._rename = rename
        self._unlink = unlink or os.unlink

    def replace(self, target: Path, staged: Path, policy: RetryPolicy = DEFAULT_POLICY) -> None:
        raise NotImplementedError


class RenameOverReplace(ReplaceStrategy):
    """
    One rename over the existing target.

    POSIX rename(2) swaps the directory entry atomically, so readers see
    either the old or the new file, never nothing.
    """

    name = "rename-over"

    def replace(self, target: Path, staged: Path, policy: RetryPolicy = DEFAULT_POLICY) -> None:
        rename = self._rename or os.replace
        with_retry(lambda: rename(str(staged), str(target)), policy)


class BackupSwapReplace(ReplaceStrategy):
    """
    Move the target aside, move the staged file in, drop the backup.

    Used where renaming onto an existing file fails. If the second move
    fails the backup is put back before the error is raised, so the
    original content is never lost. A stray backup is the worst case.
    """

    name = "backup-swap"

    def replace(self, target: Path, staged: Path, policy: RetryPolicy = DEFAULT_POLICY) -> None:
        rename = self._rename or os.rename
        backup = target.with_name(f"{target.name}.backup_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}")
        moved_aside = False

        try:
            if target.exists():
                with_retry(lambda: rename(str(target), str(backup)), policy)
                moved_aside = True
            with_retry(lambda: rename(str(staged), str(target)), policy)
        except Exception:
            if moved_aside and backup.exists() and not target.exists():
                try:
                    rename(str(backup), str(target))
                except OSError:
                    pass  # backup stays on disk
            raise

        if moved_aside:
            try:
                with_retry(lambda: self._unlink(str(backup)), BACKUP_CLEANUP_POLICY)
            except OSError:
                pass  # stray backup is harmless


def select_replace_strategy(platform_name: Optional[str] = None) -> ReplaceStrategy:
    """Pick the replace strategy for the running platform (or `platform_name`)"""
    if (platform_name or os.name) == "nt":
        return BackupSwapReplace()
    return RenameOverReplace()


REPLACE_STRATEGY = select_replace_strategy()


def atomic_file_replace(
    target: PathLike,
    staged: PathLike,
    policy: RetryPolicy = DEFAULT_POLICY,
    strategy: Optional[ReplaceStrategy] = None,
) -> None:
    """
    Replace `target` with the content of `staged`.

    On success `target` holds the new content and `staged` is gone. A file
    exists under the target name throughout (except for the gap between the
    two renames of the backup-swap strategy, which restores on failure).
    """
    target = Path(target)
    staged = Path(staged)
    if not staged.exists():
        raise FileNotFoundError(errno.ENOENT, "Staged file not found", str(staged))

    (strategy or REPLACE_STRATEGY).replace(target, staged, policy)
