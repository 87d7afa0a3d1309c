import errno
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest import mock

import safe_file_ops
from safe_file_ops import (
    BackupSwapReplace,
    RenameOverReplace,
    RetryPolicy,
    atomic_file_replace,
    is_file_locked,
    is_retryable_error,
    safe_copy_file,
    safe_unlink,
    select_replace_strategy,
    with_retry,
)

FAST = RetryPolicy(max_retries=3, initial_delay_ms=1, backoff_multiplier=1.0, max_delay_ms=1)


def busy():
    return OSError(errno.EBUSY, "Device or resource busy")


class FailingCall:
    """Raises the given errors in order, then returns 'ok'"""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestClassification(unittest.TestCase):
    def test_lock_errors_are_retryable(self):
        for code in (errno.EBUSY, errno.EACCES, errno.EPERM, errno.EMFILE, errno.ENFILE):
            self.assertTrue(is_retryable_error(OSError(code, "x")), code)

    def test_other_errors_are_fatal(self):
        self.assertFalse(is_retryable_error(OSError(errno.ENOENT, "missing")))
        self.assertFalse(is_retryable_error(OSError(errno.ENOSPC, "disk full")))
        self.assertFalse(is_retryable_error(ValueError("nope")))
        self.assertFalse(is_retryable_error(OSError("no errno")))

    def test_windows_sharing_violation(self):
        e = OSError(errno.EINVAL, "sharing violation")
        e.winerror = 32
        self.assertTrue(is_retryable_error(e))


class TestWithRetry(unittest.TestCase):
    def test_returns_result_without_retrying(self):
        op = FailingCall()
        sleeps = []
        self.assertEqual(with_retry(op, FAST, sleep=sleeps.append), "ok")
        self.assertEqual(op.calls, 1)
        self.assertEqual(sleeps, [])

    def test_succeeds_after_transient_failures(self):
        policy = RetryPolicy(max_retries=5, initial_delay_ms=20, backoff_multiplier=2.0, max_delay_ms=1000)
        op = FailingCall(busy(), busy(), busy())

        t0 = time.monotonic()
        self.assertEqual(with_retry(op, policy), "ok")
        elapsed = time.monotonic() - t0

        self.assertEqual(op.calls, 4)
        # 20 + 40 + 80 ms of backoff
        self.assertGreaterEqual(elapsed, 0.135)

    def test_backoff_grows_and_is_capped(self):
        policy = RetryPolicy(max_retries=4, initial_delay_ms=100, backoff_multiplier=1.5, max_delay_ms=200)
        op = FailingCall(busy(), busy(), busy(), busy())
        sleeps = []

        with_retry(op, policy, sleep=sleeps.append)

        self.assertEqual(len(sleeps), 4)
        for got, want in zip(sleeps, [0.1, 0.15, 0.2, 0.2]):
            self.assertAlmostEqual(got, want)

    def test_fatal_error_fails_on_first_attempt(self):
        err = OSError(errno.ENOENT, "missing")
        op = FailingCall(err)
        sleeps = []

        with self.assertRaises(OSError) as ctx:
            with_retry(op, FAST, sleep=sleeps.append)

        self.assertIs(ctx.exception, err)
        self.assertEqual(op.calls, 1)
        self.assertEqual(sleeps, [])

    def test_non_os_errors_are_not_retried(self):
        op = FailingCall(ValueError("bad"))
        with self.assertRaises(ValueError):
            with_retry(op, FAST, sleep=lambda s: None)
        self.assertEqual(op.calls, 1)

    def test_gives_up_after_max_retries(self):
        policy = RetryPolicy(max_retries=2, initial_delay_ms=1, max_delay_ms=1)
        last = busy()
        op = FailingCall(busy(), busy(), last, busy())

        with self.assertRaises(OSError) as ctx:
            with_retry(op, policy, sleep=lambda s: None)

        self.assertIs(ctx.exception, last)
        self.assertEqual(op.calls, 3)

    def test_zero_retries_means_single_attempt(self):
        op = FailingCall(busy())
        with self.assertRaises(OSError):
            with_retry(op, RetryPolicy(max_retries=0), sleep=lambda s: None)
        self.assertEqual(op.calls, 1)


class TestSingleCallHelpers(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_safe_unlink_retries_busy_file(self):
        p = self.dir / "clip.mp4"
        p.write_bytes(b"x")
        with mock.patch.object(safe_file_ops.os, "unlink", side_effect=[busy(), None]) as m:
            safe_unlink(p, FAST)
        self.assertEqual(m.call_count, 2)
        m.assert_called_with(p)

    def test_safe_unlink_missing_file_raises(self):
        with self.assertRaises(FileNotFoundError):
            safe_unlink(self.dir / "nope.mp4", FAST)

    def test_safe_copy_file(self):
        src = self.dir / "a.mp4"
        src.write_bytes(b"content")
        dst = self.dir / "b.mp4"
        safe_copy_file(src, dst, FAST)
        self.assertEqual(dst.read_bytes(), b"content")
        self.assertTrue(src.exists())

    def test_is_file_locked(self):
        p = self.dir / "clip.mp4"
        self.assertFalse(is_file_locked(p))
        p.write_bytes(b"x")
        self.assertFalse(is_file_locked(p))
        with mock.patch("builtins.open", side_effect=OSError(errno.EBUSY, "busy")):
            self.assertTrue(is_file_locked(p))


class TestAtomicReplace(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self.tmp.name)
        self.target = self.dir / "clip.mp4"
        self.staged = self.dir / "_temp_trim_clip.mp4"
        self.target.write_bytes(b"old content")
        self.staged.write_bytes(b"new content")

    def tearDown(self):
        self.tmp.cleanup()

    def backups(self):
        return sorted(p.name for p in self.dir.iterdir() if ".backup_" in p.name)

    def test_strategy_selection(self):
        self.assertIsInstance(select_replace_strategy("nt"), BackupSwapReplace)
        self.assertIsInstance(select_replace_strategy("posix"), RenameOverReplace)

    def test_missing_staged_file(self):
        self.staged.unlink()
        with self.assertRaises(FileNotFoundError):
            atomic_file_replace(self.target, self.staged, FAST)
        self.assertEqual(self.target.read_bytes(), b"old content")

    def test_default_strategy(self):
        atomic_file_replace(self.target, self.staged, FAST)
        self.assertEqual(self.target.read_bytes(), b"new content")
        self.assertFalse(self.staged.exists())
        self.assertEqual(self.backups(), [])

    def test_target_may_not_exist_yet(self):
        self.target.unlink()
        for strategy in (RenameOverReplace(), BackupSwapReplace()):
            self.staged.write_bytes(b"new content")
            if self.target.exists():
                self.target.unlink()
            atomic_file_replace(self.target, self.staged, FAST, strategy=strategy)
            self.assertEqual(self.target.read_bytes(), b"new content")
            self.assertFalse(self.staged.exists())

    def test_rename_over_never_leaves_target_missing(self):
        seen = []

        def observed_replace(src, dst):
            seen.append(Path(dst).exists())
            os.replace(src, dst)
            seen.append(Path(dst).exists())

        atomic_file_replace(self.target, self.staged, FAST, strategy=RenameOverReplace(rename=observed_replace))

        self.assertEqual(seen, [True, True])
        self.assertEqual(self.target.read_bytes(), b"new content")

    def test_rename_over_retries_locked_target(self):
        calls = []

        def flaky_replace(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                raise OSError(errno.EACCES, "Access is denied")
            os.replace(src, dst)

        atomic_file_replace(self.target, self.staged, FAST, strategy=RenameOverReplace(rename=flaky_replace))

        self.assertEqual(len(calls), 2)
        self.assertEqual(self.target.read_bytes(), b"new content")

    def test_backup_swap_success(self):
        atomic_file_replace(self.target, self.staged, FAST, strategy=BackupSwapReplace())
        self.assertEqual(self.target.read_bytes(), b"new content")
        self.assertFalse(self.staged.exists())
        self.assertEqual(self.backups(), [])

    def test_backup_swap_fails_moving_target_aside(self):
        def rename(src, dst):
            if Path(src) == self.target:
                raise OSError(errno.EIO, "I/O error")
            os.rename(src, dst)

        with self.assertRaises(OSError):
            atomic_file_replace(self.target, self.staged, FAST, strategy=BackupSwapReplace(rename=rename))

        self.assertEqual(self.target.read_bytes(), b"old content")
        self.assertEqual(self.staged.read_bytes(), b"new content")
        self.assertEqual(self.backups(), [])

    def test_backup_swap_restores_when_staged_move_fails(self):
        def rename(src, dst):
            if Path(src) == self.staged:
                raise OSError(errno.EIO, "I/O error")
            os.rename(src, dst)

        with self.assertRaises(OSError) as ctx:
            atomic_file_replace(self.target, self.staged, FAST, strategy=BackupSwapReplace(rename=rename))

        self.assertEqual(ctx.exception.errno, errno.EIO)
        self.assertEqual(self.target.read_bytes(), b"old content")
        self.assertEqual(self.staged.read_bytes(), b"new content")
        self.assertEqual(self.backups(), [])

    def test_backup_swap_restores_after_lock_retries_run_out(self):
        def rename(src, dst):
            if Path(src) == self.staged:
                raise busy()
            os.rename(src, dst)

        with self.assertRaises(OSError):
            atomic_file_replace(self.target, self.staged, FAST, strategy=BackupSwapReplace(rename=rename))

        self.assertEqual(self.target.read_bytes(), b"old content")
        self.assertEqual(self.backups(), [])

    def test_backup_swap_tolerates_undeletable_backup(self):
        def unlink(path):
            raise OSError(errno.EACCES, "Access is denied")

        atomic_file_replace(self.target, self.staged, FAST, strategy=BackupSwapReplace(unlink=unlink))

        self.assertEqual(self.target.read_bytes(), b"new content")
        self.assertFalse(self.staged.exists())
        backups = self.backups()
        self.assertEqual(len(backups), 1)
        self.assertTrue(backups[0].startswith("clip.mp4.backup_"))
        self.assertEqual((self.dir / backups[0]).read_bytes(), b"old content")


if __name__ == "__main__":
    unittest.main()
