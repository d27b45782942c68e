"""Advisory repo lock: serializes working-tree mutations across threads and processes."""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager

LOCK_FILENAME = "gitdocs.lock"

# Per-process re-entrant locks, keyed by resolved working-directory path
_thread_locks: dict[tuple[int, int] | str, threading.RLock] = {}
_thread_locks_guard = threading.Lock()
# Per-thread hold counts so nested acquisitions skip the file lock
_held = threading.local()


def _lock_key(repo_path: str) -> tuple[int, int] | str:
    real = os.path.realpath(repo_path)
    try:
        st = os.stat(real)
        key: tuple[int, int] | str = (st.st_dev, st.st_ino)
        if st.st_ino == 0:
            key = os.path.normcase(real)
    except OSError:
        key = os.path.normcase(real)
    return key


def _get_thread_lock(key: tuple[int, int] | str) -> threading.RLock:
    with _thread_locks_guard:
        if key not in _thread_locks:
            _thread_locks[key] = threading.RLock()
        return _thread_locks[key]


def _hold_counts() -> dict:
    counts = getattr(_held, "counts", None)
    if counts is None:
        counts = _held.counts = {}
    return counts


def _lock_path(repo_path: str) -> str | None:
    """The lock file lives in the control directory; no file lock without one."""
    control = os.path.join(repo_path, ".git")
    if os.path.isdir(control):
        return os.path.join(control, LOCK_FILENAME)
    return None


try:
    import fcntl

    def _acquire_file(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX)

    def _release_file(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)

    _OPEN_FLAGS = os.O_CREAT | os.O_RDWR | getattr(os, "O_CLOEXEC", 0)

except ImportError:
    import msvcrt

    def _acquire_file(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_LOCK, 1)

    def _release_file(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

    _OPEN_FLAGS = os.O_CREAT | os.O_RDWR


@contextmanager
def repo_lock(repo_path: str):
    """Hold the working-directory lock for *repo_path*.

    Re-entrant within a thread: only the outermost acquisition takes the
    advisory file lock.
    """
    key = _lock_key(repo_path)
    tlock = _get_thread_lock(key)
    tlock.acquire()
    counts = _hold_counts()
    try:
        if counts.get(key, 0):
            counts[key] += 1
            try:
                yield
            finally:
                counts[key] -= 1
            return

        lock_path = _lock_path(repo_path)
        fd = os.open(lock_path, _OPEN_FLAGS) if lock_path is not None else None
        if fd is not None and os.name == "nt":
            os.set_inheritable(fd, False)
        counts[key] = 1
        try:
            if fd is not None:
                _acquire_file(fd)
            try:
                yield
            finally:
                if fd is not None:
                    _release_file(fd)
        finally:
            counts.pop(key, None)
            if fd is not None:
                os.close(fd)
    finally:
        tlock.release()
