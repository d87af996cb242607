"""
Single-flight locking for sync runs.

One run per (repository, split) at a time: a threading.Lock guards against
concurrent runs inside one process, an fcntl lock file under
<git-dir>/rail/ against other processes.
"""

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path

from .errors import SyncInProgress

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_process_locks: dict[tuple[str, str], threading.Lock] = {}


def _process_lock(repo_key: str, split: str) -> threading.Lock:
    with _registry_lock:
        return _process_locks.setdefault((repo_key, split), threading.Lock())


@contextmanager
def split_lock(git_dir: Path | None, split: str, repo_key: str | None = None):
    """
    Hold the sync lock for one split; raises SyncInProgress when taken.

    git_dir is None for drivers without an on-disk repository, in which case
    only the in-process lock applies.
    """
    key = repo_key or (str(git_dir) if git_dir is not None else "")
    lock = _process_lock(key, split)
    if not lock.acquire(blocking=False):
        raise SyncInProgress(split, "this process")
    try:
        if git_dir is None:
            yield
            return
        lock_dir = Path(git_dir) / "rail"
        lock_dir.mkdir(parents=True, exist_ok=True)
        lock_path = lock_dir / f"{split}.lock"
        with open(lock_path, "a+") as lock_f:
            try:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                lock_f.seek(0)
                holder = lock_f.read().strip() or None
                raise SyncInProgress(split, holder) from e
            try:
                lock_f.seek(0)
                lock_f.truncate()
                lock_f.write(f"pid={os.getpid()}\n")
                lock_f.flush()
                logger.debug("Acquired %s", lock_path)
                yield
            finally:
                fcntl.flock(lock_f.fileno(), fcntl.LOCK_UN)
    finally:
        lock.release()
