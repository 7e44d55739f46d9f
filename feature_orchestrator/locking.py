"""Per-feature advisory locking.

Uses ``flock`` on ``<workspaces>/.locks/<feature_id>.lock`` so only one
orchestration loop drives a feature at a time. Lock files are never deleted:
removing them would let two processes hold "exclusive" locks on different
inodes with the same path.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path

from .errors import LockTimeout

logger = logging.getLogger("feature_orchestrator.locking")

LOCK_DIR_NAME = ".locks"
POLL_INTERVAL_SECONDS = 0.1


def lock_path(workspaces_dir: Path, feature_id: str) -> Path:
    return Path(workspaces_dir) / LOCK_DIR_NAME / f"{feature_id}.lock"


def is_locked(workspaces_dir: Path, feature_id: str) -> bool:
    """True while another holder has the feature lock."""
    path = lock_path(workspaces_dir, feature_id)
    if not path.exists():
        return False
    with open(path, "r") as fd:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        fcntl.flock(fd, fcntl.LOCK_UN)
    return False


@contextmanager
def feature_lock(workspaces_dir: Path, feature_id: str, timeout: float = 60):
    """Acquire the per-feature lock, yield, release on exit.

    Raises :class:`LockTimeout` if the lock is still held after ``timeout``
    seconds.
    """
    path = lock_path(workspaces_dir, feature_id)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = open(path, "w")
    start = time.monotonic()
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() - start > timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire lock for {feature_id} within {timeout}s")
            time.sleep(POLL_INTERVAL_SECONDS)

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        logger.debug(f"Acquired lock for {feature_id}")
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()
        logger.debug(f"Released lock for {feature_id}")
