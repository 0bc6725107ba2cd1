import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from cass_memory.core.errors import ConcurrencyError
from cass_memory.utils import expand_path

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0


def lock_path_for(path: str | os.PathLike[str]) -> Path:
    """Lock file that guards ``path``; lives next to it."""
    target = expand_path(path)
    return target.with_name(target.name + ".lock")


@contextmanager
def playbook_lock(
    path: str | os.PathLike[str], timeout: float = DEFAULT_LOCK_TIMEOUT
) -> Iterator[FileLock]:
    """
    Hold an exclusive cross-process lock on a playbook file.

    Waits up to ``timeout`` seconds. The lock is released on every exit path
    of the ``with`` block.

    Raises:
        ConcurrencyError: If the lock is still held elsewhere after ``timeout``
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_file), timeout=timeout)

    try:
        lock.acquire()
    except Timeout as e:
        raise ConcurrencyError(
            f"Could not acquire lock for {path} within {timeout}s (held by another process)"
        ) from e

    logger.debug(f"Acquired lock {lock_file}")
    try:
        yield lock
    finally:
        lock.release()
        logger.debug(f"Released lock {lock_file}")
