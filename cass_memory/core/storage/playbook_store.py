"""
Playbook persistence: one JSON document per scope.

Global (``~/.cass-memory/playbook.json``) and workspace (``<repo>/.cass/playbook.json``)
playbooks are independent lock domains. Mutations go through
``PlaybookStore.transaction()``, which holds the file lock for the whole
load -> mutate -> save cycle.
"""

import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError as SchemaError

from cass_memory.core.config import CassConfig, get_config
from cass_memory.core.errors import CorruptStateError, PersistenceError
from cass_memory.core.playbook import create_empty_playbook
from cass_memory.core.schema import Playbook
from cass_memory.utils import expand_path

from .atomic import write_atomic
from .lock import playbook_lock

logger = logging.getLogger(__name__)

PLAYBOOK_FILENAME = "playbook.json"


@dataclass
class PlaybookPaths:
    global_path: Path
    workspace_path: Path | None = None


def resolve_playbook_paths(
    config: CassConfig | None = None, workspace_root: str | os.PathLike[str] | None = None
) -> PlaybookPaths:
    """Locate the global playbook and, for a workspace root, its workspace playbook."""
    config = config or get_config()
    global_path = expand_path(config.storage.playbook_path)
    workspace_path = None
    if workspace_root is not None:
        workspace_path = (
            expand_path(workspace_root) / config.storage.workspace_dir / PLAYBOOK_FILENAME
        )
    return PlaybookPaths(global_path=global_path, workspace_path=workspace_path)


def _backup_corrupt_file(path: Path) -> Path | None:
    backup_path = path.with_name(f"{path.name}.backup.{int(time.time() * 1000)}")
    try:
        shutil.copy2(path, backup_path)
    except OSError as e:
        logger.error(f"Failed to back up corrupted playbook {path}: {e}")
        return None
    logger.warning(f"Corrupted playbook backed up to {backup_path}")
    return backup_path


def _handle_corrupt(path: Path, config: CassConfig, error: CorruptStateError) -> Playbook:
    if config.storage.on_corrupt == "raise":
        raise error

    logger.warning(f"{error}; continuing with an empty playbook")
    if config.storage.backup_corrupt:
        _backup_corrupt_file(path)
    return create_empty_playbook()


def load_playbook(path: str | os.PathLike[str], config: CassConfig | None = None) -> Playbook:
    """
    Load a playbook from disk.

    A missing or blank file is an empty playbook. An unparseable file is handled
    per ``storage.on_corrupt``: ``"empty"`` logs a warning (and backs the file up)
    then returns an empty playbook; ``"raise"`` raises CorruptStateError.

    Raises:
        PersistenceError: If the file exists but cannot be read (e.g. permissions)
    """
    config = config or get_config()
    target = expand_path(path)

    try:
        raw = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return create_empty_playbook()
    except UnicodeDecodeError as e:
        return _handle_corrupt(
            target, config, CorruptStateError(f"Playbook {target} is not valid UTF-8: {e}")
        )
    except OSError as e:
        raise PersistenceError(f"Failed to read playbook {target}: {e}") from e

    if not raw.strip():
        return create_empty_playbook()

    try:
        return Playbook.model_validate_json(raw)
    except SchemaError as e:
        return _handle_corrupt(
            target,
            config,
            CorruptStateError(f"Playbook {target} failed validation ({e.error_count()} errors)"),
        )


def save_playbook(playbook: Playbook, path: str | os.PathLike[str]) -> None:
    """Serialize and atomically write a playbook.

    Raises:
        PersistenceError: If the write fails; the previous file is left intact
    """
    target = expand_path(path)
    write_atomic(target, playbook.model_dump_json(indent=2))


class PlaybookStore:
    """A single playbook file plus the lock that guards it."""

    def __init__(self, path: str | os.PathLike[str], config: CassConfig | None = None):
        """
        Args:
            path: Playbook JSON file; created on first save
            config: Storage settings (lock timeout, corrupt-file policy)
        """
        self.path = expand_path(path)
        self.config = config or get_config()

    def load(self) -> Playbook:
        return load_playbook(self.path, self.config)

    def save(self, playbook: Playbook) -> None:
        save_playbook(playbook, self.path)

    @contextmanager
    def transaction(self) -> Iterator[Playbook]:
        """
        Locked read-modify-write of the playbook.

        The lock is taken before loading and released after saving. The playbook
        is saved only if the block exits normally and something changed; an
        exception discards the in-memory changes.

        Raises:
            ConcurrencyError: If the lock cannot be acquired in time
            PersistenceError: If the save fails
        """
        with playbook_lock(self.path, timeout=self.config.storage.lock_timeout):
            playbook = self.load()
            before = playbook.model_dump_json()
            yield playbook
            if playbook.model_dump_json() == before:
                logger.debug(f"Playbook {self.path} unchanged; skipping save")
                return
            self.save(playbook)
