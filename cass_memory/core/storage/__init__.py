from cass_memory.core.storage.atomic import write_atomic
from cass_memory.core.storage.lock import playbook_lock
from cass_memory.core.storage.playbook_store import (
    PlaybookStore,
    load_playbook,
    resolve_playbook_paths,
    save_playbook,
)

__all__ = [
    "PlaybookStore",
    "load_playbook",
    "playbook_lock",
    "resolve_playbook_paths",
    "save_playbook",
    "write_atomic",
]
