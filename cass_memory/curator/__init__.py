from cass_memory.curator.conflicts import Conflict, detect_conflicts
from cass_memory.curator.curator import CurationResult, curate_playbook, curate_store

__all__ = [
    "Conflict",
    "CurationResult",
    "curate_playbook",
    "curate_store",
    "detect_conflicts",
]
