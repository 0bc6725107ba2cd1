"""cass-memory: feedback-weighted curation of agent playbooks."""

__version__ = "0.1.0"
