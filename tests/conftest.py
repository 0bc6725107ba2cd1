# tests/conftest.py
"""Pytest configuration and shared fixtures."""

import os
from datetime import UTC, datetime, timedelta

import pytest

from cass_memory.core.config import CassConfig, CurationConfig, ScoringConfig, StorageConfig, reset_config
from cass_memory.core.schema import Bullet, FeedbackEvent

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop CASS_* overrides from the host environment and the cached config."""
    for name in list(os.environ):
        if name.startswith("CASS_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def config(tmp_path):
    """Default thresholds, decay effectively disabled, storage under tmp_path."""
    return CassConfig(
        scoring=ScoringConfig(decay_half_life_days=1e9),
        curation=CurationConfig(),
        storage=StorageConfig(playbook_path=str(tmp_path / "global" / "playbook.json"), lock_timeout=0.2),
    )


def make_event(kind="helpful", days_ago=0.0, session=None, weight=None, now=NOW):
    return FeedbackEvent(
        type=kind,
        timestamp=(now - timedelta(days=days_ago)).isoformat(),
        session_path=session,
        decayed_value=weight,
    )


def make_bullet(
    bullet_id="b-test-000001",
    content="Use pytest fixtures for shared setup",
    helpful=0,
    harmful=0,
    **kwargs,
):
    events = [make_event("helpful") for _ in range(helpful)] + [make_event("harmful") for _ in range(harmful)]
    kwargs.setdefault("category", "testing")
    kwargs.setdefault("feedback_events", events)
    return Bullet(id=bullet_id, content=content, **kwargs)


@pytest.fixture
def bullet_factory():
    return make_bullet


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def playbook_path(tmp_path):
    return tmp_path / "playbook.json"
