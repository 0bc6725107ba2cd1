# tests/test_storage.py
import json
import multiprocessing
import os

import pytest
from filelock import FileLock

from cass_memory.core.errors import ConcurrencyError, CorruptStateError, PersistenceError
from cass_memory.core.playbook import add_bullet
from cass_memory.core.schema import Playbook
from cass_memory.core.storage import (
    PlaybookStore,
    load_playbook,
    playbook_lock,
    resolve_playbook_paths,
    save_playbook,
    write_atomic,
)
from cass_memory.core.storage.lock import lock_path_for
from cass_memory.curator import curate_store


def test_load_missing_file_is_empty(playbook_path, config):
    playbook = load_playbook(playbook_path, config)
    assert playbook.bullets == []


def test_load_blank_file_is_empty(playbook_path, config):
    playbook_path.write_text("   \n")
    assert load_playbook(playbook_path, config).bullets == []


def test_save_and_load(playbook_path, config):
    playbook = Playbook()
    add_bullet(playbook, {"content": "Run linters in CI", "category": "ci"})
    save_playbook(playbook, playbook_path)

    loaded = load_playbook(playbook_path, config)
    assert [b.content for b in loaded.bullets] == ["Run linters in CI"]
    assert loaded.metadata.last_reflection is None
    assert json.loads(playbook_path.read_text())["schema_version"] == 2


def test_save_creates_parent_directory(tmp_path, config):
    target = tmp_path / "nested" / "dir" / "playbook.json"
    save_playbook(Playbook(), target)
    assert target.exists()


def test_corrupt_file_degrades_to_empty_and_backs_up(playbook_path, config):
    playbook_path.write_text("{not json")

    playbook = load_playbook(playbook_path, config)

    assert playbook.bullets == []
    backups = list(playbook_path.parent.glob("playbook.json.backup.*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"


def test_corrupt_file_without_backup(playbook_path, config):
    config.storage.backup_corrupt = False
    playbook_path.write_text('{"bullets": [{"id": 1}]}')
    assert load_playbook(playbook_path, config).bullets == []
    assert not list(playbook_path.parent.glob("playbook.json.backup.*"))


def test_corrupt_file_raises_when_configured(playbook_path, config):
    config.storage.on_corrupt = "raise"
    playbook_path.write_text("{not json")
    with pytest.raises(CorruptStateError):
        load_playbook(playbook_path, config)


def test_unreadable_path_raises_persistence_error(tmp_path, config):
    directory = tmp_path / "playbook.json"
    directory.mkdir()
    with pytest.raises(PersistenceError):
        load_playbook(directory, config)


def test_write_atomic_replaces_content(tmp_path):
    target = tmp_path / "data.json"
    write_atomic(target, "first")
    write_atomic(target, b"second")
    assert target.read_text() == "second"


def test_write_atomic_interrupted_keeps_previous_file(tmp_path, monkeypatch):
    target = tmp_path / "data.json"
    write_atomic(target, "original")

    def fail_replace(src, dst):
        raise OSError("disk vanished")

    monkeypatch.setattr(os, "replace", fail_replace)
    with pytest.raises(PersistenceError):
        write_atomic(target, "new content")

    assert target.read_text() == "original"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["data.json"]


def test_lock_timeout_raises_concurrency_error(playbook_path):
    holder = FileLock(str(lock_path_for(playbook_path)))
    holder.acquire()
    try:
        with pytest.raises(ConcurrencyError) as excinfo:
            with playbook_lock(playbook_path, timeout=0.1):
                pass
        assert excinfo.value.retryable
    finally:
        holder.release()


def test_lock_released_after_exception(playbook_path):
    with pytest.raises(RuntimeError):
        with playbook_lock(playbook_path, timeout=0.1):
            raise RuntimeError("boom")

    # Reacquiring immediately succeeds
    with playbook_lock(playbook_path, timeout=0.1):
        pass


def test_transaction_saves_changes(playbook_path, config):
    store = PlaybookStore(playbook_path, config)
    with store.transaction() as playbook:
        add_bullet(playbook, {"content": "Use feature flags", "category": "release"})

    assert len(store.load().bullets) == 1


def test_transaction_discards_changes_on_error(playbook_path, config):
    store = PlaybookStore(playbook_path, config)
    with pytest.raises(ValueError):
        with store.transaction() as playbook:
            add_bullet(playbook, {"content": "Use feature flags", "category": "release"})
            raise ValueError("abort")

    assert not playbook_path.exists()


def test_transaction_skips_save_when_unchanged(playbook_path, config):
    store = PlaybookStore(playbook_path, config)
    with store.transaction():
        pass
    assert not playbook_path.exists()


def test_transaction_holds_lock(playbook_path, config):
    store = PlaybookStore(playbook_path, config)
    with store.transaction():
        with pytest.raises(ConcurrencyError):
            with playbook_lock(playbook_path, timeout=0.1):
                pass


def test_resolve_playbook_paths(tmp_path, config):
    paths = resolve_playbook_paths(config, workspace_root=tmp_path)
    assert paths.global_path == tmp_path / "global" / "playbook.json"
    assert paths.workspace_path == tmp_path / ".cass" / "playbook.json"
    assert resolve_playbook_paths(config).workspace_path is None


def _mark_helpful_in_child(path: str, bullet_id: str, session: str, count: int) -> None:
    from cass_memory.core.config import CassConfig

    config = CassConfig()
    config.storage.lock_timeout = 30
    store = PlaybookStore(path, config)
    for i in range(count):
        curate_store(
            store,
            [{"type": "helpful", "bullet_id": bullet_id, "source_session": f"{session}-{i}"}],
            config,
        )


def test_concurrent_processes_do_not_lose_updates(playbook_path, config):
    store = PlaybookStore(playbook_path, config)
    with store.transaction() as playbook:
        bullet = add_bullet(playbook, {"id": "b-shared", "content": "Shared rule", "category": "c"})
    assert bullet.id == "b-shared"

    ctx = multiprocessing.get_context("fork")
    workers = [
        ctx.Process(target=_mark_helpful_in_child, args=(str(playbook_path), "b-shared", name, 5))
        for name in ("first", "second")
    ]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)
        assert worker.exitcode == 0

    loaded = load_playbook(playbook_path, config)
    assert loaded.bullets[0].helpful_count == 10
    assert loaded.metadata.total_reflections == 10
