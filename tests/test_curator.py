# tests/test_curator.py
import pytest

from cass_memory.core.playbook import add_bullet
from cass_memory.core.schema import AddDelta, HarmfulDelta, NewBulletData, Playbook
from cass_memory.core.storage import PlaybookStore
from cass_memory.curator import curate_playbook, curate_store
from cass_memory.curator.curator import invert_to_anti_pattern


def _add(content, category="testing", **extra):
    return {"type": "add", "bullet": {"content": content, "category": category, **extra}}


def test_add_to_empty_playbook(config, now):
    """A single add yields one candidate bullet."""
    playbook = Playbook()
    result = curate_playbook(playbook, [_add("Run tests before pushing")], config, now=now)

    assert result.applied == 1
    assert result.skipped == 0
    assert len(playbook.bullets) == 1
    assert playbook.bullets[0].maturity == "candidate"
    assert playbook.bullets[0].content == "Run tests before pushing"
    assert result.playbook is playbook


def test_same_add_twice_in_one_batch_yields_one_bullet(config, now):
    playbook = Playbook()
    delta = _add("Run tests before pushing")
    result = curate_playbook(playbook, [delta, delta], config, now=now)

    assert result.applied == 1
    assert result.skipped == 1
    assert len(playbook.bullets) == 1


def test_near_duplicate_add_is_skipped(config, now):
    playbook = Playbook()
    result = curate_playbook(
        playbook,
        [
            _add("Always run the full test suite before pushing to main"),
            _add("Always run the full test suite before pushing to main branch"),
        ],
        config,
        now=now,
    )
    assert result.applied == 1
    assert len(playbook.bullets) == 1
    assert any(e.phase == "dedup" and e.action == "skipped" for e in result.decision_log)


def test_add_matching_deprecated_bullet_is_not_resurrected(config, now, bullet_factory):
    playbook = Playbook(bullets=[bullet_factory("b-old", "Use global mutable state", deprecated=True)])
    result = curate_playbook(playbook, [_add("Use global mutable state")], config, now=now)
    assert result.skipped == 1
    assert len(playbook.bullets) == 1


def test_add_checks_context_playbook(config, now, bullet_factory):
    context = Playbook(bullets=[bullet_factory("b-global", "Prefer pathlib over os.path")])
    workspace = Playbook()

    result = curate_playbook(
        workspace, [_add("Prefer pathlib over os.path")], config, context_playbook=context, now=now
    )

    assert result.skipped == 1
    assert workspace.bullets == []


def test_add_dedups_against_earlier_adds_with_context(config, now):
    context = Playbook()
    workspace = Playbook()
    result = curate_playbook(
        workspace,
        [_add("Prefer pathlib over os.path"), _add("prefer  pathlib over os.path")],
        config,
        now=now,
        context_playbook=context,
    )
    assert result.applied == 1
    assert len(workspace.bullets) == 1


def test_add_missing_fields_is_skipped(config, now):
    playbook = Playbook()
    result = curate_playbook(playbook, [_add("", "testing"), _add("content", "")], config, now=now)
    assert result.applied == 0
    assert result.skipped == 2
    assert all(e.phase == "validation" for e in result.decision_log)


def test_add_stores_reason(config, now):
    playbook = Playbook()
    delta = AddDelta(bullet=NewBulletData(content="Vendor protobuf stubs", category="build"), reason="Saw drift")
    curate_playbook(playbook, [delta], config, now=now)
    assert playbook.bullets[0].reasoning == "Saw drift"


def test_conflicts_are_reported_but_do_not_block(config, now, bullet_factory):
    playbook = Playbook(bullets=[bullet_factory("b-1", "Always use mocks for database tests")])
    result = curate_playbook(playbook, [_add("Never use mocks for database tests")], config, now=now)

    assert result.applied == 1
    assert len(playbook.bullets) == 2
    assert result.conflicts[0].conflicting_bullet_id == "b-1"


def test_malformed_delta_is_skipped(config, now):
    playbook = Playbook()
    result = curate_playbook(
        playbook,
        [{"type": "explode"}, {"type": "helpful"}, _add("Keep functions small")],
        config,
        now=now,
    )
    assert result.applied == 1
    assert result.skipped == 2


def test_unknown_bullet_ids_are_skipped(config, now):
    result = curate_playbook(
        Playbook(),
        [
            {"type": "helpful", "bullet_id": "b-missing"},
            {"type": "harmful", "bullet_id": "b-missing"},
            {"type": "update", "bullet_id": "b-missing", "changes": {"content": "x"}},
            {"type": "deprecate", "bullet_id": "b-missing"},
        ],
        config,
        now=now,
    )
    assert result.applied == 0
    assert result.skipped == 4


def test_deltas_apply_in_order(config, now):
    playbook = Playbook()
    result = curate_playbook(
        playbook,
        [
            _add("Squash commits before merge", id="b-fixed"),
            {"type": "helpful", "bullet_id": "b-fixed"},
        ],
        config,
        now=now,
    )
    assert result.applied == 2
    assert playbook.bullets[0].helpful_count == 1


def test_helpful_feedback_promotes(config, now, bullet_factory):
    bullet = bullet_factory("b-1", helpful=2)
    playbook = Playbook(bullets=[bullet])

    delta = {"type": "helpful", "bullet_id": "b-1", "source_session": "s1"}
    result = curate_playbook(playbook, [delta], config, now=now)

    assert bullet.maturity == "established"
    assert bullet.promoted_at is not None
    assert result.promotions[0].from_maturity == "candidate"
    assert result.promotions[0].to_maturity == "established"
    assert "s1" in bullet.source_sessions


def test_harmful_transition_inverts_to_anti_pattern(config, now, bullet_factory):
    original = bullet_factory("b-1", "Use sleep() to wait for services", helpful=1, harmful=1, tags=["infra"])
    playbook = Playbook(bullets=[original])

    delta = {"type": "harmful", "bullet_id": "b-1", "reason": "caused_bug"}
    result = curate_playbook(playbook, [delta], config, now=now)

    anti_patterns = [b for b in playbook.bullets if b.kind == "anti_pattern"]
    assert len(anti_patterns) == 1
    anti = anti_patterns[0]
    assert anti.content == "AVOID: Use sleep() to wait for services"
    assert anti.type == "anti-pattern"
    assert anti.is_negative
    assert anti.derived_from == ["b-1"]
    assert anti.state == "active"
    assert anti.maturity == "candidate"
    assert "inverted" in anti.tags

    assert original.deprecated
    assert original.content == "Use sleep() to wait for services"
    assert original.replaced_by == anti.id
    assert result.inversions[0].original_id == "b-1"
    assert result.inversions[0].anti_pattern_id == anti.id
    assert result.applied == 1


def test_harmful_on_already_deprecated_maturity_inverts(config, now, bullet_factory):
    """A bullet whose maturity reached deprecated but never got inverted is inverted on the next harm."""
    bullet = bullet_factory("b-1", "Disable TLS verification in tests", harmful=3, maturity="deprecated")
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert result.applied >= 1
    assert len(result.inversions) == 1
    assert any(b.kind == "anti_pattern" and b.content.startswith("AVOID: ") for b in playbook.bullets)


def test_harmful_on_flagged_bullet_does_not_invert_again(config, now, bullet_factory):
    bullet = bullet_factory("b-1", harmful=3, deprecated=True, maturity="deprecated")
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert result.inversions == []
    assert len(playbook.bullets) == 1


def test_harmful_negative_rule_is_pruned_not_inverted(config, now, bullet_factory):
    bullet = bullet_factory("b-1", "Never commit lockfiles", helpful=1, harmful=1, kind="anti_pattern", is_negative=True)
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert result.inversions == []
    assert result.pruned == 1
    assert bullet.deprecated
    assert len(playbook.bullets) == 1


def test_pinned_bullet_is_never_auto_deprecated(config, now, bullet_factory):
    bullet = bullet_factory("b-1", harmful=5, maturity="established", state="active", pinned=True)
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert not bullet.deprecated
    assert bullet.maturity == "established"
    assert result.inversions == []
    assert result.demotions == []


def test_negative_score_soft_demotes(config, now, bullet_factory):
    # 3 helpful + 1 harmful: ratio 0.25, score -1
    bullet = bullet_factory("b-1", helpful=3, maturity="established", state="active")
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert bullet.maturity == "candidate"
    assert not bullet.deprecated
    assert result.demotions[0].to_maturity == "candidate"


def test_very_negative_score_auto_deprecates(config, now, bullet_factory):
    # 8 helpful + 3 harmful: ratio 0.27 stays established, score 8 - 12 = -4
    bullet = bullet_factory("b-1", helpful=8, harmful=2, maturity="established", state="active")
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(playbook, [HarmfulDelta(bullet_id="b-1")], config, now=now)

    assert bullet.deprecated
    assert result.pruned == 1
    assert result.demotions[0].to_maturity == "deprecated"
    assert result.inversions == []


def test_untouched_bullet_with_negative_score_is_deprecated(config, now, bullet_factory):
    """End-of-batch checks cover every live bullet, not only those the batch mentions."""
    stale = bullet_factory(
        "b-old", "Pin every transitive dependency", helpful=1, harmful=1, maturity="proven", state="active"
    )
    playbook = Playbook(bullets=[stale])

    result = curate_playbook(playbook, [_add("Keep CI under ten minutes")], config, now=now)

    assert result.applied == 1
    assert stale.deprecated
    assert result.pruned == 1
    assert result.demotions[0].bullet_id == "b-old"
    assert result.demotions[0].to_maturity == "deprecated"


def test_untouched_bullet_is_soft_demoted(config, now, bullet_factory):
    drifting = bullet_factory("b-old", helpful=3, harmful=1, maturity="established", state="active")
    playbook = Playbook(bullets=[drifting])

    result = curate_playbook(playbook, [_add("Keep CI under ten minutes")], config, now=now)

    assert drifting.maturity == "candidate"
    assert not drifting.deprecated
    assert [d.bullet_id for d in result.demotions] == ["b-old"]


def test_untouched_bullet_is_promoted(config, now, bullet_factory):
    ready = bullet_factory("b-old", helpful=3)
    playbook = Playbook(bullets=[ready])

    result = curate_playbook(playbook, [_add("Keep CI under ten minutes")], config, now=now)

    assert ready.maturity == "established"
    assert result.promotions[0].bullet_id == "b-old"


def test_feedback_per_session_dedupe(config, now, bullet_factory):
    config.curation.dedupe_feedback_per_session = True
    bullet = bullet_factory("b-1")
    playbook = Playbook(bullets=[bullet])
    delta = {"type": "helpful", "bullet_id": "b-1", "source_session": "s1"}

    result = curate_playbook(playbook, [delta, delta], config, now=now)

    assert result.applied == 1
    assert bullet.helpful_count == 1


def test_feedback_repeats_by_default(config, now, bullet_factory):
    bullet = bullet_factory("b-1")
    playbook = Playbook(bullets=[bullet])
    delta = {"type": "helpful", "bullet_id": "b-1", "source_session": "s1"}

    curate_playbook(playbook, [delta, delta], config, now=now)

    assert bullet.helpful_count == 2


def test_update_changes_fields_and_keeps_history(config, now, bullet_factory):
    bullet = bullet_factory("b-1", "Use black", helpful=2)
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(
        playbook,
        [{"type": "update", "bullet_id": "b-1", "changes": {"content": "Use ruff format", "tags": ["style"]}}],
        config,
        now=now,
    )

    assert result.applied == 1
    assert bullet.content == "Use ruff format"
    assert bullet.tags == ["style"]
    assert bullet.helpful_count == 2


def test_update_without_fields_is_skipped(config, now, bullet_factory):
    playbook = Playbook(bullets=[bullet_factory("b-1")])
    result = curate_playbook(playbook, [{"type": "update", "bullet_id": "b-1"}], config, now=now)
    assert result.skipped == 1


def test_update_frees_old_content_for_later_add(config, now, bullet_factory):
    playbook = Playbook(bullets=[bullet_factory("b-1", "Use black for formatting")])

    result = curate_playbook(
        playbook,
        [
            {"type": "update", "bullet_id": "b-1", "changes": {"content": "Use ruff format for formatting"}},
            _add("Use black for formatting"),
        ],
        config,
        now=now,
    )

    assert result.applied == 2
    assert sorted(b.content for b in playbook.bullets) == [
        "Use black for formatting",
        "Use ruff format for formatting",
    ]


def test_deprecate_delta(config, now, bullet_factory):
    bullet = bullet_factory("b-1")
    playbook = Playbook(bullets=[bullet])

    result = curate_playbook(
        playbook,
        [{"type": "deprecate", "bullet_id": "b-1", "reason": "outdated"}, {"type": "deprecate", "bullet_id": "b-1"}],
        config,
        now=now,
    )

    assert result.applied == 1
    assert result.skipped == 1
    assert bullet.deprecated
    assert bullet.deprecation_reason == "outdated"


def test_merge_folds_into_highest_scoring(config, now, bullet_factory):
    weak = bullet_factory("b-weak", "Run database migrations inside a transaction", helpful=1, tags=["db"])
    strong = bullet_factory(
        "b-strong", "Run database migrations inside a transaction always", helpful=5, tags=["migrations"]
    )
    playbook = Playbook(bullets=[weak, strong])
    config.curation.dedup_similarity_threshold = 0.8

    result = curate_playbook(playbook, [{"type": "merge", "bullet_ids": ["b-weak", "b-strong"]}], config, now=now)

    assert result.applied == 1
    assert not strong.deprecated
    assert strong.helpful_count == 6
    assert set(strong.tags) == {"db", "migrations"}
    assert "b-weak" in strong.derived_from
    assert weak.deprecated
    assert weak.replaced_by == "b-strong"


def test_merge_rejects_dissimilar_bullets(config, now, bullet_factory):
    a = bullet_factory("b-a", "Prefer composition over inheritance")
    b = bullet_factory("b-b", "Cache DNS lookups in the resolver")
    playbook = Playbook(bullets=[a, b])

    result = curate_playbook(playbook, [{"type": "merge", "bullet_ids": ["b-a", "b-b"]}], config, now=now)

    assert result.skipped == 1
    assert not a.deprecated and not b.deprecated


def test_merge_requires_live_distinct_bullets(config, now, bullet_factory):
    a = bullet_factory("b-a", "Same text here")
    b = bullet_factory("b-b", "Same text here", deprecated=True)
    playbook = Playbook(bullets=[a, b])

    result = curate_playbook(
        playbook,
        [
            {"type": "merge", "bullet_ids": ["b-a", "b-a"]},
            {"type": "merge", "bullet_ids": ["b-a", "b-b"]},
        ],
        config,
        now=now,
    )
    assert result.skipped == 2


def test_decision_log_records_each_step(config, now):
    result = curate_playbook(Playbook(), [_add("Keep PRs small")], config, now=now)
    entry = result.decision_log[0]
    assert entry.phase == "add"
    assert entry.action == "accepted"
    assert entry.bullet_id is not None


def test_invert_to_anti_pattern_copies_provenance(config, bullet_factory):
    original = bullet_factory("b-1", "Retry forever", source_sessions=["s1"])
    anti = invert_to_anti_pattern(original, config)
    anti.source_sessions.append("s2")
    assert original.source_sessions == ["s1"]
    assert anti.content == "AVOID: Retry forever"


def test_curate_store_persists_once(playbook_path, config, now):
    store = PlaybookStore(playbook_path, config)
    result = curate_store(store, [_add("Use structured logging", source_session="s1")], config, now=now)

    assert result.applied == 1
    loaded = store.load()
    assert len(loaded.bullets) == 1
    assert loaded.metadata.total_reflections == 1
    assert loaded.metadata.last_reflection is not None


def test_two_sequential_writers_keep_both_batches(playbook_path, config):
    first = PlaybookStore(playbook_path, config)
    second = PlaybookStore(playbook_path, config)

    curate_store(first, [_add("Write docstrings for public APIs"), _add("Avoid wildcard imports")], config)
    curate_store(second, [_add("Avoid wildcard imports"), _add("Use type hints on public functions")], config)

    contents = sorted(b.content for b in first.load().bullets)
    assert contents == [
        "Avoid wildcard imports",
        "Use type hints on public functions",
        "Write docstrings for public APIs",
    ]


def test_curate_store_failure_commits_nothing(playbook_path, config, monkeypatch):
    store = PlaybookStore(playbook_path, config)
    with store.transaction() as playbook:
        add_bullet(playbook, {"id": "b-1", "content": "Existing rule", "category": "c"})
    before = playbook_path.read_bytes()

    def explode(*args, **kwargs):
        raise RuntimeError("crash mid-batch")

    monkeypatch.setattr("cass_memory.curator.curator.curate_playbook", explode)
    with pytest.raises(RuntimeError):
        curate_store(store, [{"type": "helpful", "bullet_id": "b-1"}], config)

    assert playbook_path.read_bytes() == before


def test_curate_store_without_applied_deltas_leaves_metadata(playbook_path, config, now):
    store = PlaybookStore(playbook_path, config)
    result = curate_store(store, [{"type": "helpful", "bullet_id": "b-missing"}], config, now=now)

    assert result.applied == 0
    loaded = store.load()
    assert loaded.metadata.total_reflections == 0
    assert loaded.metadata.last_reflection is None
