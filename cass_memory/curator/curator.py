# cass_memory/curator/curator.py
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as SchemaError

from cass_memory.core.config import CassConfig, get_config
from cass_memory.core.errors import ValidationError
from cass_memory.core.maturity import (
    AUTO_DEPRECATE,
    MATURITY_RANK,
    calculate_maturity_state,
    check_for_demotion,
    check_for_promotion,
)
from cass_memory.core.playbook import add_bullet, deprecate_bullet, find_bullet, record_feedback
from cass_memory.core.schema import (
    AddDelta,
    Bullet,
    ConflictReport,
    DecisionAction,
    DecisionLogEntry,
    DecisionPhase,
    DeprecateDelta,
    FeedbackEvent,
    HarmfulDelta,
    HelpfulDelta,
    InversionReport,
    MaturityChange,
    MergeDelta,
    Playbook,
    UpdateDelta,
    parse_delta,
)
from cass_memory.core.scoring import effective_score
from cass_memory.core.similarity import SimilarityFn, content_hash, find_similar_bullet, get_similarity
from cass_memory.core.storage.playbook_store import PlaybookStore
from cass_memory.utils import generate_bullet_id, log_event, now_iso, truncate

from .conflicts import detect_conflicts

logger = logging.getLogger(__name__)

ANTI_PATTERN_PREFIX = "AVOID: "


@dataclass
class CurationResult:
    """Outcome of folding one batch of deltas into a playbook."""

    playbook: Playbook
    applied: int = 0
    skipped: int = 0
    inversions: list[InversionReport] = field(default_factory=list)
    promotions: list[MaturityChange] = field(default_factory=list)
    demotions: list[MaturityChange] = field(default_factory=list)
    conflicts: list[ConflictReport] = field(default_factory=list)
    pruned: int = 0
    decision_log: list[DecisionLogEntry] = field(default_factory=list)


def invert_to_anti_pattern(bullet: Bullet, config: CassConfig) -> Bullet:
    """
    Build the anti-pattern that replaces a chronically harmful rule.

    The original is referenced through ``derived_from``; its content is copied,
    never rewritten.
    """
    timestamp = now_iso()
    return Bullet(
        id=generate_bullet_id(),
        scope=bullet.scope,
        workspace=bullet.workspace,
        category=bullet.category,
        content=f"{ANTI_PATTERN_PREFIX}{bullet.content}",
        kind="anti_pattern",
        type="anti-pattern",
        is_negative=True,
        state="active",
        maturity="candidate",
        created_at=timestamp,
        updated_at=timestamp,
        # Copy provenance lists so the two bullets never share them
        source_sessions=list(bullet.source_sessions),
        source_agents=list(bullet.source_agents),
        tags=list(dict.fromkeys([*bullet.tags, "inverted", "anti-pattern"])),
        reasoning=f"Inverted from {bullet.id} after {bullet.harmful_count} harmful marks",
        derived_from=[bullet.id],
        confidence_decay_half_life_days=config.scoring.decay_half_life_days,
    )


class Curator:
    """
    Applies a batch of deltas to a playbook, strictly in the order given.

    Per delta type:
    - add: reject near-duplicates (against the context playbook and earlier adds
      in the same batch), otherwise insert a candidate bullet
    - update: merge provided fields into an existing bullet
    - helpful/harmful: append feedback; a harmful mark that tips the bullet into
      deprecation inverts it into an anti-pattern
    - deprecate: retire a bullet
    - merge: fold near-duplicate bullets into the highest-scoring one

    Each applied delta re-checks promotion of the bullets it touched. At the end
    of the batch every live bullet in the target playbook is re-checked for
    promotion and demotion, including ones no delta mentioned.
    """

    def __init__(
        self,
        playbook: Playbook,
        config: CassConfig,
        context_playbook: Playbook | None = None,
        similarity: SimilarityFn | None = None,
        now: datetime | None = None,
    ):
        """
        Args:
            playbook: Playbook to mutate
            config: Scoring and curation thresholds
            context_playbook: Wider view used for duplicate checks (e.g. the
                              merged global + workspace playbook). Defaults to playbook.
            similarity: Text similarity in [0, 1]; defaults to the configured backend
            now: Clock override for decay calculations
        """
        self.playbook = playbook
        self.config = config
        self.reference = context_playbook if context_playbook is not None else playbook
        self.similarity = similarity or get_similarity(config)
        self.now = now
        self.result = CurationResult(playbook=playbook)

        self._hashes: dict[str, Bullet] = {content_hash(b.content): b for b in self.reference.bullets}
        self._batch_added: list[Bullet] = []

        self._handlers: dict[str, Callable[[Any], bool]] = {
            "add": self._apply_add,
            "update": self._apply_update,
            "helpful": self._apply_feedback,
            "harmful": self._apply_feedback,
            "deprecate": self._apply_deprecate,
            "merge": self._apply_merge,
        }

    def run(self, deltas: Iterable[Any]) -> CurationResult:
        for raw in deltas:
            try:
                delta = parse_delta(raw)
                applied = self._handlers[delta.type](delta)
            except SchemaError as e:
                self._log("validation", "rejected", f"Malformed delta: {e.error_count()} errors")
                applied = False
            except ValidationError as e:
                self._log("validation", "rejected", str(e))
                applied = False

            if applied:
                self.result.applied += 1
            else:
                self.result.skipped += 1

        self._maturity_sweep()

        logger.info(
            f"Curated playbook: {self.result.applied} applied, {self.result.skipped} skipped, "
            f"{len(self.result.inversions)} inversions, {len(self.result.promotions)} promotions"
        )
        log_event(
            "curation_complete",
            {
                "applied": self.result.applied,
                "skipped": self.result.skipped,
                "inversions": len(self.result.inversions),
                "promotions": len(self.result.promotions),
                "demotions": len(self.result.demotions),
                "pruned": self.result.pruned,
            },
        )
        return self.result

    # --- Per-delta handlers ---

    def _apply_add(self, delta: AddDelta) -> bool:
        content = delta.bullet.content.strip()
        if not content or not delta.bullet.category.strip():
            raise ValidationError("Missing required content or category")

        self._record_conflicts(content)

        digest = content_hash(content)
        exact = self._hashes.get(digest)
        if exact is not None:
            self._log(
                "dedup", "skipped", "Exact duplicate of an existing bullet",
                bullet_id=exact.id, content=content,
            )
            return False

        threshold = self.config.curation.dedup_similarity_threshold
        similar = find_similar_bullet(content, self._dedup_pool(), threshold, self.similarity)
        if similar is not None:
            reason = "Similar bullet already exists"
            if not similar.is_live:
                reason = "Similar bullet exists but is deprecated; not resurrecting blocked content"
            self._log(
                "dedup", "skipped", reason,
                bullet_id=similar.id, content=content,
                details={"similar_to": truncate(similar.content), "threshold": threshold},
            )
            return False

        bullet = add_bullet(
            self.playbook,
            delta.bullet,
            delta.source_session,
            self.config.scoring.decay_half_life_days,
            state=self.config.curation.initial_state,  # type: ignore[arg-type]
        )
        if delta.reason and delta.reason.strip():
            bullet.reasoning = delta.reason.strip()

        # Later adds in this batch must see this one
        self._hashes[digest] = bullet
        if self.reference is not self.playbook:
            self._batch_added.append(bullet)

        self._log(
            "add", "accepted", "New bullet added to playbook",
            bullet_id=bullet.id, content=content,
            details={"category": bullet.category, "tags": bullet.tags},
        )
        self._check_promotion(bullet)
        return True

    def _apply_update(self, delta: UpdateDelta) -> bool:
        bullet = self._require(delta.bullet_id)
        changes = delta.changes.model_dump(exclude_none=True)
        if not changes:
            raise ValidationError(f"Update for {delta.bullet_id} carries no fields")
        if "content" in changes:
            changes["content"] = changes["content"].strip()
            if not changes["content"]:
                raise ValidationError(f"Update for {delta.bullet_id} has empty content")

        previous_content = bullet.content
        for name, value in changes.items():
            setattr(bullet, name, value)
        if "kind" in changes:
            bullet.type = "anti-pattern" if bullet.kind == "anti_pattern" else "rule"
            bullet.is_negative = bullet.kind == "anti_pattern"
        if "content" in changes and bullet.content != previous_content:
            old_hash = content_hash(previous_content)
            if self._hashes.get(old_hash) is bullet:
                del self._hashes[old_hash]
            self._hashes[content_hash(bullet.content)] = bullet
        bullet.updated_at = now_iso()

        self._log(
            "update", "modified", delta.reason or "Bullet fields updated",
            bullet_id=bullet.id, content=bullet.content,
            details={"fields": sorted(changes), "previous_content": truncate(previous_content)},
        )
        self._check_promotion(bullet)
        return True

    def _apply_feedback(self, delta: HelpfulDelta | HarmfulDelta) -> bool:
        bullet = self._require(delta.bullet_id)

        if self.config.curation.dedupe_feedback_per_session and delta.source_session:
            already = any(
                e.type == delta.type and e.session_path == delta.source_session
                for e in bullet.feedback_events
            )
            if already:
                self._log(
                    "feedback", "skipped",
                    f"{delta.type.capitalize()} feedback already recorded for this session",
                    bullet_id=bullet.id,
                )
                return False

        was_deprecated = bullet.deprecated
        record_feedback(
            bullet,
            FeedbackEvent(
                type=delta.type,
                timestamp=now_iso(),
                session_path=delta.source_session,
                reason=delta.reason,
                context=delta.context,
            ),
        )
        self._log(
            "feedback", "accepted", f"{delta.type.capitalize()} feedback recorded",
            bullet_id=bullet.id, content=bullet.content,
            details={
                "helpful_count": bullet.helpful_count,
                "harmful_count": bullet.harmful_count,
                "reason": delta.reason,
            },
        )

        if delta.type == "harmful":
            self._reevaluate_after_harm(bullet, was_deprecated)
        self._check_promotion(bullet)
        return True

    def _apply_deprecate(self, delta: DeprecateDelta) -> bool:
        bullet = self._require(delta.bullet_id)
        if bullet.deprecated:
            raise ValidationError(f"Bullet already deprecated: {bullet.id}")

        deprecate_bullet(self.playbook, bullet.id, delta.reason, delta.replaced_by)
        self._log(
            "demotion", "accepted", delta.reason or "Bullet deprecated",
            bullet_id=bullet.id, content=bullet.content,
            details={"replaced_by": delta.replaced_by},
        )
        return True

    def _apply_merge(self, delta: MergeDelta) -> bool:
        ids = list(dict.fromkeys(delta.bullet_ids))
        if len(ids) < 2:
            raise ValidationError("Merge needs at least two distinct bullets")

        bullets = [self._require(bullet_id) for bullet_id in ids]
        for bullet in bullets:
            if not bullet.is_live:
                raise ValidationError(f"Cannot merge deprecated or retired bullet: {bullet.id}")

        # max() keeps the first listed bullet on a tie
        survivor = max(bullets, key=lambda b: effective_score(b, self.config, self.now))
        absorbed = [b for b in bullets if b is not survivor]

        threshold = self.config.curation.dedup_similarity_threshold
        for other in absorbed:
            score = self.similarity(survivor.content, other.content)
            if score < threshold:
                raise ValidationError(
                    f"Cannot merge {other.id} into {survivor.id}: "
                    f"similarity {score:.2f} below {threshold:.2f}"
                )

        for other in absorbed:
            survivor.feedback_events.extend(e.model_copy() for e in other.feedback_events)
            survivor.tags = list(dict.fromkeys([*survivor.tags, *other.tags]))
            survivor.source_sessions = list(dict.fromkeys([*survivor.source_sessions, *other.source_sessions]))
            survivor.source_agents = list(dict.fromkeys([*survivor.source_agents, *other.source_agents]))
            survivor.derived_from = list(dict.fromkeys([*survivor.derived_from, other.id]))
            deprecate_bullet(self.playbook, other.id, f"Merged into {survivor.id}", survivor.id)
        survivor.sync_counters()
        survivor.updated_at = now_iso()

        self._log(
            "merge", "accepted", delta.reason or "Near-duplicate bullets merged",
            bullet_id=survivor.id, content=survivor.content,
            details={"merged_from": [b.id for b in absorbed]},
        )
        self._check_promotion(survivor)
        return True

    # --- Lifecycle ---

    def _reevaluate_after_harm(self, bullet: Bullet, was_deprecated: bool) -> None:
        if bullet.pinned:
            return

        new_maturity = calculate_maturity_state(bullet, self.config, self.now)
        if new_maturity != "deprecated":
            if new_maturity != bullet.maturity and MATURITY_RANK[new_maturity] < MATURITY_RANK.get(bullet.maturity, 0):
                self._record_demotion(bullet, new_maturity, "Maturity recomputed after harmful feedback")
            return

        if was_deprecated:
            bullet.maturity = "deprecated"
            return

        if bullet.is_negative or bullet.kind == "anti_pattern":
            # Inverting a restriction would produce a double negative
            deprecate_bullet(
                self.playbook, bullet.id, "Negative rule marked harmful (likely incorrect restriction)"
            )
            self.result.pruned += 1
            self._log(
                "inversion", "rejected", "Negative rule deprecated instead of inverted",
                bullet_id=bullet.id, content=bullet.content,
            )
            return

        anti_pattern = invert_to_anti_pattern(bullet, self.config)
        self.playbook.bullets.append(anti_pattern)
        deprecate_bullet(
            self.playbook, bullet.id, f"Inverted to anti-pattern: {anti_pattern.id}", anti_pattern.id
        )

        self._hashes[content_hash(anti_pattern.content)] = anti_pattern
        if self.reference is not self.playbook:
            self._batch_added.append(anti_pattern)

        self.result.inversions.append(
            InversionReport(
                original_id=bullet.id,
                original_content=bullet.content,
                anti_pattern_id=anti_pattern.id,
                anti_pattern_content=anti_pattern.content,
                reason=f"Marked harmful {bullet.harmful_count} times",
            )
        )
        self._log(
            "inversion", "accepted", "Harmful rule inverted to anti-pattern",
            bullet_id=bullet.id, content=bullet.content,
            details={"anti_pattern_id": anti_pattern.id},
        )

    def _check_promotion(self, bullet: Bullet) -> None:
        if not bullet.is_live:
            return

        old = bullet.maturity
        promoted = check_for_promotion(bullet, self.config, self.now)
        if promoted == old:
            return

        bullet.maturity = promoted
        bullet.promoted_at = now_iso()
        self.result.promotions.append(
            MaturityChange(
                bullet_id=bullet.id,
                from_maturity=old,
                to_maturity=promoted,
                reason="Auto-promoted based on feedback",
            )
        )
        self._log(
            "promotion", "accepted", f"Maturity promoted from {old} to {promoted}",
            bullet_id=bullet.id, content=bullet.content,
        )

    def _maturity_sweep(self) -> None:
        """Re-check every live bullet of the target playbook, touched or not."""
        for bullet in list(self.playbook.bullets):
            if bullet.deprecated or bullet.maturity == "deprecated":
                continue

            self._check_promotion(bullet)
            verdict = check_for_demotion(bullet, self.config, self.now)
            if verdict == AUTO_DEPRECATE:
                old = bullet.maturity
                deprecate_bullet(self.playbook, bullet.id, "Auto-deprecated due to negative score")
                self.result.pruned += 1
                self.result.demotions.append(
                    MaturityChange(
                        bullet_id=bullet.id,
                        from_maturity=old,
                        to_maturity="deprecated",
                        reason="Effective score below prune threshold",
                    )
                )
                self._log(
                    "demotion", "accepted", "Bullet auto-deprecated due to negative effective score",
                    bullet_id=bullet.id, content=bullet.content,
                )
            elif verdict != bullet.maturity:
                self._record_demotion(bullet, verdict, "Negative effective score")

    def _record_demotion(self, bullet: Bullet, new_maturity: Any, reason: str) -> None:
        old = bullet.maturity
        bullet.maturity = new_maturity
        self.result.demotions.append(
            MaturityChange(bullet_id=bullet.id, from_maturity=old, to_maturity=new_maturity, reason=reason)
        )
        self._log(
            "demotion", "accepted", f"Maturity demoted from {old} to {new_maturity}",
            bullet_id=bullet.id, content=bullet.content,
        )

    # --- Helpers ---

    def _require(self, bullet_id: str) -> Bullet:
        bullet = find_bullet(self.playbook, bullet_id)
        if bullet is None:
            raise ValidationError(f"Bullet not found: {bullet_id}")
        return bullet

    def _dedup_pool(self) -> list[Bullet]:
        return [*self.reference.bullets, *self._batch_added]

    def _record_conflicts(self, content: str) -> None:
        for conflict in detect_conflicts(content, self._dedup_pool()):
            self.result.conflicts.append(
                ConflictReport(
                    new_bullet_content=content,
                    conflicting_bullet_id=conflict.bullet_id,
                    conflicting_content=conflict.content,
                    reason=conflict.reason,
                )
            )
            self._log(
                "conflict", "skipped", conflict.reason,
                bullet_id=conflict.bullet_id, content=content,
                details={"conflicting_content": truncate(conflict.content)},
            )

    def _log(
        self,
        phase: DecisionPhase,
        action: DecisionAction,
        reason: str,
        bullet_id: str | None = None,
        content: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.result.decision_log.append(
            DecisionLogEntry(
                phase=phase,
                action=action,
                reason=reason,
                bullet_id=bullet_id,
                content=truncate(content) if content else None,
                details=details,
            )
        )
        logger.debug(f"[{phase}] {action}: {reason} ({bullet_id or '-'})")


def curate_playbook(
    playbook: Playbook,
    deltas: Iterable[Any],
    config: CassConfig | None = None,
    context_playbook: Playbook | None = None,
    similarity: SimilarityFn | None = None,
    now: datetime | None = None,
) -> CurationResult:
    """
    Fold an ordered sequence of deltas into ``playbook`` (mutated in place).

    Deltas may be typed delta models or raw mappings with a ``type`` key.
    Malformed deltas, unknown bullet ids and duplicates are counted in
    ``skipped``; they never abort the batch.

    Args:
        playbook: Target playbook
        deltas: Deltas to apply, in order
        config: Thresholds; defaults to the global config
        context_playbook: Optional wider view for duplicate detection
        similarity: Optional similarity function overriding the configured backend
        now: Clock override for decay calculations

    Returns:
        CurationResult with applied/skipped counts, inversions, promotions and
        the (same) playbook
    """
    config = config or get_config()
    return Curator(playbook, config, context_playbook, similarity, now).run(deltas)


def curate_store(
    store: PlaybookStore,
    deltas: Iterable[Any],
    config: CassConfig | None = None,
    context_playbook: Playbook | None = None,
    similarity: SimilarityFn | None = None,
    now: datetime | None = None,
) -> CurationResult:
    """Curate a persisted playbook under its lock: load, apply deltas, save once.

    A batch that applies anything bumps the reflection counters and stamps
    ``metadata.last_reflection``.

    Raises:
        ConcurrencyError: If the store lock cannot be acquired in time
        PersistenceError: If the save fails (nothing is committed)
    """
    config = config or store.config
    deltas = list(deltas)
    with store.transaction() as playbook:
        result = curate_playbook(playbook, deltas, config, context_playbook, similarity, now)
        if result.applied:
            playbook.metadata.total_reflections += 1
            playbook.metadata.total_sessions_processed += len(_source_sessions(deltas))
            playbook.metadata.last_reflection = now_iso()
    return result


def _source_sessions(deltas: list[Any]) -> set[str]:
    sessions: set[str] = set()
    for raw in deltas:
        try:
            session = getattr(parse_delta(raw), "source_session", None)
        except SchemaError:
            continue
        if session:
            sessions.add(session)
    return sessions
