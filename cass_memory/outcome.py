"""Implicit feedback from task outcomes.

An outcome (success/failure/mixed plus duration, errors, retries and the user's
closing remark) is scored once into a single weighted feedback event, which is
then appended to every rule the agent reports having used.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Literal

from cass_memory.core.config import CassConfig, get_config
from cass_memory.core.maturity import calculate_maturity_state
from cass_memory.core.playbook import find_bullet, record_feedback
from cass_memory.core.schema import FeedbackEvent, FeedbackType
from cass_memory.core.scoring import effective_score
from cass_memory.core.storage.playbook_store import PlaybookStore, resolve_playbook_paths
from cass_memory.utils import expand_path, log_event, now_iso

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["success", "failure", "mixed"]
Sentiment = Literal["positive", "negative", "neutral"]

FAST_THRESHOLD_SECONDS = 600
SLOW_THRESHOLD_SECONDS = 3600
MIN_WEIGHT = 0.1
MAX_WEIGHT = 2.0

POSITIVE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"that worked", r"perfect", r"thanks", r"great", r"exactly what i needed", r"solved it")
]
NEGATIVE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"that('s| is) wrong", r"doesn't work", r"broke", r"not what i wanted", r"try again", r"undo")
]


def detect_sentiment(text: str | None) -> Sentiment:
    """Classify a free-text remark by counting positive vs negative phrases."""
    if not text:
        return "neutral"
    positive = sum(1 for p in POSITIVE_PATTERNS if p.search(text))
    negative = sum(1 for p in NEGATIVE_PATTERNS if p.search(text))
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


@dataclass
class OutcomeSignals:
    status: OutcomeStatus
    duration_seconds: float | None = None
    error_count: int | None = None
    had_retries: bool = False
    sentiment: Sentiment | None = None


@dataclass
class ImplicitFeedback:
    type: FeedbackType
    decayed_value: float
    context: str


@dataclass
class Outcome:
    """A finished task and the rules that were in play for it."""

    status: OutcomeStatus
    rule_ids: list[str]
    session_path: str | None = None
    duration_seconds: float | None = None
    error_count: int | None = None
    had_retries: bool = False
    sentiment: Sentiment | None = None
    text: str | None = None

    def signals(self) -> OutcomeSignals:
        return OutcomeSignals(
            status=self.status,
            duration_seconds=self.duration_seconds,
            error_count=self.error_count,
            had_retries=self.had_retries,
            sentiment=self.sentiment or detect_sentiment(self.text),
        )


@dataclass
class OutcomeApplication:
    feedback: ImplicitFeedback | None
    # rule id -> playbook file it was recorded in
    updated: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)


def score_implicit_feedback(signals: OutcomeSignals) -> ImplicitFeedback | None:
    """
    Collapse outcome signals into one weighted feedback event.

    Helpful and harmful evidence are accumulated separately; the larger side
    wins (ties go to helpful) and its total, clamped to [0.1, 2.0], becomes the
    event weight.

    Returns:
        ImplicitFeedback, or None when no signal points either way
    """
    helpful = 0.0
    harmful = 0.0
    reasons: list[str] = []

    if signals.status == "success":
        helpful += 1.0
        reasons.append("success")
    elif signals.status == "failure":
        harmful += 1.0
        reasons.append("failure")
    else:
        helpful += 0.1
        harmful += 0.1
        reasons.append("mixed")

    duration = signals.duration_seconds
    if duration is not None:
        if 0 < duration < FAST_THRESHOLD_SECONDS and signals.status != "failure":
            helpful += 0.5
            reasons.append("fast")
        elif duration > SLOW_THRESHOLD_SECONDS:
            harmful += 0.3
            reasons.append("slow")

    if signals.error_count is not None:
        if signals.error_count >= 2:
            harmful += 0.7
            reasons.append("errors>=2")
        elif signals.error_count == 1:
            harmful += 0.3
            reasons.append("error")

    if signals.had_retries:
        harmful += 0.5
        reasons.append("retries")

    if signals.sentiment == "positive":
        helpful += 0.3
        reasons.append("sentiment+")
    elif signals.sentiment == "negative":
        harmful += 0.5
        reasons.append("sentiment-")

    if helpful <= 0 and harmful <= 0:
        return None

    feedback_type: FeedbackType = "helpful" if helpful >= harmful else "harmful"
    weight = helpful if feedback_type == "helpful" else harmful
    return ImplicitFeedback(
        type=feedback_type,
        decayed_value=min(MAX_WEIGHT, max(MIN_WEIGHT, weight)),
        context=", ".join(reasons),
    )


def apply_outcome_feedback(
    outcome: Outcome,
    config: CassConfig | None = None,
    global_path: str | os.PathLike[str] | None = None,
    workspace_path: str | os.PathLike[str] | None = None,
) -> OutcomeApplication:
    """
    Record one outcome against every rule it lists.

    The workspace playbook is tried first, then the global one for the ids it
    did not contain. Each store is loaded and saved at most once, inside its own
    lock; the two locks are never held together. Pinned bullets take the event
    but are not auto-deprecated.

    Args:
        outcome: Outcome with the rule ids that were used
        config: Scoring thresholds; defaults to the global config
        global_path: Global playbook file; defaults to ``storage.playbook_path``
        workspace_path: Optional workspace playbook file

    Returns:
        OutcomeApplication with updated/missing ids

    Raises:
        ConcurrencyError: If a store lock cannot be acquired in time
    """
    config = config or get_config()
    feedback = score_implicit_feedback(outcome.signals())
    result = OutcomeApplication(feedback=feedback)

    rule_ids = list(dict.fromkeys(r.strip() for r in outcome.rule_ids if r and r.strip()))
    if feedback is None:
        logger.info("No implicit signal strong enough to record feedback")
        return result

    if global_path is None:
        global_path = resolve_playbook_paths(config).global_path

    remaining = rule_ids
    for path in (workspace_path, global_path):
        if path is None or not remaining:
            continue
        target = expand_path(path)
        if not target.exists():
            continue
        remaining = _apply_to_store(PlaybookStore(target, config), remaining, feedback, outcome, result)

    result.missing = remaining
    if remaining:
        logger.warning(f"Outcome referenced unknown rules: {', '.join(remaining)}")

    log_event(
        "outcome_recorded",
        {
            "type": feedback.type,
            "weight": feedback.decayed_value,
            "updated": list(result.updated),
            "missing": result.missing,
        },
    )
    return result


def _apply_to_store(
    store: PlaybookStore,
    rule_ids: list[str],
    feedback: ImplicitFeedback,
    outcome: Outcome,
    result: OutcomeApplication,
) -> list[str]:
    """Apply the event to the ids found in this store; return the ids it lacks."""
    not_found: list[str] = []
    with store.transaction() as playbook:
        for rule_id in rule_ids:
            bullet = find_bullet(playbook, rule_id)
            if bullet is None:
                not_found.append(rule_id)
                continue

            record_feedback(
                bullet,
                FeedbackEvent(
                    type=feedback.type,
                    timestamp=now_iso(),
                    session_path=outcome.session_path,
                    reason="other" if feedback.type == "harmful" else None,
                    context=feedback.context or None,
                    decayed_value=feedback.decayed_value,
                ),
            )
            new_maturity = calculate_maturity_state(bullet, store.config)
            if not (bullet.pinned and new_maturity == "deprecated"):
                bullet.maturity = new_maturity

            result.updated[rule_id] = str(store.path)
            result.scores[rule_id] = effective_score(bullet, store.config)
    return not_found
