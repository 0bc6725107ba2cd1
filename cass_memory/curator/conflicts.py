# cass_memory/curator/conflicts.py
"""Heuristic detection of rules that contradict each other.

Conflicts are reported as warnings; they never block an addition.
"""
import re
from dataclasses import dataclass

from cass_memory.core.schema import Bullet
from cass_memory.core.similarity import tokenize

NEGATIVE_MARKERS = ["never", "dont", "don't", "avoid", "forbid", "forbidden", "disable", "prevent", "stop", "skip"]
POSITIVE_MARKERS = ["always", "must", "required", "ensure", "use", "enable"]
EXCEPTION_MARKERS = ["unless", "except", "only if", "only when", "except when"]


def _marker_pattern(markers: list[str]) -> re.Pattern[str]:
    # Word boundaries so "use" does not match "user"
    return re.compile(r"\b(?:" + "|".join(re.escape(m) for m in markers) + r")\b", re.IGNORECASE)


_NEGATIVE_RE = _marker_pattern(NEGATIVE_MARKERS)
_POSITIVE_RE = _marker_pattern(POSITIVE_MARKERS)
_EXCEPTION_RE = _marker_pattern(EXCEPTION_MARKERS)


@dataclass
class Conflict:
    bullet_id: str
    content: str
    reason: str


@dataclass
class _Directive:
    tokens: set[str]
    negative: bool
    positive: bool
    exception: bool

    @classmethod
    def of(cls, text: str) -> "_Directive":
        return cls(
            tokens=set(tokenize(text)),
            negative=bool(_NEGATIVE_RE.search(text)),
            positive=bool(_POSITIVE_RE.search(text)),
            exception=bool(_EXCEPTION_RE.search(text)),
        )

    @property
    def has_markers(self) -> bool:
        return self.negative or self.positive or self.exception


def detect_conflicts(content: str, bullets: list[Bullet]) -> list[Conflict]:
    """
    Find live bullets that likely contradict ``content``.

    Three heuristics, checked in order, on bullets with enough term overlap
    (0.1 when either side carries directive words, 0.2 otherwise):
    negation mismatch, must-vs-avoid, and always-vs-exception.
    """
    new = _Directive.of(content)
    if not new.tokens:
        return []

    conflicts: list[Conflict] = []
    for bullet in bullets:
        if not bullet.is_live:
            continue

        existing = _Directive.of(bullet.content)
        if not existing.tokens:
            continue

        min_overlap = 0.1 if (new.has_markers or existing.has_markers) else 0.2
        # Jaccard can't exceed min/max of the set sizes
        sizes = (len(new.tokens), len(existing.tokens))
        if min(sizes) / max(sizes) < min_overlap:
            continue
        overlap = len(new.tokens & existing.tokens) / len(new.tokens | existing.tokens)
        if overlap < min_overlap:
            continue

        reason = None
        if new.negative != existing.negative:
            reason = "Possible negation conflict (one says do, the other says avoid) with high term overlap"
        elif (new.positive and existing.negative) or (existing.positive and new.negative):
            reason = "Opposite directives (must vs avoid) on similar subject matter"
        elif (new.positive and existing.exception) or (existing.positive and new.exception):
            reason = "Potential scope conflict (always vs exception) on overlapping topic"

        if reason:
            conflicts.append(Conflict(bullet_id=bullet.id, content=bullet.content, reason=reason))

    return conflicts
