"""Maturity lifecycle: candidate -> established -> proven, with deprecated as a sink."""

from datetime import datetime
from typing import Literal

from .config import CassConfig
from .schema import Bullet, BulletMaturity
from .scoring import decayed_counts, effective_score

AUTO_DEPRECATE = "auto-deprecate"
DemotionVerdict = BulletMaturity | Literal["auto-deprecate"]

# Forward order of the live stages; deprecated is terminal and has no rank
MATURITY_RANK: dict[BulletMaturity, int] = {
    "candidate": 0,
    "established": 1,
    "proven": 2,
}

_DEMOTE_ONE_STEP: dict[BulletMaturity, BulletMaturity] = {
    "proven": "established",
    "established": "candidate",
}


def calculate_maturity_state(
    bullet: Bullet, config: CassConfig, now: datetime | None = None
) -> BulletMaturity:
    """Derive the maturity a bullet's decayed feedback supports.

    Deprecation is sticky: once either the flag or the maturity says deprecated,
    no amount of later feedback brings the bullet back.
    """
    if bullet.deprecated or bullet.maturity == "deprecated":
        return "deprecated"

    scoring = config.scoring
    helpful, harmful = decayed_counts(bullet, now, scoring.decay_half_life_days)
    total = helpful + harmful
    harmful_ratio = harmful / total if total > 0 else 0.0

    if harmful_ratio > scoring.deprecate_harmful_ratio and total > scoring.deprecate_min_total:
        return "deprecated"
    if total < scoring.min_feedback_for_active:
        return "candidate"
    if (
        helpful >= scoring.min_helpful_for_proven
        and harmful_ratio < scoring.max_harmful_ratio_for_proven
    ):
        return "proven"
    return "established"


def is_promotion(current: BulletMaturity, new: BulletMaturity) -> bool:
    if current not in MATURITY_RANK or new not in MATURITY_RANK:
        return False
    return MATURITY_RANK[new] > MATURITY_RANK[current]


def check_for_promotion(
    bullet: Bullet, config: CassConfig, now: datetime | None = None
) -> BulletMaturity:
    """Return the promoted maturity, or the current one if no forward move applies."""
    current = bullet.maturity
    if current in ("proven", "deprecated"):
        return current

    new_state = calculate_maturity_state(bullet, config, now)
    return new_state if is_promotion(current, new_state) else current


def check_for_demotion(
    bullet: Bullet, config: CassConfig, now: datetime | None = None
) -> DemotionVerdict:
    """Score-driven demotion check.

    Returns ``"auto-deprecate"`` when the effective score drops below
    ``-prune_harmful_threshold``; this is a recommendation, the caller decides
    whether to act on it. A merely negative score demotes one step. Pinned
    bullets are never demoted.
    """
    if bullet.pinned:
        return bullet.maturity

    score = effective_score(bullet, config, now)
    if score < -config.curation.prune_harmful_threshold:
        return AUTO_DEPRECATE
    if score < 0:
        return _DEMOTE_ONE_STEP.get(bullet.maturity, bullet.maturity)
    return bullet.maturity
