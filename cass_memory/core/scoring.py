# cass_memory/core/scoring.py
"""Decayed feedback scoring.

Every feedback event loses half of its weight each ``half_life_days``. A
bullet's effective score combines its decayed helpful and harmful totals,
weighting harmful feedback ``harmful_multiplier`` times heavier, and scales
the result by the bullet's maturity and state.
"""
from datetime import datetime

from cass_memory.utils import parse_timestamp, utc_now

from .config import CassConfig
from .schema import DEFAULT_DECAY_HALF_LIFE_DAYS, Bullet, BulletMaturity, BulletState, FeedbackEvent

SECONDS_PER_DAY = 86_400

MATURITY_MULTIPLIER: dict[BulletMaturity, float] = {
    "candidate": 0.5,
    "established": 1.0,
    "proven": 1.5,
    "deprecated": 0.0,
}

STATE_MULTIPLIER: dict[BulletState, float] = {
    "draft": 0.8,
    "active": 1.0,
    "retired": 0.1,
}


def decayed_value(
    event: FeedbackEvent,
    now: datetime | None = None,
    half_life_days: float = DEFAULT_DECAY_HALF_LIFE_DAYS,
) -> float:
    """Present-day weight of one feedback event.

    Computes ``0.5 ** (age_days / half_life_days)``, so every event starts at
    one unit. A stored ``event.decayed_value`` is metadata and is not read here.
    Age is clamped at zero so future-dated events never exceed one unit, and an
    unparseable timestamp contributes 0 so corrupt data can never inflate a score.
    """
    event_time = parse_timestamp(event.timestamp)
    if event_time is None:
        return 0.0

    now = now or utc_now()
    age_days = (now - event_time).total_seconds() / SECONDS_PER_DAY
    return 0.5 ** (max(0.0, age_days) / half_life_days)


def decayed_counts(
    bullet: Bullet,
    now: datetime | None = None,
    half_life_days: float = DEFAULT_DECAY_HALF_LIFE_DAYS,
) -> tuple[float, float]:
    """Sum decayed event values per type -> (decayed_helpful, decayed_harmful)."""
    now = now or utc_now()
    helpful = 0.0
    harmful = 0.0
    for event in bullet.feedback_events:
        value = decayed_value(event, now, half_life_days)
        if event.type == "helpful":
            helpful += value
        else:
            harmful += value
    return helpful, harmful


def effective_score(bullet: Bullet, config: CassConfig, now: datetime | None = None) -> float:
    """Decayed, maturity- and state-weighted score of a bullet.

    Deprecated bullets always score 0, whatever their remaining helpful history.
    """
    if bullet.deprecated or bullet.maturity == "deprecated":
        return 0.0

    helpful, harmful = decayed_counts(bullet, now, config.scoring.decay_half_life_days)
    raw = helpful - config.scoring.harmful_multiplier * harmful
    return raw * MATURITY_MULTIPLIER[bullet.maturity] * STATE_MULTIPLIER[bullet.state]


def is_stale(bullet: Bullet, stale_days: float = 90, now: datetime | None = None) -> bool:
    """True when the bullet has seen no feedback (or, lacking any, was created) in ``stale_days``.

    Unreadable timestamps never make a bullet stale.
    """
    now = now or utc_now()
    if bullet.feedback_events:
        times = [parse_timestamp(e.timestamp) for e in bullet.feedback_events]
        known = [t for t in times if t is not None]
        if not known:
            return False
        last_seen = max(known)
    else:
        last_seen = parse_timestamp(bullet.created_at)
        if last_seen is None:
            return False

    return (now - last_seen).total_seconds() > stale_days * SECONDS_PER_DAY
