"""Playbook statistics."""

from collections import Counter
from datetime import datetime
from typing import Any

from cass_memory.core.config import CassConfig, get_config
from cass_memory.core.schema import Playbook
from cass_memory.core.scoring import effective_score, is_stale


def playbook_stats(
    playbook: Playbook,
    config: CassConfig | None = None,
    top_n: int = 5,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Summarize a playbook's health.

    Returns:
        Dict containing total, by_maturity, by_state, by_kind, helpful/harmful
        totals and ratio, live/stale/at-risk/anti-pattern counts and top_performers
    """
    config = config or get_config()
    bullets = playbook.bullets
    live = [b for b in bullets if b.is_live]

    total_helpful = sum(b.helpful_count for b in bullets)
    total_harmful = sum(b.harmful_count for b in bullets)
    helpful_ratio = total_helpful / max(1, total_helpful + total_harmful)

    scored = [(b, effective_score(b, config, now)) for b in live]
    top = sorted(scored, key=lambda pair: pair[1], reverse=True)[:top_n]

    return {
        "total": len(bullets),
        "live": len(live),
        "by_maturity": dict(Counter(b.maturity for b in bullets)),
        "by_state": dict(Counter(b.state for b in bullets)),
        "by_kind": dict(Counter(b.kind for b in bullets)),
        "total_helpful": total_helpful,
        "total_harmful": total_harmful,
        "helpful_ratio": round(helpful_ratio, 3),
        "stale_count": sum(1 for b in live if is_stale(b, config.curation.stale_days, now)),
        "at_risk_count": sum(1 for _, score in scored if score < 0),
        "anti_pattern_count": sum(1 for b in live if b.kind == "anti_pattern"),
        "deprecated_patterns": len(playbook.deprecated_patterns),
        "top_performers": [
            {
                "id": b.id,
                "content": b.content,
                "score": round(score, 3),
                "helpful_count": b.helpful_count,
            }
            for b, score in top
        ],
    }
