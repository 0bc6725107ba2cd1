from typing import Any

from cass_memory.utils import extract_agent_from_path, generate_bullet_id, now_iso

from .errors import ValidationError
from .schema import (
    DEFAULT_DECAY_HALF_LIFE_DAYS,
    Bullet,
    BulletState,
    DeprecatedPattern,
    FeedbackEvent,
    NewBulletData,
    Playbook,
)


def create_empty_playbook() -> Playbook:
    return Playbook()


def find_bullet(playbook: Playbook, bullet_id: str | None) -> Bullet | None:
    """Find a bullet by ID."""
    if not bullet_id:
        return None
    for bullet in playbook.bullets:
        if bullet.id == bullet_id:
            return bullet
    return None


def add_bullet(
    playbook: Playbook,
    data: NewBulletData | dict[str, Any],
    source_session: str | None = None,
    decay_half_life_days: float = DEFAULT_DECAY_HALF_LIFE_DAYS,
    state: BulletState = "draft",
) -> Bullet:
    """Create a candidate bullet from a partial body and append it to the playbook.

    Raises:
        ValidationError: If content/category are empty or the requested id is taken
    """
    if not isinstance(data, NewBulletData):
        data = NewBulletData.model_validate(data)

    content = data.content.strip()
    category = data.category.strip()
    if not content or not category:
        raise ValidationError("New bullet requires non-empty content and category")

    if data.id is not None and find_bullet(playbook, data.id) is not None:
        raise ValidationError(f"Bullet id already exists: {data.id}")

    kind = data.kind or ("anti_pattern" if data.is_negative else "stack_pattern")
    is_negative = data.is_negative if data.is_negative is not None else kind == "anti_pattern"
    timestamp = now_iso()

    bullet = Bullet(
        id=data.id or generate_bullet_id(),
        scope=data.scope or "global",
        workspace=data.workspace,
        category=category,
        content=content,
        kind=kind,
        type="anti-pattern" if kind == "anti_pattern" else "rule",
        is_negative=is_negative,
        state=state,
        maturity="candidate",
        created_at=timestamp,
        updated_at=timestamp,
        source_sessions=[source_session] if source_session else [],
        source_agents=[extract_agent_from_path(source_session)] if source_session else [],
        tags=list(dict.fromkeys(data.tags)),
        confidence_decay_half_life_days=decay_half_life_days,
    )
    playbook.bullets.append(bullet)
    return bullet


def record_feedback(bullet: Bullet, event: FeedbackEvent) -> None:
    """Append a feedback event and resync the derived counters."""
    bullet.feedback_events.append(event)
    bullet.sync_counters()
    bullet.updated_at = now_iso()
    if event.type == "helpful":
        bullet.last_validated_at = bullet.updated_at
    if event.session_path and event.session_path not in bullet.source_sessions:
        bullet.source_sessions.append(event.session_path)


def deprecate_bullet(
    playbook: Playbook,
    bullet_id: str,
    reason: str | None = None,
    replaced_by: str | None = None,
) -> bool:
    """Mark a bullet deprecated. Content and history are left untouched.

    Returns:
        False if no bullet has this id
    """
    bullet = find_bullet(playbook, bullet_id)
    if bullet is None:
        return False

    timestamp = now_iso()
    reason = reason or "Deprecated"
    bullet.deprecated = True
    bullet.maturity = "deprecated"
    bullet.deprecated_at = timestamp
    bullet.deprecation_reason = reason
    bullet.updated_at = timestamp
    if replaced_by:
        bullet.replaced_by = replaced_by

    playbook.deprecated_patterns.append(
        DeprecatedPattern(
            pattern=bullet.content,
            deprecated_at=timestamp,
            reason=reason,
            replacement=replaced_by,
        )
    )
    return True


def merge_playbook_views(global_playbook: Playbook, workspace_playbook: Playbook | None) -> Playbook:
    """Read-only union of the global and workspace playbooks.

    Used as dedup context when curating one of the two layers. Bullets are shared
    by reference; the workspace copy wins on an id collision.
    """
    if workspace_playbook is None:
        return global_playbook

    by_id: dict[str, Bullet] = {b.id: b for b in global_playbook.bullets}
    for bullet in workspace_playbook.bullets:
        by_id[bullet.id] = bullet

    return Playbook(
        name="merged",
        description="Merged global + workspace view",
        metadata=global_playbook.metadata,
        bullets=list(by_id.values()),
    )
