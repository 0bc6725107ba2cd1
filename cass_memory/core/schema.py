from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, Field, TypeAdapter, model_validator

from cass_memory.utils import now_iso

BulletScope = Literal["global", "workspace", "language", "framework", "task"]
BulletState = Literal["draft", "active", "retired"]
BulletMaturity = Literal["candidate", "established", "proven", "deprecated"]
BulletType = Literal["rule", "anti-pattern"]
FeedbackType = Literal["helpful", "harmful"]

BulletKind = Literal[
    "project_convention",
    "stack_pattern",
    "workflow_rule",
    "anti_pattern",
]

# Loose kind names accepted on input -> canonical kind
KIND_ALIASES: dict[str, BulletKind] = {
    "rule": "stack_pattern",
    "pattern": "stack_pattern",
    "anti-pattern": "anti_pattern",
    "antipattern": "anti_pattern",
    # Canonical names map to themselves
    "project_convention": "project_convention",
    "stack_pattern": "stack_pattern",
    "workflow_rule": "workflow_rule",
    "anti_pattern": "anti_pattern",
}

DEFAULT_DECAY_HALF_LIFE_DAYS = 90.0
PLAYBOOK_SCHEMA_VERSION = 2


def normalize_kind(value: str) -> BulletKind:
    """Normalize kind value, mapping loose names onto the canonical kinds."""
    if value in KIND_ALIASES:
        return KIND_ALIASES[value]
    raise ValueError(f"Invalid kind: {value}. Must be one of: {list(KIND_ALIASES.keys())}")


NormalizedKind = Annotated[BulletKind, BeforeValidator(normalize_kind)]


class FeedbackEvent(BaseModel):
    type: FeedbackType
    # Kept as the raw string so an unreadable timestamp survives a round trip
    timestamp: str = Field(default_factory=now_iso)
    session_path: str | None = None
    reason: str | None = None
    context: str | None = None
    # Implicit outcome weight, kept for reporting; scoring ignores it
    decayed_value: float | None = None


class Bullet(BaseModel):
    id: str
    scope: BulletScope = "global"
    workspace: str | None = None
    category: str
    content: str
    kind: NormalizedKind = "stack_pattern"
    type: BulletType = "rule"
    is_negative: bool = False
    state: BulletState = "draft"
    maturity: BulletMaturity = "candidate"
    feedback_events: list[FeedbackEvent] = Field(default_factory=list)
    # Derived from feedback_events, see sync_counters()
    helpful_count: int = 0
    harmful_count: int = 0
    pinned: bool = False
    pinned_reason: str | None = None
    deprecated: bool = False
    deprecated_at: str | None = None
    deprecation_reason: str | None = None
    replaced_by: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    promoted_at: str | None = None
    last_validated_at: str | None = None
    source_sessions: list[str] = Field(default_factory=list)
    source_agents: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    derived_from: list[str] = Field(default_factory=list)
    confidence_decay_half_life_days: float = DEFAULT_DECAY_HALF_LIFE_DAYS

    @model_validator(mode="after")
    def _derive_counters(self) -> "Bullet":
        self.sync_counters()
        return self

    def sync_counters(self) -> None:
        """Recompute the helpful/harmful caches from the event log."""
        self.helpful_count = sum(1 for e in self.feedback_events if e.type == "helpful")
        self.harmful_count = sum(1 for e in self.feedback_events if e.type == "harmful")

    @property
    def is_live(self) -> bool:
        """False for deprecated or retired bullets."""
        return not (self.deprecated or self.maturity == "deprecated" or self.state == "retired")


class DeprecatedPattern(BaseModel):
    pattern: str
    deprecated_at: str = Field(default_factory=now_iso)
    reason: str
    replacement: str | None = None


class PlaybookMetadata(BaseModel):
    created_at: str = Field(default_factory=now_iso)
    last_reflection: str | None = None
    total_reflections: int = 0
    total_sessions_processed: int = 0


class Playbook(BaseModel):
    schema_version: int = PLAYBOOK_SCHEMA_VERSION
    name: str = "playbook"
    description: str = "Auto-generated by cass-memory"
    metadata: PlaybookMetadata = Field(default_factory=PlaybookMetadata)
    deprecated_patterns: list[DeprecatedPattern] = Field(default_factory=list)
    bullets: list[Bullet] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self) -> "Playbook":
        seen: set[str] = set()
        for bullet in self.bullets:
            if bullet.id in seen:
                raise ValueError(f"Duplicate bullet id: {bullet.id}")
            seen.add(bullet.id)
        return self


# --- Deltas ---


class NewBulletData(BaseModel):
    """Partial bullet body carried by an ``add`` delta."""

    content: str = ""
    category: str = ""
    kind: NormalizedKind | None = None
    scope: BulletScope | None = None
    workspace: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_negative: bool | None = None
    id: str | None = None  # Optional: for idempotent replay


class BulletUpdate(BaseModel):
    """Fields an ``update`` delta may overwrite. Unset fields are left alone."""

    content: str | None = None
    category: str | None = None
    kind: NormalizedKind | None = None
    scope: BulletScope | None = None
    workspace: str | None = None
    tags: list[str] | None = None
    state: BulletState | None = None
    pinned: bool | None = None
    pinned_reason: str | None = None


class AddDelta(BaseModel):
    type: Literal["add"] = "add"
    bullet: NewBulletData
    reason: str | None = None
    source_session: str | None = None


class UpdateDelta(BaseModel):
    type: Literal["update"] = "update"
    bullet_id: str
    changes: BulletUpdate = Field(default_factory=BulletUpdate)
    reason: str | None = None
    source_session: str | None = None


class HelpfulDelta(BaseModel):
    type: Literal["helpful"] = "helpful"
    bullet_id: str
    reason: str | None = None
    context: str | None = None
    source_session: str | None = None


class HarmfulDelta(BaseModel):
    type: Literal["harmful"] = "harmful"
    bullet_id: str
    reason: str | None = None
    context: str | None = None
    source_session: str | None = None


class DeprecateDelta(BaseModel):
    type: Literal["deprecate"] = "deprecate"
    bullet_id: str
    reason: str | None = None
    replaced_by: str | None = None
    source_session: str | None = None


class MergeDelta(BaseModel):
    type: Literal["merge"] = "merge"
    bullet_ids: list[str]
    reason: str | None = None
    source_session: str | None = None


Delta = Annotated[
    AddDelta | UpdateDelta | HelpfulDelta | HarmfulDelta | DeprecateDelta | MergeDelta,
    Field(discriminator="type"),
]

_DELTA_ADAPTER: TypeAdapter[Delta] = TypeAdapter(Delta)
DELTA_TYPES = (AddDelta, UpdateDelta, HelpfulDelta, HarmfulDelta, DeprecateDelta, MergeDelta)


def parse_delta(raw: Any) -> Delta:
    """Validate a raw mapping (or an existing delta model) into a typed delta.

    Raises:
        pydantic.ValidationError: If the payload does not match any delta variant
    """
    if isinstance(raw, DELTA_TYPES):
        return raw
    return _DELTA_ADAPTER.validate_python(raw)


# --- Curation reports ---


class InversionReport(BaseModel):
    original_id: str
    original_content: str
    anti_pattern_id: str
    anti_pattern_content: str
    reason: str


class MaturityChange(BaseModel):
    bullet_id: str
    from_maturity: BulletMaturity
    to_maturity: BulletMaturity
    reason: str


class ConflictReport(BaseModel):
    new_bullet_content: str
    conflicting_bullet_id: str
    conflicting_content: str
    reason: str


DecisionPhase = Literal[
    "add", "update", "feedback", "dedup", "conflict", "merge", "inversion",
    "promotion", "demotion", "validation",
]
DecisionAction = Literal["accepted", "rejected", "skipped", "modified"]


class DecisionLogEntry(BaseModel):
    timestamp: str = Field(default_factory=now_iso)
    phase: DecisionPhase
    action: DecisionAction
    reason: str
    bullet_id: str | None = None
    content: str | None = None
    details: dict[str, Any] | None = None
