"""Configuration loader for cass-memory.

Loads from configs/default.toml (when present) and overrides with environment
variables. Every heuristic threshold of the scoring and curation engine is a
named, overridable value here.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class ScoringConfig:
    decay_half_life_days: float = 90.0
    harmful_multiplier: float = 4.0
    min_feedback_for_active: float = 3.0
    min_helpful_for_proven: float = 10.0
    max_harmful_ratio_for_proven: float = 0.1
    deprecate_harmful_ratio: float = 0.3
    deprecate_min_total: float = 2.0


@dataclass
class CurationConfig:
    dedup_similarity_threshold: float = 0.85
    prune_harmful_threshold: float = 3.0
    similarity_backend: str = "jaccard"
    initial_state: str = "draft"
    dedupe_feedback_per_session: bool = False
    stale_days: int = 90


@dataclass
class StorageConfig:
    playbook_path: str = "~/.cass-memory/playbook.json"
    workspace_dir: str = ".cass"
    lock_timeout: float = 10.0
    # "empty": degrade a corrupt playbook to an empty one (fail-open); "raise": surface it
    on_corrupt: str = "empty"
    backup_corrupt: bool = True


@dataclass
class ConcurrencyConfig:
    max_workers: int = 3
    session_timeout: float = 120.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"


@dataclass
class CassConfig:
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    curation: CurationConfig = field(default_factory=CurationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _validate_config(config: CassConfig) -> None:
    """Validate configuration values.

    Args:
        config: CassConfig to validate

    Raises:
        ValueError: If validation fails
    """
    scoring = config.scoring
    if scoring.decay_half_life_days <= 0:
        val = scoring.decay_half_life_days
        raise ValueError(f"scoring.decay_half_life_days must be > 0, got {val}")
    if scoring.harmful_multiplier < 0:
        raise ValueError(f"scoring.harmful_multiplier must be >= 0, got {scoring.harmful_multiplier}")
    for name in ("max_harmful_ratio_for_proven", "deprecate_harmful_ratio"):
        val = getattr(scoring, name)
        if not 0.0 <= val <= 1.0:
            raise ValueError(f"scoring.{name} must be in [0.0, 1.0], got {val}")
    for name in ("min_feedback_for_active", "min_helpful_for_proven", "deprecate_min_total"):
        val = getattr(scoring, name)
        if val < 0:
            raise ValueError(f"scoring.{name} must be >= 0, got {val}")

    curation = config.curation
    if not 0.0 <= curation.dedup_similarity_threshold <= 1.0:
        val = curation.dedup_similarity_threshold
        raise ValueError(f"curation.dedup_similarity_threshold must be in [0.0, 1.0], got {val}")
    if curation.prune_harmful_threshold < 0:
        val = curation.prune_harmful_threshold
        raise ValueError(f"curation.prune_harmful_threshold must be >= 0, got {val}")
    valid_backends = {"jaccard", "minhash"}
    if curation.similarity_backend not in valid_backends:
        val = curation.similarity_backend
        raise ValueError(f"curation.similarity_backend must be one of {valid_backends}, got {val}")
    valid_states = {"draft", "active"}
    if curation.initial_state not in valid_states:
        val = curation.initial_state
        raise ValueError(f"curation.initial_state must be one of {valid_states}, got {val}")

    storage = config.storage
    if storage.lock_timeout < 0:
        raise ValueError(f"storage.lock_timeout must be >= 0, got {storage.lock_timeout}")
    valid_policies = {"empty", "raise"}
    if storage.on_corrupt not in valid_policies:
        val = storage.on_corrupt
        raise ValueError(f"storage.on_corrupt must be one of {valid_policies}, got {val}")

    if config.concurrency.max_workers < 1:
        val = config.concurrency.max_workers
        raise ValueError(f"concurrency.max_workers must be >= 1, got {val}")

    # Validate logging level
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if config.logging.level.upper() not in valid_levels:
        raise ValueError(f"logging.level must be one of {valid_levels}, got {config.logging.level}")
    valid_formats = {"json", "text"}
    if config.logging.format not in valid_formats:
        raise ValueError(f"logging.format must be one of {valid_formats}, got {config.logging.format}")


def _env_bool(name: str, default: Any) -> bool:
    return str(os.getenv(name, default)).lower() in ("true", "1", "yes")


def load_config(config_path: Path | None = None) -> CassConfig:
    """Load configuration from TOML file and override with env vars.

    Args:
        config_path: Path to TOML config file. Defaults to configs/default.toml;
                     a missing default file means built-in defaults are used.

    Returns:
        CassConfig instance with merged configuration

    Raises:
        ValueError: If configuration validation fails
    """
    if config_path is None:
        # Default to configs/default.toml relative to project root
        config_path = Path(__file__).parent.parent.parent / "configs" / "default.toml"
        config_dict: dict[str, Any] = {}
        if config_path.exists():
            with open(config_path, "rb") as f:
                config_dict = tomllib.load(f)
    else:
        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

    scoring_dict = config_dict.get("scoring", {})
    curation_dict = config_dict.get("curation", {})
    storage_dict = config_dict.get("storage", {})
    concurrency_dict = config_dict.get("concurrency", {})
    logging_dict = config_dict.get("logging", {})

    defaults = CassConfig()

    # Override with environment variables (CASS_ prefix)
    scoring = ScoringConfig(
        decay_half_life_days=float(os.getenv(
            "CASS_DECAY_HALF_LIFE_DAYS",
            scoring_dict.get("decay_half_life_days", defaults.scoring.decay_half_life_days),
        )),
        harmful_multiplier=float(os.getenv(
            "CASS_HARMFUL_MULTIPLIER",
            scoring_dict.get("harmful_multiplier", defaults.scoring.harmful_multiplier),
        )),
        min_feedback_for_active=float(scoring_dict.get(
            "min_feedback_for_active", defaults.scoring.min_feedback_for_active
        )),
        min_helpful_for_proven=float(scoring_dict.get(
            "min_helpful_for_proven", defaults.scoring.min_helpful_for_proven
        )),
        max_harmful_ratio_for_proven=float(scoring_dict.get(
            "max_harmful_ratio_for_proven", defaults.scoring.max_harmful_ratio_for_proven
        )),
        deprecate_harmful_ratio=float(scoring_dict.get(
            "deprecate_harmful_ratio", defaults.scoring.deprecate_harmful_ratio
        )),
        deprecate_min_total=float(scoring_dict.get(
            "deprecate_min_total", defaults.scoring.deprecate_min_total
        )),
    )

    curation = CurationConfig(
        dedup_similarity_threshold=float(os.getenv(
            "CASS_DEDUP_THRESHOLD",
            curation_dict.get(
                "dedup_similarity_threshold", defaults.curation.dedup_similarity_threshold
            ),
        )),
        prune_harmful_threshold=float(os.getenv(
            "CASS_PRUNE_HARMFUL_THRESHOLD",
            curation_dict.get("prune_harmful_threshold", defaults.curation.prune_harmful_threshold),
        )),
        similarity_backend=os.getenv(
            "CASS_SIMILARITY_BACKEND",
            curation_dict.get("similarity_backend", defaults.curation.similarity_backend),
        ),
        initial_state=curation_dict.get("initial_state", defaults.curation.initial_state),
        dedupe_feedback_per_session=_env_bool(
            "CASS_DEDUPE_FEEDBACK_PER_SESSION",
            curation_dict.get(
                "dedupe_feedback_per_session", defaults.curation.dedupe_feedback_per_session
            ),
        ),
        stale_days=int(curation_dict.get("stale_days", defaults.curation.stale_days)),
    )

    storage = StorageConfig(
        playbook_path=os.getenv(
            "CASS_PLAYBOOK_PATH",
            storage_dict.get("playbook_path", defaults.storage.playbook_path),
        ),
        workspace_dir=storage_dict.get("workspace_dir", defaults.storage.workspace_dir),
        lock_timeout=float(os.getenv(
            "CASS_LOCK_TIMEOUT",
            storage_dict.get("lock_timeout", defaults.storage.lock_timeout),
        )),
        on_corrupt=os.getenv(
            "CASS_ON_CORRUPT",
            storage_dict.get("on_corrupt", defaults.storage.on_corrupt),
        ),
        backup_corrupt=_env_bool(
            "CASS_BACKUP_CORRUPT",
            storage_dict.get("backup_corrupt", defaults.storage.backup_corrupt),
        ),
    )

    concurrency = ConcurrencyConfig(
        max_workers=int(os.getenv(
            "CASS_MAX_WORKERS",
            concurrency_dict.get("max_workers", defaults.concurrency.max_workers),
        )),
        session_timeout=float(concurrency_dict.get(
            "session_timeout", defaults.concurrency.session_timeout
        )),
    )

    log_level = os.getenv("CASS_LOG_LEVEL", logging_dict.get("level", defaults.logging.level))
    log_format = os.getenv("CASS_LOG_FORMAT", logging_dict.get("format", defaults.logging.format))

    config = CassConfig(
        scoring=scoring,
        curation=curation,
        storage=storage,
        concurrency=concurrency,
        logging=LoggingConfig(level=log_level, format=log_format),
    )

    # Validate before returning
    _validate_config(config)

    return config


# Global config instance
_config: CassConfig | None = None


def get_config() -> CassConfig:
    """Get the global config instance, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached global config so the next get_config() reloads it."""
    global _config
    _config = None
