import hashlib
import json
import logging
import os
import secrets
import string
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_bullet_id() -> str:
    """Generate bullet ID in format: b-{base36 ms timestamp}-{6 random base36 chars}"""
    ts = _to_base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"b-{ts}-{rand}"


def content_hash(text: str) -> str:
    """Generate stable SHA-256 hash of whitespace/case-normalized text content"""
    normalized = " ".join((text or "").lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def utc_now() -> datetime:
    return datetime.now(UTC)


def now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp into an aware datetime, or None if it can't be read.

    Naive timestamps are treated as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def expand_path(path: str | os.PathLike[str]) -> Path:
    return Path(os.path.expandvars(str(path))).expanduser()


def extract_agent_from_path(session_path: str | None) -> str:
    """Best-effort guess of which agent produced a session, from its path."""
    lower = (session_path or "").lower()
    for marker, agent in (
        (".claude", "claude"),
        (".cursor", "cursor"),
        (".codex", "codex"),
        (".aider", "aider"),
    ):
        if marker in lower:
            return agent
    return "unknown"


def truncate(text: str, max_len: int = 100) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure structured JSON logging"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        class JSONFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                log_obj = {
                    "timestamp": datetime.now(UTC).isoformat(),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                }
                if record.exc_info:
                    log_obj["exception"] = self.formatException(record.exc_info)
                if isinstance(getattr(record, "extra", None), dict):
                    log_obj.update(record.extra)
                return json.dumps(log_obj, default=str)

        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.root.handlers = []
    logging.root.addHandler(handler)
    logging.root.setLevel(log_level)


def log_event(event_type: str, data: dict[str, Any]) -> None:
    """Log structured event with metadata"""
    logger = logging.getLogger("cass_memory.events")
    logger.info(event_type, extra={"extra": {"event_type": event_type, **data}})
