"""Bounded fan-out over independent sessions.

Each session is handled on its own worker; one session failing or timing out
is reported in its result and never cancels the others.
"""

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from cass_memory.core.config import CassConfig, get_config

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    session: str
    ok: bool
    value: Any = None
    error: str | None = None


def process_sessions(
    sessions: Sequence[str],
    handler: Callable[[str], Any],
    max_workers: int | None = None,
    timeout: float | None = None,
    config: CassConfig | None = None,
) -> list[SessionResult]:
    """
    Run ``handler(session)`` for every session on a bounded thread pool.

    Args:
        sessions: Session identifiers (e.g. transcript paths)
        handler: Work for one session; its return value lands in ``SessionResult.value``
        max_workers: Pool size; defaults to ``concurrency.max_workers``
        timeout: One deadline in seconds for the whole batch, counted from
            submission; sessions still queued or running when it passes are
            reported as timed out. Defaults to ``concurrency.session_timeout``
        config: Defaults source; the global config when omitted

    Returns:
        One SessionResult per session, in input order
    """
    config = config or get_config()
    max_workers = max_workers or config.concurrency.max_workers
    if timeout is None:
        timeout = config.concurrency.session_timeout

    if not sessions:
        return []

    results: list[SessionResult] = []
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cass-session")
    try:
        futures = [executor.submit(handler, session) for session in sessions]
        _, pending = wait(futures, timeout=timeout)
        for session, future in zip(sessions, futures, strict=True):
            if future in pending:
                future.cancel()
                logger.warning(f"Session {session} timed out after {timeout}s")
                results.append(SessionResult(session=session, ok=False, error=f"Timed out after {timeout}s"))
                continue
            try:
                value = future.result()
            except Exception as e:
                logger.error(f"Session {session} failed: {e}")
                results.append(SessionResult(session=session, ok=False, error=str(e) or type(e).__name__))
            else:
                results.append(SessionResult(session=session, ok=True, value=value))
    finally:
        # A timed-out handler may still be running; don't block on it
        executor.shutdown(wait=False, cancel_futures=True)

    failed = sum(1 for r in results if not r.ok)
    logger.info(f"Processed {len(results)} sessions ({failed} failed)")
    return results
