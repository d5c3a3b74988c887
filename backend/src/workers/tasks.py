"""Celery tasks for match expiry, outbox relay and terminal-state archival.

Tasks:
- matching.expire_match: ETA task armed by CeleryTimeoutScheduler
- matching.sweep_expired: periodic crash-safety sweep of overdue matches
- matching.relay_outbox: periodic relay of outbox rows left pending
- matching.archive_terminal: daily count of terminal states past retention
"""

import logging
from datetime import timedelta
from typing import Any, Dict

from celery import shared_task
from sqlalchemy import func, select

from dependencies import get_container
from matching.exceptions import TRANSIENT_ERRORS
from matching.status import TERMINAL_STATES
from models.base import utcnow
from models.matching_state import MatchingState

logger = logging.getLogger(__name__)


@shared_task(name="matching.expire_match", bind=True, max_retries=3)
def expire_match_task(self, request_id: str, match_id: str) -> Dict[str, Any]:
    """Expire one match when its response window closes.

    A match that is no longer PENDING, or whose deadline was extended, is
    left untouched. Transient errors are retried with backoff.

    Args:
        request_id: Request the match belongs to
        match_id: Match to expire

    Returns:
        Dict with the orchestrator outcome
    """
    orchestrator = get_container().orchestrator
    try:
        outcome = orchestrator.handle_timeout(request_id, match_id)
    except TRANSIENT_ERRORS as e:
        logger.warning(
            f"Expiry of match {match_id} failed, retrying: {e}",
            extra={"request_id": request_id, "match_id": match_id}
        )
        raise self.retry(exc=e, countdown=2 ** self.request.retries)

    return {"status": outcome.value, "request_id": request_id, "match_id": match_id}


@shared_task(name="matching.sweep_expired", bind=True)
def sweep_expired_task(self) -> Dict[str, Any]:
    """Expire every PENDING match whose deadline passed.

    Covers ETA tasks lost on a worker crash and in-process timers lost on a
    restart. Safe to run concurrently with the timers themselves.
    """
    expired = get_container().orchestrator.expire_overdue()
    return {"status": "completed", "expired": expired}


@shared_task(name="matching.relay_outbox", bind=True)
def relay_outbox_task(self) -> Dict[str, Any]:
    """Relay outbox rows the post-commit relay could not publish."""
    published = get_container().orchestrator.relay()
    if published:
        logger.info(f"Outbox relay published {published} pending events")
    return {"status": "completed", "published": published}


@shared_task(name="matching.archive_terminal", bind=True)
def archive_terminal_task(self) -> Dict[str, Any]:
    """Count terminal states older than the retention window.

    History is never deleted; the count feeds the archival export run by
    the data platform.

    Returns:
        Dict with counts per terminal status
    """
    container = get_container()
    cutoff = utcnow() - timedelta(days=container.settings.TERMINAL_STATE_RETENTION_DAYS)
    terminal = [s.value for s in TERMINAL_STATES]

    session = container.session_factory()
    try:
        rows = session.execute(
            select(MatchingState.status, func.count())
            .where(MatchingState.status.in_(terminal))
            .where(MatchingState.updated_at < cutoff)
            .group_by(MatchingState.status)
        ).all()
    finally:
        session.close()

    counts = {status: count for status, count in rows}
    result = {
        "status": "completed",
        "cutoff": cutoff.isoformat(),
        "archivable": sum(counts.values()),
        "by_status": counts,
    }
    logger.info("Terminal-state archival scan completed", extra=result)
    return result
