"""Service wiring and FastAPI dependencies.

This module builds the object graph shared by the API, the Celery tasks and
the inbound event consumer:
- build_container: assemble adapters from settings (overridable for tests)
- get_container: process-wide cached container
- get_orchestrator / get_admin_handler: FastAPI dependencies

Backends are chosen by configuration: LOCK_BACKEND (redis | inprocess) and
SCHEDULER_BACKEND (inprocess | celery).
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

import redis
from sqlalchemy.orm import Session

from config import Settings, get_settings
from events.bus import EventBusPort
from events.publisher import EventPublisher
from infrastructure.broadcast_client import BroadcastClient
from infrastructure.redis_bus import RedisStreamsEventBus
from matching.admin_override import AdminOverrideHandler
from matching.candidates import SqlCandidateRepository
from matching.locks import InProcessRequestLocks, RedisRequestLocks, RequestLocks
from matching.orchestrator import MatchingConfig, MatchingOrchestrator
from matching.peak_season import PeakSeasonPolicy
from matching.ports import CandidateRepositoryPort, TimeoutSchedulerPort
from matching.scorer import AgentScorer, ScoringWeights
from models.base import utcnow
from scheduler.heap_scheduler import HeapTimeoutScheduler

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """Wired service objects."""
    settings: Settings
    session_factory: Callable[[], Session]
    bus: EventBusPort
    publisher: EventPublisher
    scheduler: TimeoutSchedulerPort
    orchestrator: MatchingOrchestrator
    admin_handler: AdminOverrideHandler
    broadcaster: Optional[BroadcastClient] = None

    def start(self) -> None:
        """Start background dispatch for the in-process scheduler."""
        if isinstance(self.scheduler, HeapTimeoutScheduler):
            self.scheduler.start()

    def close(self) -> None:
        if isinstance(self.scheduler, HeapTimeoutScheduler):
            self.scheduler.stop()
        if self.broadcaster is not None:
            self.broadcaster.close()


def _redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    )


def build_container(
    settings: Settings,
    session_factory: Optional[Callable[[], Session]] = None,
    bus: Optional[EventBusPort] = None,
    candidates: Optional[CandidateRepositoryPort] = None,
    scheduler: Optional[TimeoutSchedulerPort] = None,
    locks: Optional[RequestLocks] = None,
    broadcaster=None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> Container:
    """Assemble the service from settings; any adapter can be injected.

    Raises:
        PeakSeasonConfigError: If the configured peak table is invalid
        ValueError: If scoring weights are invalid
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    redis_client = None

    def shared_redis() -> redis.Redis:
        nonlocal redis_client
        if redis_client is None:
            redis_client = _redis_client(settings)
        return redis_client

    if bus is None:
        bus = RedisStreamsEventBus(shared_redis(), stream_prefix=settings.EVENT_STREAM_PREFIX)

    if broadcaster is None and settings.BROADCAST_ENABLED:
        broadcaster = BroadcastClient(
            settings.BROADCAST_GATEWAY_URL,
            settings.INTERNAL_SERVICE_SECRET,
            timeout=settings.BROADCAST_TIMEOUT_SECONDS,
        )

    publisher = EventPublisher(
        bus,
        broadcaster=broadcaster,
        max_retries=settings.EVENT_PUBLISH_MAX_RETRIES,
        retry_delay_base=settings.EVENT_PUBLISH_RETRY_BASE_SECONDS,
        sleep=sleep,
    )

    if locks is None:
        if settings.LOCK_BACKEND == "redis":
            locks = RedisRequestLocks(
                shared_redis(),
                timeout_seconds=settings.REQUEST_LOCK_TIMEOUT_SECONDS,
                ttl_seconds=settings.REQUEST_LOCK_TTL_SECONDS,
            )
        else:
            locks = InProcessRequestLocks(timeout_seconds=settings.REQUEST_LOCK_TIMEOUT_SECONDS)

    if scheduler is None:
        if settings.SCHEDULER_BACKEND == "celery":
            from scheduler.celery_scheduler import CeleryTimeoutScheduler
            from workers.celery_app import celery_app
            scheduler = CeleryTimeoutScheduler(celery_app, shared_redis())
        else:
            scheduler = HeapTimeoutScheduler(clock=clock, max_workers=settings.SCHEDULER_WORKERS)

    orchestrator = MatchingOrchestrator(
        session_factory=session_factory,
        candidates=candidates or SqlCandidateRepository(session_factory),
        scorer=AgentScorer(ScoringWeights.from_settings(settings)),
        peak_policy=PeakSeasonPolicy.from_settings(settings),
        scheduler=scheduler,
        publisher=publisher,
        locks=locks,
        config=MatchingConfig.from_settings(settings),
        clock=clock,
        sleep=sleep,
    )

    logger.info(
        "Matching service wired",
        extra={
            "lock_backend": settings.LOCK_BACKEND,
            "scheduler_backend": settings.SCHEDULER_BACKEND,
            "peak_season_enabled": settings.PEAK_SEASON_MODE_ENABLED,
        }
    )

    return Container(
        settings=settings,
        session_factory=session_factory,
        bus=bus,
        publisher=publisher,
        scheduler=scheduler,
        orchestrator=orchestrator,
        admin_handler=AdminOverrideHandler(orchestrator, settings.ADMIN_REASON_MIN_LENGTH),
        broadcaster=broadcaster if isinstance(broadcaster, BroadcastClient) else None,
    )


@lru_cache()
def get_container() -> Container:
    """Process-wide container. Call get_container.cache_clear() to rebuild."""
    return build_container(get_settings())


def get_orchestrator() -> MatchingOrchestrator:
    return get_container().orchestrator


def get_admin_handler() -> AdminOverrideHandler:
    return get_container().admin_handler
