"""Celery delayed-task timeout scheduler.

Each armed match becomes a ``matching.expire_match`` task with an ETA. The
task id is kept in Redis under the match id so cancel and re-arm can revoke
it from any process. Revocation is best effort; a task that still runs is
discarded by the orchestrator because its match is no longer PENDING, and the
periodic ``matching.sweep_expired`` task covers lost tasks.
"""

import logging
from datetime import datetime
from typing import Optional

from celery import Celery
from redis import Redis
from redis.exceptions import RedisError

from matching.ports import TimeoutSchedulerPort
from models.base import utcnow

logger = logging.getLogger(__name__)

EXPIRE_TASK_NAME = "matching.expire_match"


class CeleryTimeoutScheduler(TimeoutSchedulerPort):
    """Timeout scheduler backed by Celery ETA tasks.

    Args:
        celery_app: Celery application used to send and revoke tasks
        redis_client: Redis client holding match_id -> task_id
        key_prefix: Redis key prefix for task ids
        grace_seconds: Extra TTL on the task-id key past expires_at
    """

    def __init__(
        self,
        celery_app: Celery,
        redis_client: Redis,
        key_prefix: str = "matching:timer",
        grace_seconds: int = 3600,
    ):
        super().__init__()
        self.celery_app = celery_app
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.grace_seconds = grace_seconds

    def _key(self, match_id: str) -> str:
        return f"{self.key_prefix}:{match_id}"

    def arm(self, match_id: str, request_id: str, expires_at: datetime) -> None:
        self.cancel(match_id)
        result = self.celery_app.send_task(
            EXPIRE_TASK_NAME,
            kwargs={"request_id": request_id, "match_id": match_id},
            eta=expires_at,
        )
        ttl = max(int((expires_at - utcnow()).total_seconds()), 0) + self.grace_seconds
        try:
            self.redis.set(self._key(match_id), result.id, ex=ttl)
        except RedisError as e:
            logger.warning(
                f"Could not store timer task id for match {match_id}: {e}",
                extra={"request_id": request_id, "match_id": match_id}
            )
        logger.debug(
            f"Armed expiry task {result.id} for match {match_id}",
            extra={"request_id": request_id, "match_id": match_id}
        )

    def cancel(self, match_id: str) -> bool:
        try:
            task_id: Optional[bytes] = self.redis.get(self._key(match_id))
            if task_id is None:
                return False
            self.redis.delete(self._key(match_id))
        except RedisError as e:
            logger.warning(f"Could not look up timer for match {match_id}: {e}", extra={"match_id": match_id})
            return False

        if isinstance(task_id, bytes):
            task_id = task_id.decode("utf-8")
        self.celery_app.control.revoke(task_id)
        return True
