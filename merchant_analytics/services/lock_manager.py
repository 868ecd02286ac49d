"""Per-user run lock.

WHAT:
    One Redis string per user, `analytics-status:{user_id}`, whose value is the
    run status (queued, processing, completed, failed).

WHY:
    - Guards against duplicate concurrent runs for the same user (SET NX)
    - Doubles as the observable run state for operators and the status API
    - Expires after 12h so an abandoned run can't block a user forever

STATE MACHINE:
    absent -> queued -> processing -> {completed | failed}
    absent again on TTL expiry or explicit release.

REFERENCES:
    - merchant_analytics/services/flow_orchestrator.py
"""

from __future__ import annotations

import logging
from typing import Optional

from redis.asyncio import Redis

from merchant_analytics.models import LockStatus

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "analytics-status"
DEFAULT_LOCK_TTL_SECONDS = 12 * 60 * 60


def lock_key(user_id: str) -> str:
    return f"{LOCK_KEY_PREFIX}:{user_id}"


class LockManager:
    """Set-if-absent lock with a status value.

    Usage:
        locks = LockManager(redis)
        if not await locks.try_acquire(user_id):
            raise RunConflictError(user_id, await locks.get_status(user_id))
    """

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def try_acquire(self, user_id: str) -> bool:
        """Set status to `queued` only if no lock exists. Returns False if one does."""
        acquired = await self.redis.set(
            lock_key(user_id),
            LockStatus.queued.value,
            ex=self.ttl_seconds,
            nx=True,
        )
        if acquired:
            logger.info("[LOCK] Acquired lock for user %s (ttl=%ss)", user_id, self.ttl_seconds)
        return bool(acquired)

    async def set_status(self, user_id: str, status: LockStatus) -> bool:
        """Overwrite the status, keeping the original expiry.

        Only applies while the lock exists: once the TTL has expired the user
        is free to re-trigger, and writing without XX would recreate the key
        with no expiry at all.

        Returns:
            True if the status was written, False if the lock had expired
        """
        written = await self.redis.set(
            lock_key(user_id),
            LockStatus(status).value,
            keepttl=True,
            xx=True,
        )
        if not written:
            logger.warning(
                "[LOCK] Lock for user %s expired before transition to '%s'",
                user_id, LockStatus(status).value,
            )
        return bool(written)

    async def get_status(self, user_id: str) -> Optional[LockStatus]:
        value = await self.redis.get(lock_key(user_id))
        if value is None:
            return None
        try:
            return LockStatus(value)
        except ValueError:
            logger.error("[LOCK] Unrecognized lock value %r for user %s", value, user_id)
            return None

    async def release(self, user_id: str) -> None:
        await self.redis.delete(lock_key(user_id))
        logger.info("[LOCK] Released lock for user %s", user_id)

    async def ttl(self, user_id: str) -> Optional[int]:
        """Seconds until the lock expires, or None if there is no lock."""
        remaining = await self.redis.ttl(lock_key(user_id))
        return remaining if remaining >= 0 else None
