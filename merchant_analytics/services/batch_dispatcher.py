"""Batch dispatcher: pending-dispatch list -> Salesforce.

WHAT:
    Every cycle, drain the finalized results queued by finalization and push
    them to Salesforce in one bulk call.

WHY:
    - One bulk call per cycle instead of one per user keeps us well inside
      Salesforce API limits
    - Single-flight: a cycle that overlaps a running one is skipped (Redis
      SET NX guard across workers, plus a flag within this process)

DELIVERY:
    - Drain = LRANGE of the oldest n entries, then LTRIM of exactly those.
      Finalization RPUSHes at the tail, so concurrent appends are untouched.
    - If either step fails, the cycle aborts: nothing is removed and
      nothing is sent
    - If Salesforce fails, the drained entries go back to the head of the
      list for the next cycle. Duplicates are fine (Salesforce upserts by
      portal + merchant); losses are not.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from merchant_analytics.schemas import Top10Result
from merchant_analytics.telemetry import capture_exception

logger = logging.getLogger(__name__)


class BatchDispatcher:
    def __init__(self, redis: Redis, downstream, settings):
        """
        Args:
            redis: Client with decode_responses=True
            downstream: Object with `bulk_update_top10(results)` (SalesforceClient)
            settings: Settings
        """
        self.redis = redis
        self.downstream = downstream
        self.queue_key = settings.PENDING_DISPATCH_KEY
        self.lock_key = settings.DISPATCH_LOCK_KEY
        self.lock_ttl_seconds = settings.DISPATCH_LOCK_TTL_SECONDS
        self._running = False

    async def run_cycle(self) -> Dict:
        """Run one dispatch cycle. Never raises for downstream failures."""
        if self._running:
            logger.warning("[DISPATCH] Salesforce update is already in progress. Skipping this run.")
            return {"status": "skipped"}

        self._running = True
        token = uuid.uuid4().hex
        try:
            if not await self.redis.set(self.lock_key, token, nx=True, ex=self.lock_ttl_seconds):
                logger.warning("[DISPATCH] Another worker holds the dispatch lock. Skipping this run.")
                return {"status": "skipped"}
            try:
                return await self._dispatch()
            finally:
                await self._release_lock(token)
        finally:
            self._running = False

    async def _dispatch(self) -> Dict:
        pending = await self.redis.llen(self.queue_key)
        if pending == 0:
            logger.info("[DISPATCH] No pending updates for Salesforce.")
            return {"status": "empty", "dispatched": 0}

        logger.info("[DISPATCH] Found %d completed user analytics to push to Salesforce.", pending)

        entries = await self._read_and_truncate(pending)
        if entries is None:
            return {"status": "aborted", "dispatched": 0}

        results = self._deserialize(entries)
        if not results:
            return {"status": "empty", "dispatched": 0, "dropped": len(entries)}

        try:
            await self.downstream.bulk_update_top10(results)
        except Exception as e:
            logger.error("[DISPATCH] Failed to push %d updates to Salesforce: %s", len(results), e)
            capture_exception(e, extra={"operation": "salesforce_dispatch", "entries": len(results)})
            await self._requeue([r.model_dump_json() for r in results])
            return {"status": "requeued", "dispatched": 0, "requeued": len(results)}

        logger.info("[DISPATCH] Successfully pushed %d updates to Salesforce.", len(results))
        return {
            "status": "dispatched",
            "dispatched": len(results),
            "dropped": len(entries) - len(results),
        }

    async def _read_and_truncate(self, count: int) -> Optional[List[str]]:
        """Take the oldest `count` entries off the list.

        LRANGE first, LTRIM only once the read succeeded. MULTI/EXEC would not
        help here: Redis never rolls back, so a failed LRANGE next to a
        successful LTRIM would drop entries nobody read. Finalization only
        appends at the tail and the dispatch lock keeps other cycles out, so
        the first `count` entries are the ones we read.

        Returns:
            The entries, or None if either step failed (list left as it was)
        """
        try:
            entries = await self.redis.lrange(self.queue_key, 0, count - 1)
        except RedisError as e:
            logger.error("[DISPATCH] Redis failed to retrieve batch for Salesforce update: %s", e)
            return None
        if not entries:
            return None

        try:
            await self.redis.ltrim(self.queue_key, len(entries), -1)
        except RedisError as e:
            logger.error("[DISPATCH] Redis failed to truncate the pending list, nothing sent: %s", e)
            return None
        return list(entries)

    def _deserialize(self, entries: List[str]) -> List[Top10Result]:
        results = []
        for raw in entries:
            try:
                results.append(Top10Result.model_validate_json(raw))
            except ValidationError as e:
                logger.error("[DISPATCH] Dropping malformed pending entry: %s", e)
        return results

    async def _requeue(self, entries: List[str]) -> None:
        if not entries:
            return
        try:
            # LPUSH inserts one at a time, so reverse to keep the original order
            await self.redis.lpush(self.queue_key, *reversed(entries))
            logger.info("[DISPATCH] Requeued %d entries for the next cycle", len(entries))
        except RedisError as e:
            logger.error("[DISPATCH] Failed to requeue %d entries; they are lost: %s", len(entries), e)
            capture_exception(e, extra={"operation": "salesforce_requeue", "entries": len(entries)})

    async def _release_lock(self, token: str) -> None:
        if await self.redis.get(self.lock_key) == token:
            await self.redis.delete(self.lock_key)
