"""Per-merchant volume accumulator in Redis.

WHAT:
    One hash per (run, merchant), `merchant-aggregate:{run_id}:{merchant_id}`,
    with two fields:
    - volume: signed decimal, stored as its string form
    - count: transaction count

WHY:
    - Shared by every worker process, so it must live outside the process
    - Scoped to the run: two runs sharing a merchant id (same portal, or two
      portals listing the same merchant) never see each other's totals
    - Every write is a single MULTI/EXEC pipeline, so concurrent workers
      never lose updates
    - Volumes are kept as Decimal strings to avoid float drift
    - Keys expire with the run lock, so abandoned runs clean up after themselves

USAGE:
    store = AggregationStore(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)
    await store.reset(run_id, ["M1", "M2"])              # start of a run
    await store.overwrite(run_id, "M1", VolumeAndCount(Decimal("120.50"), 3))
    totals = await store.read(run_id, ["M1", "M2"])      # missing -> zero
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from redis.asyncio import Redis

from merchant_analytics.models import VolumeAndCount

logger = logging.getLogger(__name__)

AGGREGATE_KEY_PREFIX = "merchant-aggregate"
VOLUME_FIELD = "volume"
COUNT_FIELD = "count"

DEFAULT_TTL_SECONDS = 12 * 60 * 60


def aggregate_key(run_id: str, merchant_id: str) -> str:
    return f"{AGGREGATE_KEY_PREFIX}:{run_id}:{merchant_id}"


class AggregationPipelineError(RuntimeError):
    """A MULTI/EXEC pipeline reported a failed command."""


def _parse_volume(raw: Optional[str]) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    try:
        return Decimal(raw)
    except (InvalidOperation, TypeError):
        logger.error("[AGGREGATE] Unparseable volume %r, treating as zero", raw)
        return Decimal("0")


def _parse_count(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return 0
    try:
        return int(float(raw))
    except (ValueError, TypeError):
        logger.error("[AGGREGATE] Unparseable count %r, treating as zero", raw)
        return 0


class AggregationStore:
    """Atomic primitives over one run's merchant aggregates."""

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def reset(self, run_id: str, merchant_ids: Iterable[str]) -> int:
        """Zero the aggregates in scope (delete; missing reads as zero)."""
        keys = [aggregate_key(run_id, m) for m in merchant_ids]
        if not keys:
            return 0
        removed = await self.redis.delete(*keys)
        logger.debug("[AGGREGATE] Reset %d merchants of run %s (%d had data)", len(keys), run_id, removed)
        return removed

    async def overwrite(self, run_id: str, merchant_id: str, totals: VolumeAndCount) -> None:
        """Replace a merchant's totals in one MULTI/EXEC (HSET + EXPIRE).

        Overwrite (not add) keeps a retried merchant task idempotent: the
        reporting window is recomputed from scratch on every attempt.
        """
        key = aggregate_key(run_id, merchant_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    VOLUME_FIELD: str(totals.net_volume),
                    COUNT_FIELD: str(int(totals.transaction_count)),
                },
            )
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        _raise_on_pipeline_error(results, f"overwrite {merchant_id}")

    async def increment(self, run_id: str, merchant_id: str, delta: VolumeAndCount) -> VolumeAndCount:
        """Add to a merchant's totals in one MULTI/EXEC.

        Returns:
            The totals after the increment
        """
        key = aggregate_key(run_id, merchant_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            # HINCRBYFLOAT parses its argument as a long double server side;
            # send the exact decimal text, never a Python float
            pipe.hincrbyfloat(key, VOLUME_FIELD, str(delta.net_volume))
            pipe.hincrby(key, COUNT_FIELD, int(delta.transaction_count))
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        _raise_on_pipeline_error(results, f"increment {merchant_id}")
        return VolumeAndCount(
            net_volume=_parse_volume(str(results[0])),
            transaction_count=_parse_count(str(results[1])),
        )

    async def read(self, run_id: str, merchant_ids: List[str]) -> Dict[str, VolumeAndCount]:
        """Read totals for every merchant (missing entries are zero)."""
        if not merchant_ids:
            return {}
        async with self.redis.pipeline(transaction=False) as pipe:
            for merchant_id in merchant_ids:
                pipe.hmget(aggregate_key(run_id, merchant_id), [VOLUME_FIELD, COUNT_FIELD])
            rows = await pipe.execute()
        return {
            merchant_id: VolumeAndCount(_parse_volume(row[0]), _parse_count(row[1]))
            for merchant_id, row in zip(merchant_ids, rows)
        }

    async def read_and_clear(self, run_id: str, merchant_ids: List[str]) -> Dict[str, VolumeAndCount]:
        """Read totals and delete them in one MULTI/EXEC.

        Raises:
            AggregationPipelineError: if any command in the transaction failed;
                callers must treat this as "nothing was read"
        """
        if not merchant_ids:
            return {}
        keys = [aggregate_key(run_id, m) for m in merchant_ids]
        async with self.redis.pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.hmget(key, [VOLUME_FIELD, COUNT_FIELD])
            pipe.delete(*keys)
            results = await pipe.execute(raise_on_error=False)
        _raise_on_pipeline_error(results, "read_and_clear")
        rows = results[: len(keys)]
        return {
            merchant_id: VolumeAndCount(_parse_volume(row[0]), _parse_count(row[1]))
            for merchant_id, row in zip(merchant_ids, rows)
        }


def _raise_on_pipeline_error(results: list, operation: str) -> None:
    errors = [r for r in results if isinstance(r, Exception)]
    if errors:
        raise AggregationPipelineError(f"Pipeline {operation} failed: {errors[0]}")
