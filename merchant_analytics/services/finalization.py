"""Finalization (fan-in) for an analytics run.

WHAT:
    Once every merchant task of a run has settled, read the merchant
    aggregates, rank the top N by net volume and queue the result for
    Salesforce.

WHY:
    - Runs only after all children settle (enforced by the join tracker)
    - Safe to repeat: it reads aggregates without clearing them, so a retry
      produces the same ranking. A repeat may queue a duplicate entry, which
      Salesforce absorbs because it upserts by portal + merchant.

REFERENCES:
    - merchant_analytics/services/join_tracker.py
    - merchant_analytics/services/batch_dispatcher.py (drains the queue)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from redis.asyncio import Redis

from merchant_analytics.models import FinalizationContext, LockStatus, VolumeAndCount
from merchant_analytics.schemas import RankedMerchant, Top10Result
from merchant_analytics.services.aggregation_store import AggregationStore
from merchant_analytics.services.lock_manager import LockManager

logger = logging.getLogger(__name__)


def rank_top_merchants(
    context: FinalizationContext,
    totals: Dict[str, VolumeAndCount],
    *,
    top_n: int,
    unknown_name: str,
) -> List[RankedMerchant]:
    """Rank merchants by volume, descending.

    Ties keep the context's merchant order (sorted() is stable, also with
    reverse=True).
    """
    zero = VolumeAndCount()
    rows = [
        RankedMerchant(
            merchant_id=merchant_id,
            name=context.merchant_names.get(merchant_id) or unknown_name,
            total_volume=totals.get(merchant_id, zero).net_volume,
            total_count=totals.get(merchant_id, zero).transaction_count,
        )
        for merchant_id in context.merchant_ids
    ]
    ranked = sorted(rows, key=lambda r: r.total_volume, reverse=True)
    return ranked[:top_n]


class Finalizer:
    def __init__(self, redis: Redis, settings):
        self.redis = redis
        self.settings = settings
        self.locks = LockManager(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)
        self.aggregates = AggregationStore(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)

    async def finalize(self, context: FinalizationContext) -> Optional[Top10Result]:
        """Rank, queue for dispatch and complete the run.

        Raises:
            Any error from Redis, after marking the lock failed, so the job's
            retry policy can run finalization again.
        """
        user_id = context.user_id
        logger.info("[FINALIZE] Finalizing analytics for user %s (run %s)", user_id, context.run_id)

        try:
            if not context.merchant_ids:
                await self.locks.set_status(user_id, LockStatus.completed)
                return None

            totals = await self.aggregates.read(context.run_id, context.merchant_ids)
            result = Top10Result(
                user_id=user_id,
                portal_id=context.portal_id,
                run_id=context.run_id,
                top_merchants=rank_top_merchants(
                    context,
                    totals,
                    top_n=self.settings.TOP_N,
                    unknown_name=self.settings.UNKNOWN_MERCHANT_NAME,
                ),
            )

            await self.redis.rpush(self.settings.PENDING_DISPATCH_KEY, result.model_dump_json())
            await self.locks.set_status(user_id, LockStatus.completed)

            total_volume = sum((m.total_volume for m in result.top_merchants), Decimal("0"))
            logger.info(
                "[FINALIZE] Queued top %d merchants for user %s (volume=%s)",
                len(result.top_merchants), user_id, total_volume,
            )
            return result

        except Exception as e:
            logger.error("[FINALIZE] Failed to finalize analytics for user %s: %s", user_id, e)
            await self.locks.set_status(user_id, LockStatus.failed)
            raise
