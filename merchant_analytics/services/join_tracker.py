"""Explicit fan-in join counter for analytics runs.

WHAT:
    Tracks, per run, how many merchant tasks were declared and which of them
    have settled. The child whose settlement completes the set is the one
    that enqueues the finalization job, exactly once.

WHY:
    - The join works on any task queue (arq has no parent/child flows)
    - Outcomes are keyed by merchant id, so a retried child that settles
      twice is counted once
    - The "finalization claimed" flag is a HSETNX, so two children settling
      at the same moment can't both enqueue finalization

KEYS:
    analytics-run:{run_id}           hash: user_id, portal_id, created_at,
                                           expected, context, finalization_claimed
    analytics-run:{run_id}:outcomes  hash: merchant_id -> outcome

Both expire with the run lock TTL.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from redis.asyncio import Redis

from merchant_analytics.models import FinalizationContext, TaskOutcome

logger = logging.getLogger(__name__)

RUN_KEY_PREFIX = "analytics-run"


def run_key(run_id: str) -> str:
    return f"{RUN_KEY_PREFIX}:{run_id}"


def outcomes_key(run_id: str) -> str:
    return f"{RUN_KEY_PREFIX}:{run_id}:outcomes"


class JoinStateError(RuntimeError):
    """The join record is missing or a pipeline command failed."""


@dataclass
class SettleResult:
    settled: int
    expected: int
    newly_settled: bool

    @property
    def all_settled(self) -> bool:
        return self.expected > 0 and self.settled >= self.expected


@dataclass
class RunSnapshot:
    """Read-only view of a run's join record."""

    run_id: str
    user_id: str
    portal_id: str
    created_at: Optional[str]
    expected: Optional[int]
    outcomes: Dict[str, str] = field(default_factory=dict)
    finalization_claimed: bool = False

    @property
    def settled(self) -> int:
        return len(self.outcomes)

    @property
    def progress(self) -> int:
        """Percent of children settled (0 before fan-out, 100 with no children)."""
        if self.expected is None:
            return 0
        if self.expected == 0:
            return 100
        return min(100, int(self.settled * 100 / self.expected))


class JoinTracker:
    def __init__(self, redis: Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def register(self, run_id: str, user_id: str, portal_id: str, created_at: datetime) -> None:
        """Create the run record at trigger time (before fan-out)."""
        key = run_key(run_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    "user_id": user_id,
                    "portal_id": portal_id,
                    "created_at": created_at.isoformat(),
                },
            )
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        _check(results, f"register {run_id}")

    async def declare_children(self, context: FinalizationContext) -> None:
        """Record the expected child count and the finalization context.

        HSETNX so a re-executed fan-out can't reset a count that children
        have already started settling against.
        """
        key = run_key(context.run_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "expected", len(context.merchant_ids))
            pipe.hsetnx(key, "context", json.dumps(context.to_dict()))
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        _check(results, f"declare_children {context.run_id}")
        logger.info(
            "[JOIN] Run %s declared %d children", context.run_id, len(context.merchant_ids)
        )

    async def mark_no_children(self, run_id: str) -> None:
        await self.redis.hset(run_key(run_id), "expected", 0)

    async def settle(self, run_id: str, merchant_id: str, outcome: TaskOutcome) -> SettleResult:
        """Record a child's terminal outcome and return the join counter."""
        key = outcomes_key(run_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, merchant_id, TaskOutcome(outcome).value)
            pipe.hlen(key)
            pipe.hget(run_key(run_id), "expected")
            pipe.expire(key, self.ttl_seconds)
            results = await pipe.execute(raise_on_error=False)
        _check(results, f"settle {run_id}/{merchant_id}")

        newly_settled, settled, expected_raw, _ = results
        if expected_raw is None:
            raise JoinStateError(f"Run {run_id} has no declared children (record expired?)")
        result = SettleResult(
            settled=int(settled),
            expected=int(expected_raw),
            newly_settled=bool(newly_settled),
        )
        logger.info(
            "[JOIN] Run %s: merchant %s settled as %s (%d/%d)",
            run_id, merchant_id, TaskOutcome(outcome).value, result.settled, result.expected,
        )
        return result

    async def claim_finalization(self, run_id: str) -> bool:
        """True for exactly one caller once all children have settled."""
        return bool(await self.redis.hsetnx(run_key(run_id), "finalization_claimed", 1))

    async def unclaim_finalization(self, run_id: str) -> None:
        """Give the claim back when enqueueing the joiner failed."""
        await self.redis.hdel(run_key(run_id), "finalization_claimed")

    async def get_context(self, run_id: str) -> Optional[FinalizationContext]:
        raw = await self.redis.hget(run_key(run_id), "context")
        if raw is None:
            return None
        return FinalizationContext.from_dict(json.loads(raw))

    async def snapshot(self, run_id: str) -> Optional[RunSnapshot]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hgetall(run_key(run_id))
            pipe.hgetall(outcomes_key(run_id))
            record, outcomes = await pipe.execute()
        if not record:
            return None
        expected = record.get("expected")
        return RunSnapshot(
            run_id=run_id,
            user_id=record.get("user_id", ""),
            portal_id=record.get("portal_id", ""),
            created_at=record.get("created_at"),
            expected=int(expected) if expected is not None else None,
            outcomes=dict(outcomes or {}),
            finalization_claimed=record.get("finalization_claimed") is not None,
        )


def _check(results: list, operation: str) -> None:
    for r in results:
        if isinstance(r, Exception):
            raise JoinStateError(f"Pipeline {operation} failed: {r}")
