"""Flow orchestrator for per-user merchant analytics runs.

WHAT:
    Owns the lifecycle of a run:
    1. trigger_run      - take the user lock, enqueue the user-run job (API/cron)
    2. start_run        - fan out one merchant task per merchant (user-run job)
    3. run_merchant_task - compute one merchant's volume (merchant job)
    4. settle_merchant  - count the child in; the last one enqueues finalization

WHY:
    - Trigger never blocks: clients poll the status/debug endpoints
    - One merchant's failure never blocks the run: every terminal outcome
      (success, skip, exhausted retries) settles the child
    - The orchestrator decides when a run starts/ends; merchant-level state
      lives in the aggregation store, not here

ARCHITECTURE:
    trigger_run ──▶ [user-run job] start_run ──▶ N x [merchant job]
                                                       │ settle_merchant
                                                       ▼
                                    join counter full ──▶ [finalize job]

REFERENCES:
    - merchant_analytics/workers/arq_worker.py (job functions + retry policy)
    - merchant_analytics/services/join_tracker.py
    - merchant_analytics/services/finalization.py
"""

from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from redis.asyncio import Redis

from merchant_analytics.models import (
    DateRange,
    FinalizationContext,
    LockStatus,
    Merchant,
    MerchantTask,
    ProcessorRef,
    TaskOutcome,
    VolumeAndCount,
    finalization_job_id,
)
from merchant_analytics.schemas import FlowDebugResponse, RunStatusResponse
from merchant_analytics.services.aggregation_store import AggregationStore
from merchant_analytics.services.errors import (
    OrchestrationError,
    ProcessorNotFoundError,
    RunConflictError,
)
from merchant_analytics.services.join_tracker import JoinStateError, JoinTracker
from merchant_analytics.services.lock_manager import LockManager
from merchant_analytics.services.processors.registry import (
    CalculatorRegistry,
    resolve_processor_kind,
)

logger = logging.getLogger(__name__)

STUCK_STATES = {"active", "waiting-children"}


def plan_fan_out(
    run_id: str,
    user_id: str,
    portal_id: str,
    merchants: List[Merchant],
    unknown_name: str = "Unknown",
) -> Tuple[FinalizationContext, List[MerchantTask]]:
    """Group directory records into merchant tasks plus the join context.

    A merchant listed under several processors becomes one task with several
    processor refs (their volumes are summed). Order of first appearance is
    kept, since it breaks ranking ties.
    """
    tasks: Dict[str, MerchantTask] = {}
    names: Dict[str, str] = {}

    for merchant in merchants:
        task = tasks.get(merchant.merchant_id)
        if task is None:
            task = MerchantTask(run_id=run_id, user_id=user_id, merchant_id=merchant.merchant_id)
            tasks[merchant.merchant_id] = task
        task.processors.append(
            ProcessorRef(name=merchant.processor_name, kind=resolve_processor_kind(merchant.processor_name))
        )
        if not names.get(merchant.merchant_id):
            names[merchant.merchant_id] = merchant.name or ""

    merchant_ids = list(tasks)
    context = FinalizationContext(
        run_id=run_id,
        user_id=user_id,
        portal_id=portal_id,
        merchant_ids=merchant_ids,
        merchant_names={m: names.get(m) or unknown_name for m in merchant_ids},
    )
    return context, list(tasks.values())


def format_job_error(error: object) -> Tuple[Optional[str], Optional[str]]:
    """(reason, stacktrace) for a failed job's stored result."""
    if isinstance(error, BaseException):
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return f"{type(error).__name__}: {error}", stack
    if error is None:
        return None, None
    return str(error), None


class FlowOrchestrator:
    """Usage (worker side):
        orchestrator = FlowOrchestrator(redis, task_queue, settings,
                                        directory=salesforce, registry=registry)
        await orchestrator.start_run(run_id, user_id, portal_id)
    """

    def __init__(
        self,
        redis: Redis,
        task_queue,
        settings,
        directory=None,
        registry: Optional[CalculatorRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            redis: Client with decode_responses=True
            task_queue: ArqTaskQueue (or any object with the same enqueue/inspect methods)
            settings: Settings
            directory: Merchant directory (SalesforceClient); needed by start_run
            registry: Calculator registry; needed by run_merchant_task
            clock: UTC clock override for tests
        """
        self.redis = redis
        self.task_queue = task_queue
        self.settings = settings
        self.directory = directory
        self.registry = registry
        self._now = clock or (lambda: datetime.now(timezone.utc))

        self.locks = LockManager(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)
        self.aggregates = AggregationStore(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)
        self.joins = JoinTracker(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)

    # =========================================================================
    # TRIGGER
    # =========================================================================

    async def trigger_run(self, user_id: str, portal_id: str) -> str:
        """Acquire the user's lock and enqueue the user-run job.

        Returns:
            The run id (also the user-run job id)

        Raises:
            RunConflictError: a run already holds the lock
        """
        if not await self.locks.try_acquire(user_id):
            status = await self.locks.get_status(user_id)
            raise RunConflictError(user_id, status.value if status else None)

        run_id = uuid.uuid4().hex
        try:
            await self.joins.register(run_id, user_id, portal_id, self._now())
            await self.task_queue.enqueue_user_run(run_id, user_id, portal_id)
        except Exception:
            # Nothing was queued; don't block the user until the TTL expires
            await self.locks.release(user_id)
            raise

        logger.info("[FLOW] Queued run %s for user %s (portal %s)", run_id, user_id, portal_id)
        return run_id

    # =========================================================================
    # FAN-OUT (user-run job)
    # =========================================================================

    async def start_run(self, run_id: str, user_id: str, portal_id: str) -> Dict:
        """Fan out one merchant task per merchant of the portal.

        Raises:
            OrchestrationError: directory lookup, join record or enqueue
                failed; the lock is marked failed first
        """
        if self.directory is None:
            raise OrchestrationError("start_run requires a merchant directory")

        await self.locks.set_status(user_id, LockStatus.processing)
        logger.info("[FLOW] Starting analytics for user %s (run %s)", user_id, run_id)

        try:
            merchants = await self.directory.get_merchants_for_portal(portal_id)
            if not merchants:
                logger.warning("[FLOW] No merchants found for user %s. Run complete.", user_id)
                await self.joins.mark_no_children(run_id)
                await self.locks.set_status(user_id, LockStatus.completed)
                return {"run_id": run_id, "merchants": 0}

            context, tasks = plan_fan_out(
                run_id, user_id, portal_id, merchants,
                unknown_name=self.settings.UNKNOWN_MERCHANT_NAME,
            )
            unsupported = sum(1 for t in tasks if all(p.kind is None for p in t.processors))
            logger.info(
                "[FLOW] Found %d merchants for user %s (%d unsupported). Creating child jobs.",
                len(tasks), user_id, unsupported,
            )

            # A redelivered user-run job starts this run from zero
            await self.aggregates.reset(run_id, context.merchant_ids)
            await self.joins.declare_children(context)

            await asyncio.gather(*[self.task_queue.enqueue_merchant_task(t) for t in tasks])

            return {"run_id": run_id, "merchants": len(tasks), "unsupported": unsupported}

        except Exception as e:
            logger.exception("[FLOW] Failed to process user run for user %s: %s", user_id, e)
            await self.locks.set_status(user_id, LockStatus.failed)
            if isinstance(e, OrchestrationError):
                raise
            raise OrchestrationError(f"Run {run_id} failed during fan-out: {e}") from e

    # =========================================================================
    # CHILD (merchant job)
    # =========================================================================

    async def run_merchant_task(self, task: MerchantTask) -> Tuple[TaskOutcome, VolumeAndCount]:
        """Compute a merchant's current-month volume and overwrite its aggregate.

        Unsupported processors and ProcessorNotFoundError are skips: they
        return zero and succeed, since retrying could never help. Any other
        error propagates so the job's retry policy applies.
        """
        if self.registry is None:
            raise OrchestrationError("run_merchant_task requires a calculator registry")

        date_range = DateRange.current_month(self._now().date())
        total = VolumeAndCount()
        computed = False

        for ref in task.processors:
            calculator = self.registry.get(ref.kind)
            if calculator is None:
                logger.warning(
                    "[FLOW] Skipping merchant %s: unsupported processor %r", task.merchant_id, ref.name
                )
                continue
            try:
                total = total + await calculator.calculate_volume_and_count(
                    task.merchant_id, ref.name or "", date_range
                )
                computed = True
            except ProcessorNotFoundError as e:
                logger.warning("[FLOW] Skipping merchant %s: %s", task.merchant_id, e)

        await self.aggregates.overwrite(task.run_id, task.merchant_id, total)

        outcome = TaskOutcome.succeeded if computed else TaskOutcome.skipped
        logger.info(
            "[FLOW] Finished merchant %s (%s). Volume: %s, Count: %d",
            task.merchant_id, outcome.value, total.net_volume, total.transaction_count,
        )
        return outcome, total

    async def settle_merchant(self, run_id: str, merchant_id: str, outcome: TaskOutcome) -> bool:
        """Count a settled child in; enqueue finalization if it was the last.

        Returns:
            True if this call enqueued the finalization job
        """
        result = await self.joins.settle(run_id, merchant_id, outcome)
        if not result.all_settled:
            return False
        if not await self.joins.claim_finalization(run_id):
            return False

        try:
            context = await self.joins.get_context(run_id)
            if context is None:
                raise JoinStateError(f"Run {run_id} has no finalization context")
            await self.task_queue.enqueue_finalization(context)
        except Exception:
            await self.joins.unclaim_finalization(run_id)
            raise

        logger.info("[FLOW] All %d merchants settled for run %s; finalization queued", result.expected, run_id)
        return True

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    async def describe_run(self, run_id: str) -> Optional[RunStatusResponse]:
        snapshot = await self.joins.snapshot(run_id)
        job_state = await self.task_queue.job_state(run_id)
        if snapshot is None and job_state is None:
            return None

        lock = await self.locks.get_status(snapshot.user_id) if snapshot else None

        if job_state in ("waiting", "delayed", "failed"):
            state = job_state
        elif lock == LockStatus.failed:
            state = "failed"
        elif lock == LockStatus.completed:
            state = "completed"
        elif job_state is not None:
            state = "active"
        else:
            state = "unknown"

        progress = snapshot.progress if snapshot else 0
        if state == "completed":
            progress = 100

        return RunStatusResponse(
            run_id=run_id,
            state=state,
            progress=progress,
            lock_status=lock.value if lock else None,
        )

    async def describe_finalization(self, run_id: str) -> Optional[FlowDebugResponse]:
        snapshot = await self.joins.snapshot(run_id)
        job_id = finalization_job_id(run_id)
        state = await self.task_queue.job_state(job_id)

        if state is None:
            if snapshot is None:
                return None
            if snapshot.expected == 0:
                state = "completed"
            elif snapshot.expected is None:
                state = "pending"
            else:
                state = "waiting-children"

        failed_reason = stacktrace = return_value = None
        job_result = await self.task_queue.job_result(job_id)
        if job_result is not None:
            if job_result.success:
                return_value = job_result.result
            else:
                failed_reason, stacktrace = format_job_error(job_result.result)

        return FlowDebugResponse(
            run_id=run_id,
            state=state,
            failed_reason=failed_reason,
            stacktrace=stacktrace,
            return_value=return_value,
            settled=snapshot.settled if snapshot else 0,
            expected=snapshot.expected if snapshot else None,
            is_stuck=state in STUCK_STATES,
        )
