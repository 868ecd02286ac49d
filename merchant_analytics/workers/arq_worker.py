"""ARQ async worker - analytics job processor and scheduler.

WHAT:
    Job functions for one analytics run, plus the two cron jobs:
    - process_user_run       : fan out merchant tasks for a user
    - process_merchant_task  : compute one merchant's volume, settle it
    - finalize_user_run      : rank top merchants, queue them for Salesforce
    - scheduled_daily_analytics : trigger a run for every Salesforce user
    - scheduled_dispatch     : push queued results to Salesforce

WHY:
    - Job functions are thin: they translate arq's retry model (job_try,
      Retry) into orchestrator calls. Run semantics live in the services.
    - Separate WorkerSettings / SchedulerSettings: workers scale out, the
      scheduler runs once so crons fire once

ARCHITECTURE:
    ┌──────────────────┐   enqueue    ┌─────────────────┐   N x enqueue   ┌──────────────────────┐
    │ API / daily cron │─────────────▶│ process_user_run │───────────────▶│ process_merchant_task │
    └──────────────────┘              └─────────────────┘                 └──────────┬───────────┘
                                                                last settle │
                                           ┌────────────────────┐           ▼
                                           │ finalize_user_run   │◀──────────┘
                                           └─────────┬──────────┘
                                                     │ RPUSH
                                                     ▼
                                    salesforce-update-batch ──▶ scheduled_dispatch

RETRY POLICY:
    - User run: never retried; failure leaves the lock `failed`
    - Merchant task: transient errors retried with exponential backoff
      (base, 2x base, ...); missing config or exhausted retries settle the
      merchant as failed so the run still completes
    - Finalization: retried with backoff, then left failed

USAGE:
    # Start worker
    arq merchant_analytics.workers.arq_worker.WorkerSettings

    # Start scheduler (exactly one)
    arq merchant_analytics.workers.arq_worker.SchedulerSettings

    # Or use the start script
    python -m merchant_analytics.workers.start_arq_worker [--scheduler]

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - merchant_analytics/services/flow_orchestrator.py
    - merchant_analytics/services/finalization.py
    - merchant_analytics/services/batch_dispatcher.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict

import httpx
from arq import Retry, cron
from arq.worker import func

from merchant_analytics import state
from merchant_analytics.deps import get_settings
from merchant_analytics.models import FinalizationContext, MerchantTask, TaskOutcome
from merchant_analytics.services.batch_dispatcher import BatchDispatcher
from merchant_analytics.services.errors import ProcessorConfigError, RunConflictError
from merchant_analytics.services.finalization import Finalizer
from merchant_analytics.services.flow_orchestrator import FlowOrchestrator
from merchant_analytics.services.processors import build_registry
from merchant_analytics.services.salesforce_client import SalesforceClient
from merchant_analytics.telemetry import capture_exception, capture_message
from merchant_analytics.workers.arq_enqueue import (
    FINALIZATION_JOB,
    MERCHANT_TASK_JOB,
    USER_RUN_JOB,
    ArqTaskQueue,
    get_redis_settings,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def retry_backoff(base_seconds: int, job_try: int) -> int:
    """Exponential backoff: base, 2x base, 4x base, ... for tries 1, 2, 3, ..."""
    return base_seconds * 2 ** (max(job_try, 1) - 1)


# =============================================================================
# USER RUN (fan-out)
# =============================================================================

async def process_user_run(ctx: Dict, run_id: str, user_id: str, portal_id: str) -> Dict:
    """Fan out one merchant task per merchant of the user's portal.

    Not retried: on failure the orchestrator has already marked the lock
    failed, and the error is left on the job for the status endpoint.
    """
    logger.info("[ARQ] Processing user run %s for user %s", run_id, user_id)
    orchestrator: FlowOrchestrator = ctx['orchestrator']

    try:
        return await orchestrator.start_run(run_id, user_id, portal_id)
    except Exception as e:
        capture_exception(e, extra={
            "operation": "process_user_run",
            "run_id": run_id,
            "user_id": user_id,
        })
        raise


# =============================================================================
# MERCHANT TASK (child)
# =============================================================================

async def process_merchant_task(ctx: Dict, task_data: Dict) -> Dict:
    """Compute one merchant's volume, then settle it against the run.

    Every path ends in exactly one settlement (or a Retry that will settle
    later), so a bad merchant never stalls the run.
    """
    task = MerchantTask.from_dict(task_data)
    orchestrator: FlowOrchestrator = ctx['orchestrator']
    cfg = ctx.get('settings', settings)
    job_try = ctx.get('job_try', 1)
    max_tries = cfg.MERCHANT_TASK_MAX_TRIES

    logger.info(
        "[ARQ] Processing merchant %s for run %s (try %d/%d)",
        task.merchant_id, task.run_id, job_try, max_tries,
    )

    error = None
    try:
        outcome, _ = await orchestrator.run_merchant_task(task)
    except ProcessorConfigError as e:
        logger.error("[ARQ] Merchant %s misconfigured, not retrying: %s", task.merchant_id, e)
        capture_exception(e, extra={
            "operation": "process_merchant_task",
            "run_id": task.run_id,
            "merchant_id": task.merchant_id,
        })
        outcome, error = TaskOutcome.failed, str(e)
    except Exception as e:
        if job_try < max_tries:
            defer = retry_backoff(cfg.MERCHANT_TASK_BACKOFF_SECONDS, job_try)
            logger.warning(
                "[ARQ] Merchant %s failed (try %d/%d), retrying in %ds: %s",
                task.merchant_id, job_try, max_tries, defer, e,
            )
            raise Retry(defer=defer) from e
        logger.error(
            "[ARQ] Merchant %s failed after %d tries, settling as failed: %s",
            task.merchant_id, job_try, e,
        )
        capture_exception(e, extra={
            "operation": "process_merchant_task",
            "run_id": task.run_id,
            "merchant_id": task.merchant_id,
            "job_try": job_try,
        })
        outcome, error = TaskOutcome.failed, str(e)

    try:
        finalization_queued = await orchestrator.settle_merchant(task.run_id, task.merchant_id, outcome)
    except Exception as e:
        if job_try < max_tries:
            defer = retry_backoff(cfg.MERCHANT_TASK_BACKOFF_SECONDS, job_try)
            logger.warning(
                "[ARQ] Could not settle merchant %s (try %d/%d), retrying in %ds: %s",
                task.merchant_id, job_try, max_tries, defer, e,
            )
            raise Retry(defer=defer) from e
        capture_exception(e, extra={
            "operation": "settle_merchant",
            "run_id": task.run_id,
            "merchant_id": task.merchant_id,
        })
        raise

    result = {
        "merchant_id": task.merchant_id,
        "outcome": outcome.value,
        "finalization_queued": finalization_queued,
    }
    if error:
        result["error"] = error
    return result


# =============================================================================
# FINALIZATION (fan-in)
# =============================================================================

async def finalize_user_run(ctx: Dict, context_data: Dict) -> Dict:
    """Rank the run's merchants and queue the result for dispatch."""
    context = FinalizationContext.from_dict(context_data)
    finalizer: Finalizer = ctx['finalizer']
    cfg = ctx.get('settings', settings)
    job_try = ctx.get('job_try', 1)
    max_tries = cfg.FINALIZATION_MAX_TRIES

    try:
        result = await finalizer.finalize(context)
    except Exception as e:
        capture_exception(e, extra={
            "operation": "finalize_user_run",
            "run_id": context.run_id,
            "user_id": context.user_id,
            "job_try": job_try,
        })
        if job_try < max_tries:
            defer = retry_backoff(cfg.FINALIZATION_BACKOFF_SECONDS, job_try)
            logger.warning(
                "[ARQ] Finalization for run %s failed (try %d/%d), retrying in %ds",
                context.run_id, job_try, max_tries, defer,
            )
            raise Retry(defer=defer) from e
        raise

    if result is None:
        return {"run_id": context.run_id, "user_id": context.user_id, "top_merchants": []}
    return result.model_dump(mode="json")


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

async def scheduled_daily_analytics(ctx: Dict) -> Dict:
    """Trigger a run for every Salesforce user.

    WHEN:
        Daily at 02:00 UTC.

    Users with a run already in flight are skipped.
    """
    logger.info("[ARQ] Starting scheduled daily analytics")
    orchestrator: FlowOrchestrator = ctx['orchestrator']
    salesforce: SalesforceClient = ctx['salesforce']

    try:
        users = await salesforce.get_all_users()
    except Exception as e:
        logger.exception("[ARQ] Failed to list Salesforce users: %s", e)
        capture_exception(e, extra={"operation": "scheduled_daily_analytics"})
        return {"error": str(e)}

    triggered = skipped = failed = 0
    for user in users:
        try:
            await orchestrator.trigger_run(user.user_id, user.portal_id)
            triggered += 1
        except RunConflictError as e:
            logger.warning("[ARQ] Skipping user %s: %s", user.user_id, e)
            skipped += 1
        except Exception as e:
            logger.error("[ARQ] Failed to trigger analytics for user %s: %s", user.user_id, e)
            capture_exception(e, extra={
                "operation": "scheduled_daily_analytics",
                "user_id": user.user_id,
            })
            failed += 1

    logger.info(
        "[ARQ] Daily analytics: %d users, %d triggered, %d skipped, %d failed",
        len(users), triggered, skipped, failed,
    )
    if failed:
        capture_message(
            f"Daily analytics could not trigger {failed} of {len(users)} users",
            level="warning",
            extra={"failed": failed, "users": len(users)},
        )
    return {"users": len(users), "triggered": triggered, "skipped": skipped, "failed": failed}


async def scheduled_dispatch(ctx: Dict) -> Dict:
    """Push queued results to Salesforce.

    WHEN:
        Every 5 minutes.
    """
    dispatcher: BatchDispatcher = ctx['dispatcher']
    try:
        return await dispatcher.run_cycle()
    except Exception as e:
        logger.exception("[ARQ] Dispatch cycle failed: %s", e)
        capture_exception(e, extra={"operation": "scheduled_dispatch"})
        return {"error": str(e)}


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Build the services every job needs and share them through ctx.

    ctx['redis'] is arq's own pool (bytes, used for queuing). Lock,
    aggregate and join state use a separate str-decoding client.
    """
    import platform

    from merchant_analytics.telemetry import init_sentry
    from merchant_analytics.utils.env import load_env_file

    load_env_file()
    init_sentry()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up")
    logger.info("=" * 60)
    logger.info(f"[ARQ] Python: {platform.python_version()}")
    logger.info(f"[ARQ] Host: {platform.node()}")
    logger.info(f"[ARQ] Queue: {settings.ARQ_QUEUE_NAME}")
    logger.info("=" * 60)

    store_redis = state.create_redis_client(settings.REDIS_URL)
    http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    salesforce = SalesforceClient.from_settings(settings, http_client)

    ctx['settings'] = settings
    ctx['store_redis'] = store_redis
    ctx['http_client'] = http_client
    ctx['salesforce'] = salesforce
    ctx['orchestrator'] = FlowOrchestrator(
        redis=store_redis,
        task_queue=ArqTaskQueue(ctx['redis'], queue_name=settings.ARQ_QUEUE_NAME),
        settings=settings,
        directory=salesforce,
        registry=build_registry(settings, http_client),
    )
    ctx['finalizer'] = Finalizer(store_redis, settings)
    ctx['dispatcher'] = BatchDispatcher(store_redis, salesforce, settings)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - close clients and log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    if ctx.get('http_client') is not None:
        await ctx['http_client'].aclose()
    if ctx.get('store_redis') is not None:
        await ctx['store_redis'].aclose()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration - processes jobs only.

    WHAT:
        Runs user-run, merchant and finalization jobs. Does NOT run cron jobs.

    WHY:
        Workers scale out; crons must fire once, so they live in
        SchedulerSettings.

    Settings:
    - max_jobs=10: merchant tasks of a run proceed in parallel
    - job_timeout=600: Payroc pages day by day, a month can be slow
    - keep_result=12h: status/debug endpoints read results for a run's lifetime
    """

    functions = [
        func(process_user_run, name=USER_RUN_JOB, max_tries=settings.USER_RUN_MAX_TRIES),
        func(process_merchant_task, name=MERCHANT_TASK_JOB, max_tries=settings.MERCHANT_TASK_MAX_TRIES),
        func(finalize_user_run, name=FINALIZATION_JOB, max_tries=settings.FINALIZATION_MAX_TRIES),
    ]

    cron_jobs = []

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings(settings.REDIS_URL)

    max_jobs = 10
    job_timeout = 600
    keep_result = settings.LOCK_TTL_SECONDS
    retry_jobs = True
    health_check_interval = 30

    queue_name = settings.ARQ_QUEUE_NAME


class SchedulerSettings:
    """ARQ scheduler configuration - runs cron jobs only. Run exactly one.

    SCHEDULE (all times UTC):
        - 02:00 daily   : trigger analytics for every user
        - every 5 min   : dispatch queued results to Salesforce
    """

    functions = []

    cron_jobs = [
        cron(
            scheduled_daily_analytics,
            hour={settings.DAILY_RUN_HOUR_UTC},
            minute={0},
            run_at_startup=False,
            unique=True,
        ),
        cron(
            scheduled_dispatch,
            minute=set(range(0, 60, 5)),
            unique=True,
        ),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = get_redis_settings(settings.REDIS_URL)

    max_jobs = 2
    job_timeout = 600
    keep_result = 3600

    # Own queue so job workers never pick up cron jobs; runs it triggers
    # still go to ARQ_QUEUE_NAME through the orchestrator
    queue_name = f"{settings.ARQ_QUEUE_NAME}:scheduler"
