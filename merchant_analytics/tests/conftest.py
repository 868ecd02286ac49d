"""Pytest configuration for merchant analytics tests

WHAT: Shared fixtures: in-memory Redis, settings, and fakes for the task
      queue, merchant directory, Salesforce downstream and processor calculators
WHY: Services take their collaborators as constructor arguments, so tests
     wire fakes in directly instead of patching modules
REFERENCES:
    - merchant_analytics/services/flow_orchestrator.py
    - merchant_analytics/deps.py
"""

import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import fakeredis
import pytest

os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "test")

from merchant_analytics.deps import Settings
from merchant_analytics.models import (
    DateRange,
    FinalizationContext,
    Merchant,
    MerchantTask,
    PortalUser,
    ProcessorKind,
    VolumeAndCount,
)
from merchant_analytics.services.flow_orchestrator import FlowOrchestrator
from merchant_analytics.services.processors.base import VolumeCalculator
from merchant_analytics.services.processors.registry import CalculatorRegistry

FIXED_NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# Fakes
# ============================================================================

class FakeJobResult:
    def __init__(self, success: bool, result):
        self.success = success
        self.result = result


class FakeTaskQueue:
    """Records enqueues; job states/results are set by the test."""

    def __init__(self):
        self.user_runs: List[tuple] = []
        self.merchant_tasks: List[MerchantTask] = []
        self.finalizations: List[FinalizationContext] = []
        self.states: Dict[str, str] = {}
        self.results: Dict[str, FakeJobResult] = {}
        self.fail_user_run_enqueue = False
        self.fail_finalization_enqueue = False

    async def enqueue_user_run(self, run_id, user_id, portal_id):
        if self.fail_user_run_enqueue:
            raise ConnectionError("queue unavailable")
        self.user_runs.append((run_id, user_id, portal_id))
        self.states[run_id] = "waiting"
        return {"job_id": run_id, "status": "enqueued"}

    async def enqueue_merchant_task(self, task):
        self.merchant_tasks.append(task)
        return {"job_id": task.job_id, "status": "enqueued"}

    async def enqueue_finalization(self, context):
        if self.fail_finalization_enqueue:
            raise ConnectionError("queue unavailable")
        self.finalizations.append(context)
        self.states[context.job_id] = "waiting"
        return {"job_id": context.job_id, "status": "enqueued"}

    async def job_state(self, job_id) -> Optional[str]:
        return self.states.get(job_id)

    async def job_result(self, job_id):
        return self.results.get(job_id)


class FakeDirectory:
    """Salesforce stand-in for both the directory and the downstream."""

    def __init__(self, merchants: Optional[Dict[str, List[Merchant]]] = None, users=None):
        self.merchants = merchants or {}
        self.users: List[PortalUser] = users or []
        self.bulk_calls: List[list] = []
        self.fail_bulk = False
        self.fail_lookup = False

    async def get_all_users(self):
        return list(self.users)

    async def get_merchants_for_portal(self, portal_id):
        if self.fail_lookup:
            raise ConnectionError("salesforce down")
        return list(self.merchants.get(portal_id, []))

    async def bulk_update_top10(self, results):
        self.bulk_calls.append(list(results))
        if self.fail_bulk:
            from merchant_analytics.services.errors import DownstreamError

            raise DownstreamError("Salesforce API error", status_code=503)


class FakeCalculator(VolumeCalculator):
    """Returns canned totals per merchant id; an Exception value is raised."""

    def __init__(self, kind: ProcessorKind, totals: Dict[str, object]):
        self.kind = kind
        self.totals = totals
        self.calls: List[tuple] = []

    async def calculate_volume_and_count(self, merchant_id, processor_name, date_range: DateRange):
        self.calls.append((merchant_id, processor_name, date_range))
        value = self.totals.get(merchant_id, VolumeAndCount())
        if isinstance(value, Exception):
            raise value
        return value


def vc(volume: str, count: int) -> VolumeAndCount:
    return VolumeAndCount(net_volume=Decimal(volume), transaction_count=count)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def redis():
    """In-memory Redis with str responses, like state.create_redis_client."""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def settings():
    return Settings(_env_file=None, REDIS_URL="redis://localhost:6379/0")


@pytest.fixture
def task_queue():
    return FakeTaskQueue()


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def calculators():
    return {
        ProcessorKind.payroc: FakeCalculator(ProcessorKind.payroc, {}),
        ProcessorKind.argyle: FakeCalculator(ProcessorKind.argyle, {}),
    }


@pytest.fixture
def orchestrator(redis, task_queue, settings, directory, calculators):
    return FlowOrchestrator(
        redis=redis,
        task_queue=task_queue,
        settings=settings,
        directory=directory,
        registry=CalculatorRegistry(calculators),
        clock=lambda: FIXED_NOW,
    )
