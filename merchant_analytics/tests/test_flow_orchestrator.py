"""Flow orchestrator: trigger, fan-out, merchant tasks, fan-in, introspection

WHAT: Drives runs step by step with a fake queue, directory and calculators
WHY: The worker job functions are thin wrappers; run semantics live here
"""

from decimal import Decimal

import pytest

from merchant_analytics.models import (
    LockStatus,
    Merchant,
    MerchantTask,
    ProcessorKind,
    ProcessorRef,
    TaskOutcome,
    finalization_job_id,
)
from merchant_analytics.schemas import Top10Result
from merchant_analytics.services.aggregation_store import AggregationStore
from merchant_analytics.services.errors import (
    OrchestrationError,
    ProcessorNotFoundError,
    RunConflictError,
    UpstreamError,
)
from merchant_analytics.services.finalization import Finalizer
from merchant_analytics.services.flow_orchestrator import plan_fan_out
from merchant_analytics.tests.conftest import FakeJobResult, vc


async def _start(orchestrator, task_queue, user_id="u1", portal_id="P1"):
    run_id = await orchestrator.trigger_run(user_id, portal_id)
    await orchestrator.start_run(run_id, user_id, portal_id)
    return run_id


async def _run_all_children(orchestrator, task_queue):
    for task in list(task_queue.merchant_tasks):
        outcome, _ = await orchestrator.run_merchant_task(task)
        await orchestrator.settle_merchant(task.run_id, task.merchant_id, outcome)


class TestPlanFanOut:
    def test_groups_processors_by_merchant_in_first_seen_order(self):
        merchants = [
            Merchant("M2", "ArgyleX", "Two"),
            Merchant("M1", "Payroc 12", None),
            Merchant("M2", "Merchant Lynx", None),
        ]

        context, tasks = plan_fan_out("r1", "u1", "P1", merchants)

        assert context.merchant_ids == ["M2", "M1"]
        assert context.merchant_names == {"M2": "Two", "M1": "Unknown"}
        assert [p.kind for p in tasks[0].processors] == [ProcessorKind.argyle, ProcessorKind.merchant_lynx]
        assert tasks[1].processors == [ProcessorRef("Payroc 12", ProcessorKind.payroc)]

    def test_unsupported_processor_resolves_to_no_kind(self):
        _, tasks = plan_fan_out("r1", "u1", "P1", [Merchant("M1", "Stripe", "S")])

        assert tasks[0].processors[0].kind is None


class TestTrigger:
    async def test_trigger_takes_lock_and_queues_user_run(self, orchestrator, task_queue):
        run_id = await orchestrator.trigger_run("u1", "P1")

        assert task_queue.user_runs == [(run_id, "u1", "P1")]
        assert await orchestrator.locks.get_status("u1") == LockStatus.queued

    async def test_second_trigger_conflicts_with_current_status(self, orchestrator, task_queue):
        await orchestrator.trigger_run("u1", "P1")

        with pytest.raises(RunConflictError) as exc:
            await orchestrator.trigger_run("u1", "P1")

        assert exc.value.status == "queued"
        assert len(task_queue.user_runs) == 1

    async def test_enqueue_failure_releases_lock(self, orchestrator, task_queue):
        task_queue.fail_user_run_enqueue = True

        with pytest.raises(ConnectionError):
            await orchestrator.trigger_run("u1", "P1")

        assert await orchestrator.locks.get_status("u1") is None


class TestStartRun:
    async def test_zero_merchants_completes_without_children(self, orchestrator, task_queue, settings, redis):
        run_id = await _start(orchestrator, task_queue)

        assert task_queue.merchant_tasks == []
        assert task_queue.finalizations == []
        assert await orchestrator.locks.get_status("u1") == LockStatus.completed
        assert await redis.llen(settings.PENDING_DISPATCH_KEY) == 0
        assert (await orchestrator.joins.snapshot(run_id)).progress == 100

    async def test_fans_out_one_task_per_merchant(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One"), Merchant("M2", "ArgyleX", "Two")]

        run_id = await _start(orchestrator, task_queue)

        assert [t.merchant_id for t in task_queue.merchant_tasks] == ["M1", "M2"]
        assert all(t.run_id == run_id for t in task_queue.merchant_tasks)
        assert await orchestrator.locks.get_status("u1") == LockStatus.processing

    async def test_concurrent_runs_sharing_a_merchant_keep_their_totals(
        self, orchestrator, task_queue, directory, calculators, redis, settings
    ):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One")]
        calculators[ProcessorKind.payroc].totals["M1"] = vc("120.50", 3)
        first_run = await _start(orchestrator, task_queue, user_id="u1")
        (first_task,) = task_queue.merchant_tasks
        outcome, _ = await orchestrator.run_merchant_task(first_task)
        await orchestrator.settle_merchant(first_run, "M1", outcome)

        # Second user of the same portal fans out before the first finalizes
        await _start(orchestrator, task_queue, user_id="u2")
        result = await Finalizer(redis, settings).finalize(task_queue.finalizations[0])

        assert [(m.merchant_id, m.total_volume, m.total_count) for m in result.top_merchants] == [
            ("M1", Decimal("120.50"), 3),
        ]

    async def test_directory_failure_marks_lock_failed(self, orchestrator, task_queue, directory):
        directory.fail_lookup = True
        run_id = await orchestrator.trigger_run("u1", "P1")

        with pytest.raises(OrchestrationError):
            await orchestrator.start_run(run_id, "u1", "P1")

        assert await orchestrator.locks.get_status("u1") == LockStatus.failed


class TestMerchantTask:
    def _task(self, *refs):
        return MerchantTask(run_id="r1", user_id="u1", merchant_id="M1", processors=list(refs))

    async def test_unsupported_processor_is_a_zero_skip(self, orchestrator, redis):
        outcome, total = await orchestrator.run_merchant_task(self._task(ProcessorRef("Stripe", None)))

        assert outcome == TaskOutcome.skipped
        assert total.net_volume == Decimal("0")
        assert (await AggregationStore(redis).read("r1", ["M1"]))["M1"].transaction_count == 0

    async def test_kind_without_registered_calculator_is_skipped(self, orchestrator):
        task = self._task(ProcessorRef("Merchant Lynx", ProcessorKind.merchant_lynx))

        outcome, _ = await orchestrator.run_merchant_task(task)

        assert outcome == TaskOutcome.skipped

    async def test_processor_not_found_is_a_skip(self, orchestrator, calculators):
        calculators[ProcessorKind.payroc].totals["M1"] = ProcessorNotFoundError("Payroc 12")

        outcome, _ = await orchestrator.run_merchant_task(self._task(ProcessorRef("Payroc 12", ProcessorKind.payroc)))

        assert outcome == TaskOutcome.skipped

    async def test_transient_error_propagates_for_retry(self, orchestrator, calculators):
        calculators[ProcessorKind.payroc].totals["M1"] = UpstreamError("HTTP 503", status_code=503)

        with pytest.raises(UpstreamError):
            await orchestrator.run_merchant_task(self._task(ProcessorRef("Payroc 12", ProcessorKind.payroc)))

    async def test_uses_current_calendar_month(self, orchestrator, calculators):
        await orchestrator.run_merchant_task(self._task(ProcessorRef("Payroc 12", ProcessorKind.payroc)))

        _, _, date_range = calculators[ProcessorKind.payroc].calls[0]
        assert (date_range.start.isoformat(), date_range.end.isoformat()) == ("2024-05-01", "2024-05-31")

    async def test_retry_overwrites_instead_of_adding(self, orchestrator, calculators, redis):
        calculators[ProcessorKind.payroc].totals["M1"] = vc("120.50", 3)
        task = self._task(ProcessorRef("Payroc 12", ProcessorKind.payroc))

        await orchestrator.run_merchant_task(task)
        await orchestrator.run_merchant_task(task)

        totals = (await AggregationStore(redis).read("r1", ["M1"]))["M1"]
        assert (totals.net_volume, totals.transaction_count) == (Decimal("120.50"), 3)

    async def test_processors_of_one_merchant_are_summed(self, orchestrator, calculators):
        calculators[ProcessorKind.payroc].totals["M1"] = vc("10", 1)
        calculators[ProcessorKind.argyle].totals["M1"] = vc("5.5", 2)
        task = self._task(
            ProcessorRef("Payroc 12", ProcessorKind.payroc),
            ProcessorRef("ArgyleX", ProcessorKind.argyle),
        )

        outcome, total = await orchestrator.run_merchant_task(task)

        assert outcome == TaskOutcome.succeeded
        assert (total.net_volume, total.transaction_count) == (Decimal("15.5"), 3)


class TestFanIn:
    async def test_finalization_only_after_every_child_settles(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One"), Merchant("M2", "ArgyleX", "Two")]
        run_id = await _start(orchestrator, task_queue)

        assert await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded) is False
        assert task_queue.finalizations == []
        assert await orchestrator.settle_merchant(run_id, "M2", TaskOutcome.failed) is True
        assert [c.run_id for c in task_queue.finalizations] == [run_id]

    async def test_late_duplicate_settlement_does_not_refire(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One")]
        run_id = await _start(orchestrator, task_queue)

        await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded)
        await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded)

        assert len(task_queue.finalizations) == 1

    async def test_failed_finalization_enqueue_can_be_retried(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One")]
        run_id = await _start(orchestrator, task_queue)
        task_queue.fail_finalization_enqueue = True

        with pytest.raises(ConnectionError):
            await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded)

        task_queue.fail_finalization_enqueue = False
        assert await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded) is True
        assert len(task_queue.finalizations) == 1


class TestIntrospection:
    async def test_unknown_run_is_none(self, orchestrator):
        assert await orchestrator.describe_run("nope") is None
        assert await orchestrator.describe_finalization("nope") is None

    async def test_queued_run_reports_waiting(self, orchestrator):
        run_id = await orchestrator.trigger_run("u1", "P1")

        status = await orchestrator.describe_run(run_id)

        assert (status.state, status.progress, status.lock_status) == ("waiting", 0, "queued")

    async def test_run_in_progress_reports_settled_share(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One"), Merchant("M2", "ArgyleX", "Two")]
        run_id = await _start(orchestrator, task_queue)
        task_queue.states[run_id] = "completed"
        await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded)

        status = await orchestrator.describe_run(run_id)
        debug = await orchestrator.describe_finalization(run_id)

        assert (status.state, status.progress) == ("active", 50)
        assert (debug.state, debug.is_stuck) == ("waiting-children", True)

    async def test_failed_finalization_exposes_reason(self, orchestrator, task_queue, directory):
        directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "One")]
        run_id = await _start(orchestrator, task_queue)
        await orchestrator.settle_merchant(run_id, "M1", TaskOutcome.succeeded)
        job_id = finalization_job_id(run_id)
        task_queue.states[job_id] = "failed"
        task_queue.results[job_id] = FakeJobResult(False, RuntimeError("redis went away"))

        debug = await orchestrator.describe_finalization(run_id)

        assert debug.state == "failed"
        assert debug.failed_reason == "RuntimeError: redis went away"
        assert "RuntimeError" in debug.stacktrace
        assert debug.is_stuck is False


async def test_end_to_end_top_merchants(orchestrator, task_queue, directory, calculators, redis, settings):
    directory.merchants["P1"] = [Merchant("M1", "Payroc 12", "Shop One"), Merchant("M2", "ArgyleX", "Shop Two")]
    calculators[ProcessorKind.payroc].totals["M1"] = vc("120.50", 3)
    calculators[ProcessorKind.argyle].totals["M2"] = vc("80.00", 1)

    run_id = await orchestrator.trigger_run("u1", "P1")
    assert await orchestrator.locks.get_status("u1") == LockStatus.queued

    await orchestrator.start_run(run_id, "u1", "P1")
    assert await orchestrator.locks.get_status("u1") == LockStatus.processing

    await _run_all_children(orchestrator, task_queue)
    assert len(task_queue.finalizations) == 1

    result = await Finalizer(redis, settings).finalize(task_queue.finalizations[0])

    assert [(m.merchant_id, m.total_volume, m.total_count) for m in result.top_merchants] == [
        ("M1", Decimal("120.50"), 3),
        ("M2", Decimal("80.00"), 1),
    ]
    assert await orchestrator.locks.get_status("u1") == LockStatus.completed
    queued = await redis.lrange(settings.PENDING_DISPATCH_KEY, 0, -1)
    assert len(queued) == 1
    assert Top10Result.model_validate_json(queued[0]).run_id == run_id
