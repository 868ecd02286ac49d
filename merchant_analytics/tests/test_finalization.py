"""Ranking and finalization (fan-in)."""

from decimal import Decimal

import pytest

from merchant_analytics.models import FinalizationContext, LockStatus
from merchant_analytics.schemas import Top10Result
from merchant_analytics.services.aggregation_store import AggregationStore
from merchant_analytics.services.finalization import Finalizer, rank_top_merchants
from merchant_analytics.services.lock_manager import LockManager
from merchant_analytics.tests.conftest import vc


def _context(merchant_ids, names=None):
    return FinalizationContext(
        run_id="r1",
        user_id="u1",
        portal_id="P1",
        merchant_ids=list(merchant_ids),
        merchant_names=names if names is not None else {m: f"Shop {m}" for m in merchant_ids},
    )


class TestRanking:
    def test_descending_with_ties_in_merchant_order(self, settings):
        context = _context(["A", "B", "C", "D"])
        totals = {"A": vc("50", 1), "B": vc("200", 1), "C": vc("75", 1), "D": vc("200", 1)}

        ranked = rank_top_merchants(
            context, totals, top_n=settings.TOP_N, unknown_name=settings.UNKNOWN_MERCHANT_NAME
        )

        assert [r.merchant_id for r in ranked] == ["B", "D", "C", "A"]

    def test_truncates_to_top_n(self, settings):
        ids = [f"M{i}" for i in range(15)]
        totals = {m: vc(str(i), 1) for i, m in enumerate(ids)}

        ranked = rank_top_merchants(
            _context(ids), totals, top_n=10, unknown_name=settings.UNKNOWN_MERCHANT_NAME
        )

        assert len(ranked) == 10
        assert ranked[0].merchant_id == "M14"
        assert ranked[-1].merchant_id == "M5"

    def test_missing_name_uses_placeholder(self, settings):
        context = _context(["A"], names={"A": ""})

        ranked = rank_top_merchants(context, {"A": vc("1", 1)}, top_n=settings.TOP_N, unknown_name="Unknown")

        assert ranked[0].name == "Unknown"

    def test_missing_totals_rank_as_zero(self, settings):
        ranked = rank_top_merchants(
            _context(["A", "B"]), {"B": vc("-5", 1)}, top_n=settings.TOP_N, unknown_name=settings.UNKNOWN_MERCHANT_NAME
        )

        assert [(r.merchant_id, r.total_volume) for r in ranked] == [("A", Decimal("0")), ("B", Decimal("-5"))]


class TestFinalizer:
    @pytest.fixture
    async def locked_user(self, redis, settings):
        locks = LockManager(redis, ttl_seconds=settings.LOCK_TTL_SECONDS)
        await locks.try_acquire("u1")
        await locks.set_status("u1", LockStatus.processing)
        return locks

    async def test_queues_ranking_and_completes_lock(self, redis, settings, locked_user):
        store = AggregationStore(redis)
        await store.overwrite("r1", "A", vc("120.50", 3))
        await store.overwrite("r1", "B", vc("80.00", 1))

        result = await Finalizer(redis, settings).finalize(_context(["A", "B"]))

        queued = await redis.lrange(settings.PENDING_DISPATCH_KEY, 0, -1)
        assert len(queued) == 1
        assert Top10Result.model_validate_json(queued[0]) == result
        assert [m.merchant_id for m in result.top_merchants] == ["A", "B"]
        assert await locked_user.get_status("u1") == LockStatus.completed

    async def test_limit_and_placeholder_come_from_settings(self, redis, settings, locked_user):
        settings = settings.model_copy(update={"TOP_N": 1, "UNKNOWN_MERCHANT_NAME": "No name"})
        store = AggregationStore(redis)
        await store.overwrite("r1", "A", vc("5", 1))
        await store.overwrite("r1", "B", vc("9", 1))

        result = await Finalizer(redis, settings).finalize(_context(["A", "B"], names={}))

        assert [(m.merchant_id, m.name) for m in result.top_merchants] == [("B", "No name")]

    async def test_repeat_produces_the_same_ranking(self, redis, settings, locked_user):
        await AggregationStore(redis).overwrite("r1", "A", vc("10", 1))
        finalizer = Finalizer(redis, settings)

        first = await finalizer.finalize(_context(["A"]))
        second = await finalizer.finalize(_context(["A"]))

        assert first == second
        assert await locked_user.get_status("u1") == LockStatus.completed

    async def test_empty_run_completes_without_queueing(self, redis, settings, locked_user):
        result = await Finalizer(redis, settings).finalize(_context([]))

        assert result is None
        assert await redis.llen(settings.PENDING_DISPATCH_KEY) == 0
        assert await locked_user.get_status("u1") == LockStatus.completed

    async def test_failure_marks_lock_failed_and_raises(self, redis, settings, locked_user):
        # Pending list key holding a string makes RPUSH fail
        await redis.set(settings.PENDING_DISPATCH_KEY, "oops")

        with pytest.raises(Exception):
            await Finalizer(redis, settings).finalize(_context(["A"]))

        assert await locked_user.get_status("u1") == LockStatus.failed
