"""
Unit tests for the host dashboard pipeline.

Runs the full store -> normalize -> rollup -> publish path over the seeded
in-memory store, in direct mode and with composite indexes missing.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from hostmetrics.engine import HostDashboardPipeline, PipelineNotStartedError, PublishedMetricsStore
from hostmetrics.models import (
    InvalidTimeframeError,
    QueryErrorKind,
    RecordKind,
    SourceMode,
    Timeframe,
)
from hostmetrics.store import SnapshotCache
from tests.conftest import (
    HOST_ID,
    NOW,
    GatedDocumentStore,
    fixed_clock,
    party_data,
    rsvp_data,
    sale_data,
    seed_host,
)


@pytest_asyncio.fixture
async def make_pipeline(test_settings):
    """Factory for extra pipelines, all stopped after the test."""
    created = []

    def factory(store, metrics_store=None, settings=None, snapshot_cache=None):
        pipe = HostDashboardPipeline(
            store,
            metrics_store or PublishedMetricsStore(),
            settings=settings or test_settings,
            snapshot_cache=snapshot_cache,
            clock=fixed_clock,
        )
        created.append(pipe)
        return pipe

    yield factory
    for pipe in created:
        await pipe.stop()


def assert_today_totals(state) -> None:
    snapshot = state.snapshot
    assert snapshot.total_revenue == Decimal("50")
    assert snapshot.ticket_revenue == Decimal("30")
    assert snapshot.rsvp_revenue == Decimal("20")
    assert snapshot.total_attendees == 2
    assert snapshot.rsvp_count == 2
    assert snapshot.confirmed_rsvps == 1
    assert snapshot.unique_customers == 3
    assert [(b.day, b.value) for b in state.daily_buckets] == [(date(2026, 3, 18), Decimal("50"))]


class TestStart:
    @pytest.mark.asyncio
    async def test_publishes_today_totals(self, pipeline, metrics_store):
        context = await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert context.generation == 1
        assert state.host_id == HOST_ID
        assert state.timeframe == Timeframe.TODAY
        assert state.generation == 1
        assert state.computed_at == NOW
        assert_today_totals(state)

        interactions = state.snapshot.interactions
        assert (interactions.views, interactions.clicks) == (1, 1)
        assert interactions.conversion_rate == pytest.approx(100.0)

        events = state.snapshot.events
        assert events.total_events == 2
        assert events.sold_out_events == 1
        assert events.average_occupancy == pytest.approx(60.0)

        assert state.status.stale is False
        assert state.status.errors == []
        assert set(state.status.modes.values()) == {SourceMode.DIRECT}
        assert set(state.status.ready_sources) == set(RecordKind)

    @pytest.mark.asyncio
    async def test_last_30_days(self, pipeline, metrics_store):
        await pipeline.start(HOST_ID, "Last 30 Days")
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert state.snapshot.total_revenue == Decimal("140")
        assert state.snapshot.total_attendees == 5
        assert [(b.day, b.value) for b in state.daily_buckets] == [
            (date(2026, 3, 13), Decimal("90")),
            (date(2026, 3, 18), Decimal("50")),
        ]
        assert sum(b.value for b in state.daily_buckets) == state.snapshot.total_revenue

    @pytest.mark.asyncio
    async def test_invalid_timeframe(self, pipeline):
        with pytest.raises(InvalidTimeframeError):
            await pipeline.start(HOST_ID, "fortnight")
        assert pipeline.context is None

    @pytest.mark.asyncio
    async def test_other_hosts_are_ignored(self, pipeline, seeded_store, metrics_store):
        seeded_store.put("parties/x1", party_data(host_id="host_2"))
        seeded_store.put("parties/x1/ticketSales/x", sale_data(host_id="host_2", ticket_price=999.0))

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert state.snapshot.total_revenue == Decimal("50")
        assert state.snapshot.events.total_events == 2

    @pytest.mark.asyncio
    async def test_string_dated_sale_counted(self, pipeline, seeded_store, metrics_store):
        seeded_store.put(
            "parties/p1/ticketSales/s9",
            sale_data(
                ticket_price=100.0,
                buyer_id="buyer_9",
                purchaseDate=(NOW - timedelta(hours=1)).isoformat(),
            ),
        )

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        snapshot = metrics_store.get_snapshot()
        assert snapshot.ticket_revenue == Decimal("130")
        assert snapshot.sales_count == 3

    @pytest.mark.asyncio
    async def test_sale_dated_by_timestamp_alias(self, pipeline, seeded_store, metrics_store):
        data = sale_data(ticket_price=5.0, buyer_id="buyer_9", timestamp=NOW - timedelta(hours=4))
        del data["purchaseDate"]
        seeded_store.put("parties/p1/ticketSales/s9", data)

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        assert metrics_store.get_snapshot().ticket_revenue == Decimal("35")

    @pytest.mark.asyncio
    async def test_undated_sale_reported_as_dropped(self, pipeline, seeded_store, metrics_store):
        data = sale_data(ticket_price=100.0)
        del data["purchaseDate"]
        seeded_store.put("parties/p1/ticketSales/s9", data)

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert state.quality.dropped == {RecordKind.SALE: 1}
        assert_today_totals(state)

    @pytest.mark.asyncio
    async def test_rsvp_series_published(self, pipeline, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.LAST_30_DAYS)
        await pipeline.wait_until_idle()

        buckets = metrics_store.get_daily_buckets("rsvps")
        assert [(b.day, b.value) for b in buckets] == [
            (date(2026, 3, 13), Decimal("1")),
            (date(2026, 3, 18), Decimal("2")),
        ]


class TestFallback:
    @pytest.mark.asyncio
    async def test_missing_indexes_give_same_totals(self, indexed_store, make_pipeline):
        seed_host(indexed_store)
        metrics_store = PublishedMetricsStore()
        pipe = make_pipeline(indexed_store, metrics_store)

        await pipe.start(HOST_ID, Timeframe.TODAY)
        await pipe.wait_until_idle()

        state = metrics_store.get_state()
        assert_today_totals(state)
        assert state.status.modes[RecordKind.SALE] == SourceMode.FALLBACK
        assert state.status.modes[RecordKind.ATTENDANCE] == SourceMode.FALLBACK
        assert state.status.modes[RecordKind.EVENT] == SourceMode.DIRECT
        assert state.status.stale is False

    @pytest.mark.asyncio
    async def test_timeframe_switch_discards_in_flight_fan_out(self, retry_policy, make_pipeline):
        store = GatedDocumentStore(retry_policy=retry_policy, enforce_indexes=True, clock=fixed_clock)
        seed_host(store)
        metrics_store = PublishedMetricsStore()
        published = []
        metrics_store.on_update(published.append)
        pipe = make_pipeline(store, metrics_store)

        await pipe.start(HOST_ID, Timeframe.TODAY)
        for _ in range(10):
            await asyncio.sleep(0)
        assert store.waiting > 0

        context = await pipe.select_timeframe(Timeframe.LAST_30_DAYS)
        store.gate.set()
        await pipe.wait_until_idle()

        assert context.generation == 2
        assert not any(
            s.timeframe == Timeframe.TODAY and s.snapshot.ticket_revenue > 0 for s in published
        )
        final = metrics_store.get_state()
        assert final.timeframe == Timeframe.LAST_30_DAYS
        assert final.generation == 2
        assert final.snapshot.total_revenue == Decimal("140")


class TestTimeframeSwitch:
    @pytest.mark.asyncio
    async def test_switch_recomputes(self, pipeline, metrics_store, seeded_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()
        subscribers = seeded_store.subscriber_count

        context = await pipeline.select_timeframe("last_30_days")
        await pipeline.wait_until_idle()

        assert context.host_id == HOST_ID
        assert pipeline.generation == 2
        assert metrics_store.get_state().snapshot.total_revenue == Decimal("140")
        # Old context's subscriptions were released
        assert seeded_store.subscriber_count == subscribers

    @pytest.mark.asyncio
    async def test_switch_before_start(self, pipeline):
        with pytest.raises(PipelineNotStartedError):
            await pipeline.select_timeframe(Timeframe.THIS_WEEK)

    @pytest.mark.asyncio
    async def test_invalid_switch_keeps_context(self, pipeline):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        with pytest.raises(InvalidTimeframeError):
            await pipeline.select_timeframe("yesterday")
        assert pipeline.context.timeframe == Timeframe.TODAY
        assert pipeline.generation == 1


class TestLiveUpdates:
    @pytest.mark.asyncio
    async def test_new_sale_updates_totals(self, pipeline, seeded_store, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        seeded_store.put("parties/p2/ticketSales/s9", sale_data(ticket_price=40.0, buyer_id="buyer_9"))
        await pipeline.wait_until_idle()

        snapshot = metrics_store.get_snapshot()
        assert snapshot.total_revenue == Decimal("90")
        assert snapshot.unique_customers == 4

    @pytest.mark.asyncio
    async def test_cancelled_rsvp_removes_seats(self, pipeline, seeded_store, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        seeded_store.put("parties/p1/rsvps/r1", rsvp_data(party_size=2, status="cancelled"))
        await pipeline.wait_until_idle()

        snapshot = metrics_store.get_snapshot()
        assert snapshot.total_attendees == 0
        assert snapshot.rsvp_revenue == Decimal("0")
        assert snapshot.total_revenue == Decimal("30")

    @pytest.mark.asyncio
    async def test_dropped_documents_reported(self, pipeline, seeded_store, metrics_store):
        seeded_store.put("parties/p3", party_data(startDate=None))

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert state.quality.dropped == {RecordKind.EVENT: 1}
        assert state.snapshot.events.total_events == 2

    @pytest.mark.asyncio
    async def test_refresh_republishes(self, pipeline, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()
        version = metrics_store.version

        await pipeline.refresh()
        await pipeline.wait_until_idle()

        assert metrics_store.version == version + 1
        assert_today_totals(metrics_store.get_state())

    @pytest.mark.asyncio
    async def test_refresh_before_start(self, pipeline):
        with pytest.raises(PipelineNotStartedError):
            await pipeline.refresh()


class TestErrors:
    @pytest.mark.asyncio
    async def test_permission_denied_keeps_last_snapshot(self, pipeline, seeded_store, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        seeded_store.fail_subscriptions("ticketSales", QueryErrorKind.PERMISSION_DENIED)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert_today_totals(state)
        assert state.status.stale is True
        assert [(e.source, e.kind) for e in state.status.errors] == [
            (RecordKind.SALE, QueryErrorKind.PERMISSION_DENIED)
        ]

        # Later passes stay flagged for the rest of the context
        seeded_store.put("parties/p1/rsvps/r7", rsvp_data(user_id="guest_7"))
        await pipeline.wait_until_idle()
        state = metrics_store.get_state()
        assert state.snapshot.total_attendees == 3
        assert state.status.stale is True

    @pytest.mark.asyncio
    async def test_denied_source_does_not_block_others(self, pipeline, seeded_store, metrics_store):
        seeded_store.deny("eventInteractions")

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert state.snapshot.total_revenue == Decimal("50")
        assert state.snapshot.interactions.views == 0
        assert RecordKind.INTERACTION not in state.status.ready_sources
        assert state.status.stale is True

    @pytest.mark.asyncio
    async def test_transient_outage_recovers(self, pipeline, seeded_store, metrics_store):
        seeded_store.inject_failure("rsvps", QueryErrorKind.TRANSIENT, times=2)

        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()

        state = metrics_store.get_state()
        assert_today_totals(state)
        assert state.status.stale is False


class TestStop:
    @pytest.mark.asyncio
    async def test_no_publishes_after_stop(self, pipeline, seeded_store, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()
        version = metrics_store.version

        await pipeline.stop()
        seeded_store.put("parties/p1/ticketSales/s9", sale_data(ticket_price=100.0))
        await asyncio.sleep(0.01)

        assert metrics_store.version == version
        assert seeded_store.subscriber_count == 0
        assert pipeline.context is None

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, pipeline, metrics_store):
        await pipeline.start(HOST_ID, Timeframe.TODAY)
        await pipeline.wait_until_idle()
        await pipeline.stop()

        context = await pipeline.start(HOST_ID, Timeframe.LAST_30_DAYS)
        await pipeline.wait_until_idle()

        assert context.generation == 3
        assert metrics_store.get_state().snapshot.total_revenue == Decimal("140")


class TestSnapshotCacheRestore:
    @pytest.mark.asyncio
    async def test_cached_state_shown_offline_until_live(self, seeded_store, test_settings, make_pipeline):
        settings = test_settings.model_copy(update={"snapshot_cache_enabled": True})
        cache = SnapshotCache(":memory:")
        try:
            first = make_pipeline(seeded_store, settings=settings, snapshot_cache=cache)
            await first.start(HOST_ID, Timeframe.TODAY)
            await first.wait_until_idle()
            await first.stop()
            assert cache.load(HOST_ID) is not None

            metrics_store = PublishedMetricsStore()
            second = make_pipeline(seeded_store, metrics_store, settings=settings, snapshot_cache=cache)
            await second.start(HOST_ID, Timeframe.TODAY)

            restored = metrics_store.get_state()
            assert restored.status.offline is True
            assert restored.status.stale is True
            assert restored.snapshot.total_revenue == Decimal("50")

            await second.wait_until_idle()
            live = metrics_store.get_state()
            assert live.status.offline is False
            assert live.status.stale is False
            assert live.snapshot.total_revenue == Decimal("50")
        finally:
            cache.close()

    @pytest.mark.asyncio
    async def test_cached_state_for_other_timeframe_not_shown(
        self, seeded_store, test_settings, make_pipeline
    ):
        settings = test_settings.model_copy(update={"snapshot_cache_enabled": True})
        cache = SnapshotCache(":memory:")
        try:
            first = make_pipeline(seeded_store, settings=settings, snapshot_cache=cache)
            await first.start(HOST_ID, Timeframe.TODAY)
            await first.wait_until_idle()
            await first.stop()
            assert cache.load(HOST_ID).timeframe == Timeframe.TODAY

            metrics_store = PublishedMetricsStore()
            published = []
            metrics_store.on_update(published.append)
            second = make_pipeline(seeded_store, metrics_store, settings=settings, snapshot_cache=cache)
            await second.start(HOST_ID, Timeframe.LAST_30_DAYS)
            assert metrics_store.version == 0

            await second.wait_until_idle()
            assert published
            assert all(s.timeframe == Timeframe.LAST_30_DAYS for s in published)
            assert not any(s.status.offline for s in published)
            assert metrics_store.get_snapshot().total_revenue == Decimal("140")
            assert cache.load(HOST_ID).timeframe == Timeframe.LAST_30_DAYS
        finally:
            cache.close()

    @pytest.mark.asyncio
    async def test_cache_disabled_ignores_cache(self, seeded_store, test_settings, make_pipeline):
        cache = SnapshotCache(":memory:")
        try:
            pipe = make_pipeline(seeded_store, snapshot_cache=cache)
            await pipe.start(HOST_ID, Timeframe.TODAY)
            await pipe.wait_until_idle()
            assert cache.load(HOST_ID) is None
        finally:
            cache.close()

    @pytest.mark.asyncio
    async def test_errors_are_not_cached(self, seeded_store, test_settings, make_pipeline):
        settings = test_settings.model_copy(update={"snapshot_cache_enabled": True})
        cache = SnapshotCache(":memory:")
        seeded_store.deny("eventInteractions")
        try:
            pipe = make_pipeline(seeded_store, settings=settings, snapshot_cache=cache)
            await pipe.start(HOST_ID, Timeframe.TODAY)
            await pipe.wait_until_idle()
            assert cache.load(HOST_ID) is None
        finally:
            cache.close()
