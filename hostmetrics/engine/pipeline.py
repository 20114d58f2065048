"""
Host dashboard pipeline.

Owns the dashboard context (host and timeframe) and wires the stages
together:

    store snapshots -> normalization -> rollup -> published metrics store

Every store callback is funnelled into a single asyncio.Queue drained by one
worker task, so normalization, aggregation and publication never interleave.
Each context carries a generation number. Changing the timeframe or stopping
cancels every subscription of the old context and bumps the generation, and
anything tagged with an older generation is discarded before it can reach
the published store.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict

from hostmetrics.config import Settings, get_settings
from hostmetrics.models import (
    DashboardState,
    DashboardStatus,
    Query,
    RawDocument,
    RecordKind,
    SourceError,
    Timeframe,
    eq,
)
from hostmetrics.store import DocumentStore, QueryError, SnapshotCache, SnapshotCacheError

from .dashboard import DashboardAggregator
from .fallback import FallbackPlan, FallbackQueryOrchestrator, ResilientSubscription, SourceQuery
from .metrics_store import PublishedMetricsStore
from .normalizer import NormalizationResult, normalize_batch
from .timeframes import get_timezone

logger = structlog.get_logger(__name__)

PARTIES = "parties"
TICKET_SALES = "ticketSales"
RSVPS = "rsvps"
INTERACTIONS = "eventInteractions"


class PipelineNotStartedError(RuntimeError):
    """Raised when an operation needs an active dashboard context."""


class DashboardContext(BaseModel):
    """The host and timeframe currently being tracked."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    timeframe: Timeframe
    generation: int


class _Delivery(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    generation: int
    kind: RecordKind
    documents: list[RawDocument]


class _Failure(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    generation: int
    kind: RecordKind
    error: QueryError


class _Recompute(BaseModel):
    model_config = ConfigDict(frozen=True)

    generation: int


_Message = Union[_Delivery, _Failure, _Recompute]


def build_sources(host_id: str) -> list[SourceQuery]:
    """
    Data sources for one host.

    Sales and RSVPs live in sub-collections of each party. The direct
    queries are collection-group queries filtered on hostId, which need an
    index; the fallback watches the host's parties and fetches each party's
    sub-collection instead. Nothing is filtered by date at the store: the
    date fields come in several encodings the store cannot range-compare,
    and undated documents must reach normalization to be counted as drops.
    The window is applied by the rollup.
    """
    parties = Query(collection=PARTIES, filters=(eq("hostId", host_id),))

    def nested(kind: RecordKind, collection: str) -> SourceQuery:
        return SourceQuery(
            key=kind,
            direct=Query(collection=collection, group=True, filters=(eq("hostId", host_id),)),
            fallback=FallbackPlan(parent_query=parties, child_collection=collection),
        )

    return [
        nested(RecordKind.SALE, TICKET_SALES),
        nested(RecordKind.ATTENDANCE, RSVPS),
        SourceQuery(key=RecordKind.EVENT, direct=parties),
        SourceQuery(
            key=RecordKind.INTERACTION,
            direct=Query(collection=INTERACTIONS, filters=(eq("hostId", host_id),)),
        ),
    ]


class HostDashboardPipeline:
    """
    Live aggregation pipeline for one host dashboard.

    Attributes:
        store: Document store the sources are read from
        metrics_store: Where computed states are published
        snapshot_cache: Optional last-known-good cache
        aggregator: Rollup composition for one pass
    """

    def __init__(
        self,
        store: DocumentStore,
        metrics_store: PublishedMetricsStore,
        settings: Optional[Settings] = None,
        snapshot_cache: Optional[SnapshotCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.metrics_store = metrics_store
        self.snapshot_cache = snapshot_cache if settings.snapshot_cache_enabled else None
        self.aggregator = DashboardAggregator(
            tz=get_timezone(settings.reporting_timezone),
            week_start=settings.week_start,
            top_n=settings.top_n,
        )
        self.orchestrator = FallbackQueryOrchestrator(store, settings.fallback_max_concurrency)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._context: Optional[DashboardContext] = None
        self._generation = metrics_store.get_state().generation
        self._subscriptions: dict[RecordKind, ResilientSubscription] = {}
        self._results: dict[RecordKind, NormalizationResult] = {}
        self._errors: list[SourceError] = []

    @property
    def context(self) -> Optional[DashboardContext]:
        return self._context

    @property
    def generation(self) -> int:
        return self._generation

    # =========================================================================
    # Context control
    # =========================================================================

    async def start(self, host_id: str, timeframe: Union[Timeframe, str] = Timeframe.TODAY) -> DashboardContext:
        """
        Start tracking a host, replacing any current context.

        Raises:
            InvalidTimeframeError: If the timeframe is not recognised
        """
        timeframe = Timeframe.parse(timeframe)
        context = self._switch(host_id, timeframe)
        self._restore_cached(context)
        self._open_sources(context)
        logger.info(
            "pipeline_context_started",
            host_id=host_id,
            timeframe=timeframe.value,
            generation=context.generation,
        )
        return context

    async def select_timeframe(self, timeframe: Union[Timeframe, str]) -> DashboardContext:
        """
        Switch the current host to another timeframe.

        Raises:
            InvalidTimeframeError: If the timeframe is not recognised
            PipelineNotStartedError: If no host is being tracked
        """
        timeframe = Timeframe.parse(timeframe)
        if self._context is None:
            raise PipelineNotStartedError("No dashboard context; start a session first")
        previous = self._context
        context = self._switch(previous.host_id, timeframe)
        self._open_sources(context)
        logger.info(
            "pipeline_timeframe_changed",
            host_id=context.host_id,
            previous=previous.timeframe.value,
            timeframe=timeframe.value,
            generation=context.generation,
        )
        return context

    async def refresh(self) -> None:
        """Recompute the current context against a fresh "now"."""
        if self._context is None:
            raise PipelineNotStartedError("No dashboard context; start a session first")
        self._enqueue(_Recompute(generation=self._context.generation))

    async def stop(self) -> None:
        """Cancel every subscription, discard in-flight work and stop the worker."""
        self._teardown()
        self._generation += 1
        if self._context is not None:
            logger.info("pipeline_context_stopped", host_id=self._context.host_id)
        self._context = None

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._queue = None

    async def wait_until_idle(self, timeout: float = 5.0) -> None:
        """
        Wait until every delivered snapshot has been processed.

        Covers callbacks already scheduled on the loop, running fallback
        fan-outs, scheduled resubscribes and queued messages.
        """

        async def settle() -> None:
            while True:
                await asyncio.sleep(0)
                subscriptions = list(self._subscriptions.values())
                tasks = [s.pending_task for s in subscriptions if s.pending_task is not None]
                if tasks:
                    await asyncio.wait(tasks)
                    continue
                if any(s.retry_pending for s in subscriptions):
                    await asyncio.sleep(0.01)
                    continue
                if self._queue is not None:
                    await self._queue.join()
                await asyncio.sleep(0)
                if self._queue is None or self._queue.empty():
                    if not any(s.pending_task or s.retry_pending for s in self._subscriptions.values()):
                        return

        await asyncio.wait_for(settle(), timeout)

    # =========================================================================
    # Internals
    # =========================================================================

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = asyncio.get_running_loop().create_task(self._run_worker())

    def _switch(self, host_id: str, timeframe: Timeframe) -> DashboardContext:
        self._ensure_worker()
        self._teardown()
        self._generation += 1
        self._results = {}
        self._errors = []
        self._context = DashboardContext(
            host_id=host_id, timeframe=timeframe, generation=self._generation
        )
        return self._context

    def _teardown(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.cancel()
        self._subscriptions = {}

    def _open_sources(self, context: DashboardContext) -> None:
        generation = context.generation

        for source in build_sources(context.host_id):
            kind = source.key
            self._subscriptions[kind] = self.orchestrator.subscribe(
                source,
                on_documents=lambda docs, kind=kind: self._enqueue(
                    _Delivery(generation=generation, kind=kind, documents=docs)
                ),
                on_error=lambda error, kind=kind: self._enqueue(
                    _Failure(generation=generation, kind=kind, error=error)
                ),
            )

    def _restore_cached(self, context: DashboardContext) -> None:
        if self.snapshot_cache is None:
            return
        try:
            cached = self.snapshot_cache.load(context.host_id)
        except SnapshotCacheError as e:
            logger.warning("snapshot_cache_unavailable", host_id=context.host_id, error=str(e))
            return
        if cached is None:
            return
        if cached.timeframe != context.timeframe:
            logger.info(
                "cached_snapshot_skipped",
                host_id=context.host_id,
                cached_timeframe=cached.timeframe.value,
                timeframe=context.timeframe.value,
            )
            return

        state = cached.model_copy(
            update={
                "generation": context.generation,
                "status": DashboardStatus(stale=True, offline=True),
            }
        )
        self.metrics_store.publish(state)
        logger.info(
            "cached_snapshot_restored",
            host_id=context.host_id,
            cached_timeframe=cached.timeframe.value,
            computed_at=cached.computed_at.isoformat(),
        )

    def _enqueue(self, message: _Message) -> None:
        if message.generation != self._generation or self._queue is None:
            logger.debug("stale_delivery_discarded", generation=message.generation)
            return
        self._queue.put_nowait(message)

    async def _run_worker(self) -> None:
        queue = self._queue
        while True:
            message = await queue.get()
            try:
                await self._handle(message)
            except Exception as e:
                logger.error(
                    "pipeline_message_failed",
                    message=type(message).__name__,
                    error=str(e),
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _handle(self, message: _Message) -> None:
        if self._context is None or message.generation != self._generation:
            logger.debug(
                "stale_delivery_discarded",
                generation=message.generation,
                current_generation=self._generation,
            )
            return

        if isinstance(message, _Delivery):
            self._results[message.kind] = normalize_batch(message.kind, message.documents)
            await self._recompute(message.generation)
        elif isinstance(message, _Failure):
            error = SourceError(
                source=message.kind,
                kind=message.error.kind,
                message=message.error.message,
                occurred_at=self._clock(),
            )
            self._errors.append(error)
            self.metrics_store.mark_error(error)
        else:
            await self._recompute(message.generation)

    async def _recompute(self, generation: int) -> None:
        context = self._context
        now = self._clock()
        result = self.aggregator.aggregate(
            {kind: r.records for kind, r in self._results.items()},
            context.timeframe,
            now,
            dropped={kind: r.dropped for kind, r in self._results.items()},
        )

        if generation != self._generation:
            logger.debug("stale_recompute_discarded", generation=generation)
            return

        state = DashboardState(
            host_id=context.host_id,
            timeframe=context.timeframe,
            generation=generation,
            computed_at=now,
            snapshot=result.snapshot,
            daily_buckets=result.daily_buckets,
            attendee_buckets=result.attendee_buckets,
            rsvp_buckets=result.rsvp_buckets,
            quality=result.quality,
            status=DashboardStatus(
                stale=bool(self._errors),
                errors=list(self._errors),
                modes={kind: sub.mode for kind, sub in self._subscriptions.items()},
                ready_sources=sorted(self._results, key=lambda k: k.value),
            ),
        )
        if not self.metrics_store.publish(state):
            return

        # Only complete, error-free states become the last known good one
        complete = len(self._results) == len(self._subscriptions)
        if self.snapshot_cache is not None and complete and not self._errors:
            try:
                await asyncio.to_thread(self.snapshot_cache.save, state)
            except SnapshotCacheError as e:
                logger.warning("snapshot_cache_save_failed", host_id=context.host_id, error=str(e))
