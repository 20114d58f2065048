"""
Fallback query orchestration.

Compound collection-group queries need composite indexes that may not be
deployed. When the store reports a missing index, the orchestrator switches
the source to an equivalent fan-out: watch the parent entities, and on every
parent snapshot fetch each parent's sub-collection concurrently and deliver
the concatenated result through the same callback the direct query used.

Callbacks from the store can arrive on any thread; everything here runs on
the owning event loop.
"""

import asyncio
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict

from hostmetrics.models import Query, QueryErrorKind, QueryFilter, RawDocument, RecordKind, SourceMode
from hostmetrics.store import DocumentStore, QueryError, RetryPolicy, Subscription

logger = structlog.get_logger(__name__)

DocumentsCallback = Callable[[list[RawDocument]], None]
ErrorCallback = Callable[[QueryError], None]


class FallbackPlan(BaseModel):
    """
    Per-parent replacement for a compound collection-group query.

    Attributes:
        parent_query: Query selecting the parent entities
        child_collection: Sub-collection ID under each parent
        child_filters: Filters applied to each sub-collection query
    """

    model_config = ConfigDict(frozen=True)

    parent_query: Query
    child_collection: str
    child_filters: tuple[QueryFilter, ...] = ()

    def child_query(self, parent_path: str) -> Query:
        return Query(
            collection=f"{parent_path}/{self.child_collection}",
            filters=self.child_filters,
        )


class SourceQuery(BaseModel):
    """A dashboard data source: its direct query and optional fallback."""

    model_config = ConfigDict(frozen=True)

    key: RecordKind
    direct: Query
    fallback: Optional[FallbackPlan] = None


class ResilientSubscription:
    """
    A live source that survives missing indexes and transient failures.

    Attributes:
        source: Source being served
        mode: DIRECT until a missing index forces FALLBACK
    """

    def __init__(
        self,
        orchestrator: "FallbackQueryOrchestrator",
        source: SourceQuery,
        on_documents: DocumentsCallback,
        on_error: ErrorCallback,
        loop: asyncio.AbstractEventLoop,
    ):
        self.orchestrator = orchestrator
        self.source = source
        self._on_documents = on_documents
        self._on_error = on_error
        self._loop = loop

        self._mode = SourceMode.DIRECT
        self._subscription: Optional[Subscription] = None
        self._epoch = 0
        self._attempt = 0
        self._fanout: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False
        self._failed = False
        self.log = logger.bind(source=source.key.value)

    @property
    def mode(self) -> SourceMode:
        return self._mode

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._failed)

    @property
    def pending_task(self) -> Optional[asyncio.Task]:
        """The in-flight fan-out, if any."""
        if self._fanout is not None and not self._fanout.done():
            return self._fanout
        return None

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None and not self._retry_handle.cancelled()

    def start(self) -> None:
        self._open()

    def cancel(self) -> None:
        """Stop the store subscription, any fan-out and any scheduled retry."""
        if self._cancelled:
            return
        self._cancelled = True
        self._close_subscription()
        if self._fanout is not None and not self._fanout.done():
            self._fanout.cancel()
        self._fanout = None
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.log.debug("resilient_subscription_cancelled", mode=self._mode.value)

    # =========================================================================
    # Subscription lifecycle
    # =========================================================================

    def _current_query(self) -> Query:
        if self._mode == SourceMode.FALLBACK and self.source.fallback is not None:
            return self.source.fallback.parent_query
        return self.source.direct

    def _open(self) -> None:
        self._retry_handle = None
        if not self.active:
            return
        self._epoch += 1
        epoch = self._epoch
        handler = self._on_parents if self._mode == SourceMode.FALLBACK else self._on_direct
        query = self._current_query()
        self.log.debug("source_subscribing", mode=self._mode.value, query=query.describe())
        self._subscription = self.orchestrator.store.subscribe(
            query,
            lambda docs: self._post(epoch, handler, docs),
            lambda error: self._post(epoch, self._handle_error, error),
        )

    def _close_subscription(self) -> None:
        self._epoch += 1
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _post(self, epoch: int, callback: Callable, payload) -> None:
        """Marshal a store callback onto the owning loop."""
        if not self.active:
            return
        try:
            self._loop.call_soon_threadsafe(self._dispatch, epoch, callback, payload)
        except RuntimeError:
            # Loop already closed during shutdown
            self.log.debug("source_callback_after_loop_closed")

    def _dispatch(self, epoch: int, callback: Callable, payload) -> None:
        if not self.active or epoch != self._epoch:
            return
        callback(payload)

    # =========================================================================
    # Deliveries
    # =========================================================================

    def _on_direct(self, documents: list[RawDocument]) -> None:
        self._attempt = 0
        self._on_documents(documents)

    def _on_parents(self, parents: list[RawDocument]) -> None:
        self._attempt = 0
        if self._fanout is not None and not self._fanout.done():
            self._fanout.cancel()
            self.log.debug("fallback_fanout_superseded")
        self._fanout = self._loop.create_task(self._fan_out(parents))

    async def _fan_out(self, parents: list[RawDocument]) -> None:
        plan = self.source.fallback
        documents = await self.orchestrator.fetch_children(plan, parents)
        if self.active and asyncio.current_task() is self._fanout:
            self._on_documents(documents)

    # =========================================================================
    # Errors
    # =========================================================================

    def _handle_error(self, error: QueryError) -> None:
        if error.kind == QueryErrorKind.MISSING_INDEX:
            if self._mode == SourceMode.DIRECT and self.source.fallback is not None:
                self._engage_fallback(error)
                return
            self._fail(error)
            return

        if error.kind == QueryErrorKind.TRANSIENT:
            policy: RetryPolicy = self.orchestrator.store.retry_policy
            if policy.should_retry(self._attempt):
                wait_time = policy.delay(self._attempt)
                self._attempt += 1
                self._close_subscription()
                self.log.info(
                    "source_resubscribe_scheduled",
                    attempt=self._attempt,
                    wait_seconds=wait_time,
                    mode=self._mode.value,
                )
                self._retry_handle = self._loop.call_later(wait_time, self._open)
                return

        self._fail(error)

    def _engage_fallback(self, error: QueryError) -> None:
        self._close_subscription()
        self._mode = SourceMode.FALLBACK
        self._attempt = 0
        self.log.warning(
            "fallback_engaged",
            direct_query=self.source.direct.describe(),
            parent_query=self.source.fallback.parent_query.describe(),
            error=error.message,
        )
        self._open()

    def _fail(self, error: QueryError) -> None:
        self._close_subscription()
        self._failed = True
        self.log.error(
            "source_failed",
            kind=error.kind.value,
            mode=self._mode.value,
            error=error.message,
            attempts=self._attempt + 1,
        )
        self._on_error(error)


class FallbackQueryOrchestrator:
    """
    Opens resilient subscriptions and performs fallback fan-outs.

    Attributes:
        store: Document store queried for both direct and fallback paths
        max_concurrency: Upper bound on concurrent sub-collection fetches
    """

    def __init__(self, store: DocumentStore, max_concurrency: int = 10):
        self.store = store
        self.max_concurrency = max_concurrency

    def subscribe(
        self,
        source: SourceQuery,
        on_documents: DocumentsCallback,
        on_error: ErrorCallback,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> ResilientSubscription:
        """
        Open a source.

        Must be called from the owning event loop unless one is passed in.

        Args:
            source: Source to serve
            on_documents: Receives the full current record set for the source
            on_error: Receives fatal errors (permission denied, exhausted
                retries, missing index without a fallback)

        Returns:
            ResilientSubscription
        """
        subscription = ResilientSubscription(
            self,
            source,
            on_documents,
            on_error,
            loop or asyncio.get_running_loop(),
        )
        subscription.start()
        return subscription

    async def fetch_children(
        self, plan: FallbackPlan, parents: list[RawDocument]
    ) -> list[RawDocument]:
        """
        Fetch each parent's sub-collection concurrently.

        A child fetch that fails contributes no documents and is logged.

        Args:
            plan: Fallback plan describing the sub-collection
            parents: Parent documents, in the order results should be concatenated

        Returns:
            Child documents concatenated in parent order
        """
        if not parents:
            return []

        semaphore = asyncio.Semaphore(min(self.max_concurrency, len(parents)))

        async def fetch(parent: RawDocument) -> list[RawDocument]:
            async with semaphore:
                try:
                    return await self.store.fetch_once(plan.child_query(parent.path))
                except QueryError as e:
                    logger.warning(
                        "fallback_child_fetch_failed",
                        parent=parent.path,
                        child_collection=plan.child_collection,
                        kind=e.kind.value,
                        error=e.message,
                    )
                    return []

        batches = await asyncio.gather(*(fetch(parent) for parent in parents))
        documents = [doc for batch in batches for doc in batch]
        logger.debug(
            "fallback_fanout_complete",
            child_collection=plan.child_collection,
            parents=len(parents),
            documents=len(documents),
        )
        return documents
