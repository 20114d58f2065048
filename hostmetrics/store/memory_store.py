"""
In-memory document store.

Emulates the snapshot-listener semantics of the production store for local
development and tests: every write re-delivers the full result set to each
matching subscriber. It can also emulate composite-index requirements,
security-rule denials and transient outages so that the engine's recovery
paths can be exercised without a live backend.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from hostmetrics.models import Query, QueryErrorKind, RawDocument

from .base import DocumentStore, ErrorCallback, QueryError, SnapshotCallback, Subscription
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)


def _clock() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDocumentStore(DocumentStore):
    """
    Thread-safe dict-backed document store.

    Attributes:
        enforce_indexes: Reject compound or filtered collection-group queries
            that have no declared composite index
        fetch_latency: Artificial delay applied to every one-shot fetch
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        enforce_indexes: bool = False,
        fetch_latency: float = 0.0,
        clock: Callable[[], datetime] = _clock,
    ):
        super().__init__(retry_policy)
        self.enforce_indexes = enforce_indexes
        self.fetch_latency = fetch_latency
        self._clock = clock

        self._documents: dict[str, dict[str, Any]] = {}
        self._subscribers: dict[int, tuple[Subscription, SnapshotCallback, ErrorCallback]] = {}
        self._indexes: set[tuple[str, bool, tuple[str, ...]]] = set()
        self._denied: set[str] = set()
        self._failures: dict[str, tuple[QueryErrorKind, int]] = {}
        self._lock = threading.RLock()
        self._next_id = 0
        self.fetch_count = 0

        logger.info(
            "memory_store_initialized",
            enforce_indexes=enforce_indexes,
            fetch_latency=fetch_latency,
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def put(self, path: str, data: dict[str, Any]) -> None:
        """
        Create or replace a document and notify matching subscribers.

        Args:
            path: Document path with an even number of segments
            data: Field map (copied)
        """
        path = self._validate_document_path(path)
        with self._lock:
            previous = self._documents.get(path)
            self._documents[path] = dict(data)
        self._notify(path, previous, data)

    def delete(self, path: str) -> bool:
        """Remove a document. Returns False when it did not exist."""
        path = self._validate_document_path(path)
        with self._lock:
            previous = self._documents.pop(path, None)
        if previous is None:
            return False
        self._notify(path, previous, None)
        return True

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()

    # =========================================================================
    # Fault emulation
    # =========================================================================

    def declare_index(self, collection_id: str, fields: list[str], group: bool = False) -> None:
        """Declare a composite index for the given collection ID and fields."""
        with self._lock:
            self._indexes.add((collection_id, group, tuple(sorted(set(fields)))))

    def deny(self, collection_id: str) -> None:
        """Reject every query on this collection ID with permission_denied."""
        with self._lock:
            self._denied.add(collection_id)

    def allow(self, collection_id: str) -> None:
        with self._lock:
            self._denied.discard(collection_id)

    def inject_failure(
        self,
        collection_id: str,
        kind: QueryErrorKind = QueryErrorKind.TRANSIENT,
        times: int = 1,
    ) -> None:
        """Fail the next `times` subscribes or fetches on this collection ID."""
        with self._lock:
            self._failures[collection_id] = (kind, times)

    def fail_subscriptions(self, collection_id: str, kind: QueryErrorKind) -> int:
        """
        Terminate live subscriptions on a collection ID with an error.

        Mirrors a listener being torn down by the backend mid-stream.

        Returns:
            Number of subscriptions terminated
        """
        with self._lock:
            targets = [
                entry
                for entry in self._subscribers.values()
                if entry[0].query.collection_id == collection_id
            ]
        for subscription, _, on_error in targets:
            subscription.cancel()
            on_error(QueryError(kind, f"listener on {collection_id} terminated"))
        return len(targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # =========================================================================
    # DocumentStore
    # =========================================================================

    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        try:
            self._check(query)
        except QueryError as e:
            logger.info("memory_subscribe_rejected", query=query.describe(), kind=e.kind.value)
            subscription = Subscription(query)
            subscription.cancel()
            on_error(e)
            return subscription

        with self._lock:
            key = self._next_id
            self._next_id += 1
            subscription = Subscription(query, on_cancel=lambda: self._unregister(key))
            self._subscribers[key] = (subscription, on_snapshot, on_error)
            initial = self._results(query)

        on_snapshot(initial)
        return subscription

    async def _fetch(self, query: Query) -> list[RawDocument]:
        if self.fetch_latency:
            await asyncio.sleep(self.fetch_latency)
        with self._lock:
            self.fetch_count += 1
        self._check(query)
        with self._lock:
            return self._results(query)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate_document_path(path: str) -> str:
        path = path.strip("/")
        if not path or len(path.split("/")) % 2 != 0:
            raise ValueError(f"Not a document path: {path!r}")
        return path

    def _unregister(self, key: int) -> None:
        with self._lock:
            self._subscribers.pop(key, None)

    def _check(self, query: Query) -> None:
        collection_id = query.collection_id
        with self._lock:
            if collection_id in self._denied:
                raise QueryError(
                    QueryErrorKind.PERMISSION_DENIED,
                    f"Missing or insufficient permissions for {collection_id}",
                )

            failure = self._failures.get(collection_id)
            if failure is not None:
                kind, remaining = failure
                if remaining <= 1:
                    del self._failures[collection_id]
                else:
                    self._failures[collection_id] = (kind, remaining - 1)
                raise QueryError(kind, f"injected failure on {collection_id}")

            if self.enforce_indexes and query.needs_composite_index:
                index = (collection_id, query.group, query.filter_fields)
                if index not in self._indexes:
                    raise QueryError(
                        QueryErrorKind.MISSING_INDEX,
                        f"The query requires an index: {query.describe()}",
                    )

    def _results(self, query: Query) -> list[RawDocument]:
        fetched_at = self._clock()
        results = []
        for path in sorted(self._documents):
            doc = RawDocument(
                id=path.rsplit("/", 1)[-1],
                path=path,
                data=dict(self._documents[path]),
                fetched_at=fetched_at,
            )
            if query.matches(doc):
                results.append(doc)
        return results

    def _notify(
        self,
        path: str,
        previous: Optional[dict[str, Any]],
        current: Optional[dict[str, Any]],
    ) -> None:
        doc_id = path.rsplit("/", 1)[-1]
        deliveries = []
        with self._lock:
            for subscription, on_snapshot, _ in list(self._subscribers.values()):
                touched = any(
                    data is not None
                    and subscription.query.matches(RawDocument(id=doc_id, path=path, data=data))
                    for data in (previous, current)
                )
                if touched:
                    deliveries.append((subscription, on_snapshot, self._results(subscription.query)))

        for subscription, on_snapshot, documents in deliveries:
            if subscription.active:
                on_snapshot(documents)
