"""
Cloud Firestore document store adapter.

Live queries use Firestore snapshot listeners and one-shot fetches use
Query.get() on a worker thread. Backend exceptions are classified into
QueryErrorKind at this boundary so nothing above it depends on the client
library.
"""

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from hostmetrics.config import Settings
from hostmetrics.models import FilterOp, Query, QueryErrorKind, RawDocument

from .base import DocumentStore, ErrorCallback, QueryError, SnapshotCallback, Subscription
from .retry import RetryPolicy

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
    gexc.TooManyRequests,
    gexc.Aborted,
)


def classify_error(error: Exception) -> QueryError:
    """
    Map a google-api-core exception onto the store error kinds.

    FailedPrecondition is what Firestore raises for a query that needs a
    composite index it does not have.
    """
    if isinstance(error, QueryError):
        return error
    if isinstance(error, gexc.FailedPrecondition):
        return QueryError(QueryErrorKind.MISSING_INDEX, str(error))
    if isinstance(error, (gexc.PermissionDenied, gexc.Unauthenticated)):
        return QueryError(QueryErrorKind.PERMISSION_DENIED, str(error))
    if isinstance(error, _TRANSIENT_ERRORS):
        return QueryError(QueryErrorKind.TRANSIENT, str(error))
    return QueryError(QueryErrorKind.TRANSIENT, f"{type(error).__name__}: {error}")


class FirestoreDocumentStore(DocumentStore):
    """
    Firestore implementation of the document store.

    Attributes:
        project: Google Cloud project ID (None uses the environment default)
        database: Firestore database ID
        credentials_path: Service account JSON, empty for application default
        watch_poll_interval: Seconds between checks that a live listener is still open
    """

    def __init__(
        self,
        project: Optional[str] = None,
        database: str = "(default)",
        credentials_path: str = "",
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[firestore.Client] = None,
        watch_poll_interval: float = 5.0,
    ):
        super().__init__(retry_policy)
        self.project = project or None
        self.database = database
        self.credentials_path = credentials_path
        self.watch_poll_interval = watch_poll_interval
        self._client = client
        self._client_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "FirestoreDocumentStore":
        return cls(
            project=settings.firestore_project,
            database=settings.firestore_database,
            credentials_path=settings.firestore_credentials_path,
            retry_policy=RetryPolicy.from_settings(settings),
            watch_poll_interval=settings.firestore_watch_poll_seconds,
        )

    @property
    def client(self) -> firestore.Client:
        if self._client is None:
            with self._client_lock:
                if self._client is None:
                    if self.credentials_path:
                        self._client = firestore.Client.from_service_account_json(
                            self.credentials_path,
                            project=self.project,
                            database=self.database,
                        )
                    else:
                        self._client = firestore.Client(project=self.project, database=self.database)
                    logger.info(
                        "firestore_client_created",
                        project=self._client.project,
                        database=self.database,
                    )
        return self._client

    def _build(self, query: Query) -> Any:
        if query.group:
            fs_query: Any = self.client.collection_group(query.collection)
        else:
            fs_query = self.client.collection(*query.collection.split("/"))
        for f in query.filters:
            value = list(f.value) if f.op == FilterOp.IN else f.value
            fs_query = fs_query.where(filter=FieldFilter(f.field, f.op.value, value))
        return fs_query

    @staticmethod
    def _to_raw(snapshot: Any, fetched_at: datetime) -> RawDocument:
        return RawDocument(
            id=snapshot.id,
            path=snapshot.reference.path,
            data=snapshot.to_dict() or {},
            fetched_at=fetched_at,
        )

    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """
        Attach a snapshot listener.

        Snapshot listeners do not surface query errors to the caller, so the
        query is checked with a one-document read first. That read and the
        listener setup run on a daemon thread so this call never blocks the
        event loop.

        Once attached, the client library may close the listener on its own
        background thread when the stream fails for good. That closure is
        reported through on_error and ends the subscription; resubscribing
        is left to the caller.
        """
        state: dict[str, Any] = {"watch": None}
        lock = threading.Lock()
        stopped = threading.Event()

        def release() -> None:
            stopped.set()
            with lock:
                watch, state["watch"] = state["watch"], None
            if watch is not None:
                watch.unsubscribe()

        subscription = Subscription(query, on_cancel=release)

        def deliver(docs: list, _changes: list, read_time: Any) -> None:
            if not subscription.active:
                return
            fetched_at = read_time if isinstance(read_time, datetime) else datetime.now(timezone.utc)
            on_snapshot([self._to_raw(doc, fetched_at) for doc in docs])

        def closed(watch: Any, reason: Any) -> None:
            with lock:
                if state["watch"] is not watch or not subscription.active:
                    return
                state["watch"] = None
            stopped.set()
            if isinstance(reason, Exception):
                error = classify_error(reason)
            else:
                error = QueryError(QueryErrorKind.TRANSIENT, f"listener stream closed: {reason}")
            logger.warning(
                "firestore_listener_closed",
                query=query.describe(),
                kind=error.kind.value,
                error=error.message,
            )
            subscription.cancel()
            on_error(error)

        def watch_closure(watch: Any) -> None:
            close = watch.close

            def close_and_report(reason: Any = None) -> None:
                close(reason)
                closed(watch, reason)

            watch.close = close_and_report

            # Closures that bypass close() still flip is_active
            while not stopped.wait(self.watch_poll_interval):
                if not watch.is_active:
                    closed(watch, None)
                    return

        def attach() -> None:
            try:
                fs_query = self._build(query)
                fs_query.limit(1).get()
                with lock:
                    if not subscription.active:
                        return
                    watch = state["watch"] = fs_query.on_snapshot(deliver)
                logger.info("firestore_listener_attached", query=query.describe())
            except Exception as e:
                error = classify_error(e)
                logger.warning(
                    "firestore_listener_failed",
                    query=query.describe(),
                    kind=error.kind.value,
                    error=error.message,
                )
                if subscription.active:
                    subscription.cancel()
                    on_error(error)
                return
            watch_closure(watch)

        threading.Thread(target=attach, name="firestore-listen", daemon=True).start()
        return subscription

    def _get(self, query: Query) -> list[RawDocument]:
        try:
            snapshots = self._build(query).get()
        except Exception as e:
            raise classify_error(e) from e
        fetched_at = datetime.now(timezone.utc)
        return [self._to_raw(doc, fetched_at) for doc in snapshots]

    async def _fetch(self, query: Query) -> list[RawDocument]:
        return await asyncio.to_thread(self._get, query)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
