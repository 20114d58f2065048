"""
Abstract document store interface.

The engine sees the external store only through this boundary: live
subscriptions that always deliver the complete current result set, and
one-shot fetches. Implementations exist for an in-memory emulator and for
Cloud Firestore, and every failure crosses the boundary as a QueryError.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from hostmetrics.models import Query, QueryErrorKind, RawDocument

from .retry import RetryPolicy

logger = structlog.get_logger(__name__)

SnapshotCallback = Callable[[list[RawDocument]], None]
ErrorCallback = Callable[["QueryError"], None]


class QueryError(Exception):
    """
    Failure reported by the document store.

    Attributes:
        kind: Classification used by callers to decide recovery
        message: Store-provided detail
    """

    def __init__(self, kind: QueryErrorKind, message: str = ""):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)

    @property
    def is_missing_index(self) -> bool:
        return self.kind == QueryErrorKind.MISSING_INDEX

    @property
    def is_transient(self) -> bool:
        return self.kind == QueryErrorKind.TRANSIENT


class Subscription:
    """
    Handle for a live query.

    cancel() is idempotent. After it returns, the owning store delivers no
    further callbacks for this handle.
    """

    def __init__(self, query: Query, on_cancel: Optional[Callable[[], None]] = None):
        self.query = query
        self._on_cancel = on_cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()
        logger.debug("subscription_cancelled", query=self.query.describe())


class DocumentStore(ABC):
    """
    Abstract base class for document store adapters.

    Implementations must guarantee:
    - The first snapshot delivered to a subscriber is the full current result set
    - Every later snapshot is again the full set after any change
    - Errors are reported as QueryError through on_error, never raised from
      a background thread
    - No callbacks are delivered for a cancelled subscription
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def subscribe(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        """
        Open a live query.

        Callbacks may be invoked from any thread. Callers living on an event
        loop must marshal them back onto it.

        Args:
            query: Query to watch
            on_snapshot: Receives the full result set on every change
            on_error: Receives the terminal error for this subscription

        Returns:
            Subscription handle
        """
        pass

    @abstractmethod
    async def _fetch(self, query: Query) -> list[RawDocument]:
        """Run the query once without retries."""
        pass

    async def fetch_once(self, query: Query) -> list[RawDocument]:
        """
        Run the query once, retrying transient failures with the retry policy.

        Args:
            query: Query to run

        Returns:
            Current result set

        Raises:
            QueryError: Non-transient errors immediately, transient errors once
                attempts are exhausted
        """
        policy = self.retry_policy
        for attempt in range(policy.max_attempts):
            try:
                documents = await self._fetch(query)
                logger.debug(
                    "fetch_once_success",
                    query=query.describe(),
                    documents=len(documents),
                    attempt=attempt + 1,
                )
                return documents
            except QueryError as e:
                if not e.is_transient or not policy.should_retry(attempt):
                    logger.warning(
                        "fetch_once_failed",
                        query=query.describe(),
                        kind=e.kind.value,
                        error=e.message,
                        attempt=attempt + 1,
                    )
                    raise
                wait_time = policy.delay(attempt)
                logger.info(
                    "retrying_fetch",
                    query=query.describe(),
                    attempt=attempt + 1,
                    wait_seconds=wait_time,
                )
                await asyncio.sleep(wait_time)
        raise QueryError(QueryErrorKind.TRANSIENT, "retry attempts exhausted")

    def close(self) -> None:
        """Release client resources."""
        pass
