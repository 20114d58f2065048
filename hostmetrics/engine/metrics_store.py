"""
Published metrics store.

Holds the current DashboardState for consumers. The state is immutable and
replaced wholesale, so readers never see a half-updated snapshot: a read is a
single reference load, and a write swaps the reference under a lock and then
notifies observers.
"""

import threading
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from hostmetrics.models import (
    DailyBucket,
    DashboardState,
    MetricsSnapshot,
    SourceError,
    Timeframe,
    TimeWindow,
)

logger = structlog.get_logger(__name__)

StateObserver = Callable[[DashboardState], None]

BUCKET_METRICS = ("revenue", "attendees", "rsvps")


class PublishedMetricsStore:
    """
    Single source of truth for the published dashboard state.

    Attributes:
        version: Number of states published since construction
    """

    def __init__(self, initial: Optional[DashboardState] = None):
        if initial is None:
            now = datetime.now(timezone.utc)
            initial = DashboardState.initial(Timeframe.TODAY, TimeWindow(start=now, end=now))
        self._state = initial
        self._lock = threading.Lock()
        self._observers: list[StateObserver] = []
        self.version = 0

    def get_state(self) -> DashboardState:
        return self._state

    def get_snapshot(self) -> MetricsSnapshot:
        return self._state.snapshot

    def get_daily_buckets(self, metric: str = "revenue") -> list[DailyBucket]:
        """
        Daily buckets for charting.

        Args:
            metric: "revenue", "attendees" or "rsvps"

        Raises:
            ValueError: For any other metric name
        """
        state = self._state
        if metric == "revenue":
            return state.daily_buckets
        if metric == "attendees":
            return state.attendee_buckets
        if metric == "rsvps":
            return state.rsvp_buckets
        raise ValueError(f"Unknown bucket metric: {metric!r}. Allowed: {', '.join(BUCKET_METRICS)}")

    def on_update(self, callback: StateObserver) -> Callable[[], None]:
        """
        Register an observer called with every newly published state.

        Returns:
            Function that unregisters the observer
        """
        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def publish(self, state: DashboardState) -> bool:
        """
        Replace the published state.

        States from an older generation than the current one are rejected.

        Returns:
            True when the state was published
        """
        with self._lock:
            current = self._state
            if state.generation < current.generation:
                logger.debug(
                    "stale_state_rejected",
                    generation=state.generation,
                    current_generation=current.generation,
                )
                return False
            self._state = state
            self.version += 1
            observers = list(self._observers)

        logger.debug(
            "metrics_published",
            host_id=state.host_id,
            timeframe=state.timeframe.value,
            generation=state.generation,
            total_revenue=str(state.snapshot.total_revenue),
            stale=state.status.stale,
        )
        self._notify(observers, state)
        return True

    def mark_error(self, error: SourceError) -> DashboardState:
        """
        Flag the current state stale and record a source error.

        The snapshot itself is left untouched.
        """
        with self._lock:
            current = self._state
            status = current.status.model_copy(
                update={"stale": True, "errors": [*current.status.errors, error]}
            )
            state = current.model_copy(update={"status": status})
            self._state = state
            self.version += 1
            observers = list(self._observers)

        logger.warning(
            "metrics_marked_stale",
            host_id=state.host_id,
            source=error.source.value,
            kind=error.kind.value,
        )
        self._notify(observers, state)
        return state

    @staticmethod
    def _notify(observers: list[StateObserver], state: DashboardState) -> None:
        for observer in observers:
            try:
                observer(state)
            except Exception as e:
                logger.error("metrics_observer_failed", error=str(e), exc_info=True)
