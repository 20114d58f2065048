"""
Enumeration types for the host analytics engine.

All enums inherit from str to keep JSON serialization and query-string
parsing straightforward.
"""

from enum import Enum


class InvalidTimeframeError(ValueError):
    """Raised when a caller supplies a timeframe outside the enumerated set."""


class Timeframe(str, Enum):
    """
    Named dashboard windows, resolved against "now" at evaluation time.

    The display labels match the ones shown in the host dashboard selector.
    """

    TODAY = "today"
    THIS_WEEK = "this_week"
    THIS_MONTH = "this_month"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"

    @property
    def label(self) -> str:
        return _TIMEFRAME_LABELS[self]

    @classmethod
    def parse(cls, value: "str | Timeframe") -> "Timeframe":
        """
        Parse a timeframe from its value or display label.

        Args:
            value: "last_30_days", "Last 30 Days", "last-30-days", ...

        Returns:
            Matching Timeframe

        Raises:
            InvalidTimeframeError: If the value is not one of the five timeframes
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_").replace(" ", "_")
            for member in cls:
                if key == member.value or key == member.label.lower().replace(" ", "_"):
                    return member
            if key == "last_3_months":
                return cls.LAST_90_DAYS
        allowed = ", ".join(m.value for m in cls)
        raise InvalidTimeframeError(f"Unknown timeframe: {value!r}. Allowed: {allowed}")


_TIMEFRAME_LABELS = {
    Timeframe.TODAY: "Today",
    Timeframe.THIS_WEEK: "This Week",
    Timeframe.THIS_MONTH: "This Month",
    Timeframe.LAST_30_DAYS: "Last 30 Days",
    Timeframe.LAST_90_DAYS: "Last 90 Days",
}


class FilterOp(str, Enum):
    """Predicate operators supported by the document store boundary."""

    EQ = "=="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    IN = "in"


class QueryErrorKind(str, Enum):
    """
    Classification of document store failures.

    MISSING_INDEX is recovered locally by the fallback orchestrator,
    PERMISSION_DENIED is fatal for the subscription, TRANSIENT is retried.
    """

    MISSING_INDEX = "missing_index"
    PERMISSION_DENIED = "permission_denied"
    TRANSIENT = "transient"


class DropReason(str, Enum):
    """Why a raw document produced no normalized record."""

    MISSING_IDENTITY = "missing_identity"


class JoinMissReason(str, Enum):
    """Why a cross-entity join contributed zero."""

    MISSING_LOOKUP_KEY = "missing_lookup_key"


class RecordKind(str, Enum):
    """Normalized record families, one per dashboard data source."""

    SALE = "sale"
    ATTENDANCE = "attendance"
    EVENT = "event"
    INTERACTION = "interaction"


class SaleStatus(str, Enum):
    """Ticket sale lifecycle status."""

    COMPLETED = "completed"
    PENDING = "pending"
    REFUNDED = "refunded"
    FAILED = "failed"


class AttendanceStatus(str, Enum):
    """RSVP lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @property
    def is_active(self) -> bool:
        """Active RSVPs hold seats and count toward attendees and revenue."""
        return self not in (AttendanceStatus.CANCELLED, AttendanceStatus.NO_SHOW)

    @property
    def is_confirmed(self) -> bool:
        return self in (AttendanceStatus.CONFIRMED, AttendanceStatus.CHECKED_IN)


class EventStatus(str, Enum):
    """Party lifecycle status."""

    UPCOMING = "upcoming"
    LIVE = "live"
    ENDED = "ended"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class InteractionType(str, Enum):
    """Event interaction types recorded from party cards."""

    VIEW = "view"
    CLICK = "click"
    SHARE = "share"
    OTHER = "other"


class CustomerValue(str, Enum):
    """
    Spend-based customer segments.

    Thresholds are lower bounds on spend within the active timeframe.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    PREMIUM = "premium"


class SourceMode(str, Enum):
    """How a data source is currently being served."""

    DIRECT = "direct"
    FALLBACK = "fallback"
