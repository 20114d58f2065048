"""
Pydantic v2 data models for the host analytics engine.

Model Organization:
    - enums: Enumerations shared across the engine
    - documents: Store boundary (RawDocument, Query, QueryFilter)
    - records: Normalized records (Sale, Attendance, EventRecord, Interaction)
    - metrics: Rollups, snapshots and the published dashboard state

Usage:
    >>> from hostmetrics.models import Query, Timeframe, eq
    >>> query = Query(collection="parties", filters=[eq("hostId", "host_1")])
"""

from .documents import MAX_FILTERS, MAX_IN_VALUES, Query, QueryFilter, RawDocument, eq, gte, in_, lte
from .enums import (
    AttendanceStatus,
    CustomerValue,
    DropReason,
    EventStatus,
    FilterOp,
    InteractionType,
    InvalidTimeframeError,
    JoinMissReason,
    QueryErrorKind,
    RecordKind,
    SaleStatus,
    SourceMode,
    Timeframe,
)
from .metrics import (
    CustomerActivity,
    CustomerSegment,
    CustomerSummary,
    DailyBucket,
    DashboardState,
    DashboardStatus,
    DataQualityReport,
    EventClicks,
    EventPerformance,
    EventRevenue,
    EventSummary,
    InteractionSummary,
    MetricsSnapshot,
    RollupResult,
    SourceError,
    TimeWindow,
)
from .records import Attendance, EventRecord, Interaction, NormalizedRecord, Sale, TicketTier

__all__ = [
    # Enums
    "AttendanceStatus",
    "CustomerValue",
    "DropReason",
    "EventStatus",
    "FilterOp",
    "InteractionType",
    "InvalidTimeframeError",
    "JoinMissReason",
    "QueryErrorKind",
    "RecordKind",
    "SaleStatus",
    "SourceMode",
    "Timeframe",
    # Documents
    "MAX_FILTERS",
    "MAX_IN_VALUES",
    "Query",
    "QueryFilter",
    "RawDocument",
    "eq",
    "gte",
    "in_",
    "lte",
    # Records
    "Attendance",
    "EventRecord",
    "Interaction",
    "NormalizedRecord",
    "Sale",
    "TicketTier",
    # Metrics
    "CustomerActivity",
    "CustomerSegment",
    "CustomerSummary",
    "DailyBucket",
    "DashboardState",
    "DashboardStatus",
    "DataQualityReport",
    "EventClicks",
    "EventPerformance",
    "EventRevenue",
    "EventSummary",
    "InteractionSummary",
    "MetricsSnapshot",
    "RollupResult",
    "SourceError",
    "TimeWindow",
]
