"""
Aggregated metric models for the host dashboard.

MetricsSnapshot and DashboardState are owned by the published metrics store
and are replaced wholesale on every recomputation, never partially mutated.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import CustomerValue, QueryErrorKind, RecordKind, SourceMode, Timeframe
from .records import Attendance, Sale

ZERO = Decimal("0")


class TimeWindow(BaseModel):
    """Concrete [start, end] instants for a resolved timeframe (both inclusive)."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


class DailyBucket(BaseModel):
    """
    Per-day aggregate for charting.

    Attributes:
        day: Calendar day in the reporting timezone
        value: Sum of the rolled-up value for that day
        count: Number of records that fell on that day
    """

    model_config = ConfigDict(frozen=True)

    day: date
    value: Decimal = ZERO
    count: int = 0

    @property
    def key(self) -> str:
        return self.day.isoformat()


class RollupResult(BaseModel):
    """
    Output of one rollup over one record family.

    Attributes:
        total: Sum of values inside the window
        count: Records inside the window
        distinct_entities: Distinct entity identifiers inside the window
        average: total / count, zero when count is zero
        buckets: Sparse per-day buckets, ascending by day
    """

    model_config = ConfigDict(frozen=True)

    total: Decimal = ZERO
    count: int = 0
    distinct_entities: int = 0
    average: Decimal = ZERO
    buckets: list[DailyBucket] = Field(default_factory=list)


class EventPerformance(BaseModel):
    """Occupancy line for one party."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    title: str
    status: str
    current_attendees: int
    capacity: int
    occupancy_rate: float
    revenue: Decimal = ZERO


class EventRevenue(BaseModel):
    """Ticket revenue of one party inside the window."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_name: str
    revenue: Decimal = ZERO
    tickets_sold: int = 0
    average_ticket_price: Decimal = ZERO


class EventSummary(BaseModel):
    """Current state of the host's parties (not windowed)."""

    model_config = ConfigDict(frozen=True)

    total_events: int = 0
    live_events: int = 0
    upcoming_events: int = 0
    completed_events: int = 0
    cancelled_events: int = 0
    sold_out_events: int = 0
    average_occupancy: float = 0.0
    host_start_date: Optional[datetime] = None
    top_events: list[EventPerformance] = Field(default_factory=list)


class CustomerSegment(BaseModel):
    """Spend segment with its share of window revenue."""

    model_config = ConfigDict(frozen=True)

    segment: CustomerValue
    customers: int = 0
    total_spent: Decimal = ZERO
    average_spent: Decimal = ZERO
    revenue_share: float = 0.0


class CustomerActivity(BaseModel):
    """One customer's activity inside the window."""

    model_config = ConfigDict(frozen=True)

    customer_id: str
    name: str
    total_spent: Decimal = ZERO
    tickets: int = 0
    events_attended: int = 0
    first_seen: datetime
    last_seen: datetime
    segment: CustomerValue = CustomerValue.LOW


class CustomerSummary(BaseModel):
    """Buyer and attendee analytics for the window."""

    model_config = ConfigDict(frozen=True)

    unique_customers: int = 0
    repeat_customers: int = 0
    retention_rate: float = 0.0
    average_customer_value: Decimal = ZERO
    new_today: int = 0
    new_this_week: int = 0
    new_this_month: int = 0
    new_customer_growth_rate: float = 0.0
    segments: list[CustomerSegment] = Field(default_factory=list)
    top_customers: list[CustomerActivity] = Field(default_factory=list)


class EventClicks(BaseModel):
    """Click engagement for one party."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    title: str
    clicks: int = 0
    unique_users: int = 0
    average_user_age: Optional[float] = None
    top_location: Optional[str] = None


class InteractionSummary(BaseModel):
    """Engagement and demographic analytics for the window."""

    model_config = ConfigDict(frozen=True)

    views: int = 0
    clicks: int = 0
    shares: int = 0
    unique_users: int = 0
    conversion_rate: float = 0.0
    age_ranges: dict[str, int] = Field(default_factory=dict)
    gender_distribution: dict[str, int] = Field(default_factory=dict)
    top_locations: dict[str, int] = Field(default_factory=dict)
    by_event: list[EventClicks] = Field(default_factory=list)


class MetricsSnapshot(BaseModel):
    """
    Rolled-up totals for the active timeframe.

    Attributes:
        timeframe: Timeframe the totals were computed for
        window: Resolved window at computation time
        total_revenue: Completed ticket sales plus tier-priced active RSVPs
        ticket_revenue: Revenue from completed ticket sales
        rsvp_revenue: Revenue from tier-priced active RSVPs
        sales_count: Completed sales
        tickets_sold: Tickets across completed sales
        rsvp_count: All RSVPs in the window
        confirmed_rsvps: Confirmed or checked-in RSVPs
        pending_rsvps: Pending RSVPs
        checked_in_rsvps: RSVPs checked in at the door
        total_attendees: Seats held by active RSVPs
        unique_customers: Distinct buyers and attendees
        average_order_value: ticket_revenue / sales_count (zero-guarded)
        average_group_size: total_attendees / active RSVPs (zero-guarded)
        revenue_breakdown: Ticket revenue per party, highest first
        recent_sales: Latest sales in the window, newest first
        recent_rsvps: Latest RSVPs in the window, newest first
    """

    model_config = ConfigDict(frozen=True)

    timeframe: Timeframe
    window: TimeWindow
    total_revenue: Decimal = ZERO
    ticket_revenue: Decimal = ZERO
    rsvp_revenue: Decimal = ZERO
    sales_count: int = 0
    tickets_sold: int = 0
    rsvp_count: int = 0
    confirmed_rsvps: int = 0
    pending_rsvps: int = 0
    checked_in_rsvps: int = 0
    total_attendees: int = 0
    unique_customers: int = 0
    average_order_value: Decimal = ZERO
    average_group_size: float = 0.0
    events: EventSummary = Field(default_factory=EventSummary)
    customers: CustomerSummary = Field(default_factory=CustomerSummary)
    interactions: InteractionSummary = Field(default_factory=InteractionSummary)
    revenue_breakdown: list[EventRevenue] = Field(default_factory=list)
    recent_sales: list[Sale] = Field(default_factory=list)
    recent_rsvps: list[Attendance] = Field(default_factory=list)

    @classmethod
    def empty(cls, timeframe: Timeframe, window: TimeWindow) -> "MetricsSnapshot":
        """All-zero snapshot for a window with no data."""
        return cls(timeframe=timeframe, window=window)


class DataQualityReport(BaseModel):
    """
    Routine data-quality noise absorbed during one aggregation pass.

    Attributes:
        dropped: Documents dropped for a missing identity field, per record kind
        join_misses: Attendances whose tier had no price in the lookup
        records: Normalized records per kind that entered the pass
    """

    model_config = ConfigDict(frozen=True)

    dropped: dict[RecordKind, int] = Field(default_factory=dict)
    join_misses: int = 0
    records: dict[RecordKind, int] = Field(default_factory=dict)

    @property
    def total_dropped(self) -> int:
        return sum(self.dropped.values())


class SourceError(BaseModel):
    """A fatal error on one data source, shown as a non-blocking indicator."""

    model_config = ConfigDict(frozen=True)

    source: RecordKind
    kind: QueryErrorKind
    message: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DashboardStatus(BaseModel):
    """
    Freshness of the published state.

    Attributes:
        stale: The snapshot is the last good one, not a live result
        offline: The snapshot was restored from the local cache
        errors: Fatal source errors since the context started
        modes: How each source is currently served
        ready_sources: Sources that have delivered at least once
    """

    model_config = ConfigDict(frozen=True)

    stale: bool = False
    offline: bool = False
    errors: list[SourceError] = Field(default_factory=list)
    modes: dict[RecordKind, SourceMode] = Field(default_factory=dict)
    ready_sources: list[RecordKind] = Field(default_factory=list)


class DashboardState(BaseModel):
    """
    Everything the published metrics store holds for one dashboard context.

    Attributes:
        host_id: Host whose parties are being tracked
        timeframe: Selected timeframe
        generation: Context generation this state was computed for
        snapshot: Rolled-up totals
        daily_buckets: Revenue per day
        attendee_buckets: Attendees per day
        rsvp_buckets: RSVPs received per day, any status
        quality: Data-quality counters for the pass
        status: Freshness and error indicators
        computed_at: When the pass ran ("now" pinned for the pass)
    """

    model_config = ConfigDict(frozen=True)

    host_id: Optional[str] = None
    timeframe: Timeframe
    generation: int = 0
    snapshot: MetricsSnapshot
    daily_buckets: list[DailyBucket] = Field(default_factory=list)
    attendee_buckets: list[DailyBucket] = Field(default_factory=list)
    rsvp_buckets: list[DailyBucket] = Field(default_factory=list)
    quality: DataQualityReport = Field(default_factory=DataQualityReport)
    status: DashboardStatus = Field(default_factory=DashboardStatus)
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def initial(cls, timeframe: Timeframe, window: TimeWindow) -> "DashboardState":
        return cls(timeframe=timeframe, snapshot=MetricsSnapshot.empty(timeframe, window))
