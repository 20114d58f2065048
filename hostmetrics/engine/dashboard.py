"""
Dashboard aggregation.

Composes rollups over the four record families into one MetricsSnapshot for
the selected timeframe, plus the revenue, attendee and RSVP daily buckets and
the data-quality counters for the pass. "Now" is pinned once per pass so every
figure in a snapshot refers to the same window.

Revenue has two disjoint flows:
- completed ticket sales (explicit amount, or unit price x quantity)
- active RSVPs priced through their party's ticket tier
"""

from collections import Counter
from datetime import datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Iterable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from hostmetrics.models import (
    Attendance,
    AttendanceStatus,
    CustomerActivity,
    CustomerSegment,
    CustomerSummary,
    CustomerValue,
    DailyBucket,
    DataQualityReport,
    EventClicks,
    EventPerformance,
    EventRecord,
    EventRevenue,
    EventStatus,
    EventSummary,
    Interaction,
    InteractionSummary,
    InteractionType,
    MetricsSnapshot,
    RecordKind,
    Sale,
    Timeframe,
    TimeWindow,
)

from .rollup import ZERO, RollupEngine, TierPriceJoin, merge_buckets
from .timeframes import resolve_window

logger = structlog.get_logger(__name__)

# Lower spend bounds per segment, checked from the top
SEGMENT_THRESHOLDS = (
    (CustomerValue.PREMIUM, Decimal("500")),
    (CustomerValue.HIGH, Decimal("200")),
    (CustomerValue.MEDIUM, Decimal("50")),
    (CustomerValue.LOW, Decimal("0")),
)

RECENT_LIMIT = 10

AGE_RANGES = (
    (18, "Under 18"),
    (25, "18-24"),
    (35, "25-34"),
    (45, "35-44"),
    (55, "45-54"),
    (65, "55-64"),
)


def segment_for(total_spent: Decimal) -> CustomerValue:
    for segment, lower in SEGMENT_THRESHOLDS:
        if total_spent >= lower:
            return segment
    return CustomerValue.LOW


def age_range(age: int) -> str:
    for upper, label in AGE_RANGES:
        if age < upper:
            return label
    return "65+"


def _percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


class AggregationResult(BaseModel):
    """Everything one aggregation pass produces."""

    model_config = ConfigDict(frozen=True)

    snapshot: MetricsSnapshot
    daily_buckets: list[DailyBucket] = Field(default_factory=list)
    attendee_buckets: list[DailyBucket] = Field(default_factory=list)
    rsvp_buckets: list[DailyBucket] = Field(default_factory=list)
    quality: DataQualityReport = Field(default_factory=DataQualityReport)


class _CustomerAccumulator:
    def __init__(self, customer_id: str, name: str, seen: datetime):
        self.customer_id = customer_id
        self.name = name
        self.total_spent = ZERO
        self.tickets = 0
        self.events: set[str] = set()
        self.transactions = 0
        self.first_seen = seen
        self.last_seen = seen

    def add(self, amount: Decimal, tickets: int, event_id: str, name: str, seen: datetime) -> None:
        self.total_spent += amount
        self.tickets += tickets
        self.transactions += 1
        if event_id:
            self.events.add(event_id)
        if self.name == "Anonymous" and name:
            self.name = name
        self.first_seen = min(self.first_seen, seen)
        self.last_seen = max(self.last_seen, seen)

    @property
    def events_attended(self) -> int:
        # Activity without any party ID still counts as one party
        return max(len(self.events), 1 if self.transactions else 0)

    def to_activity(self) -> CustomerActivity:
        return CustomerActivity(
            customer_id=self.customer_id,
            name=self.name,
            total_spent=self.total_spent,
            tickets=self.tickets,
            events_attended=self.events_attended,
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            segment=segment_for(self.total_spent),
        )


class DashboardAggregator:
    """
    Computes the dashboard snapshot from normalized records.

    Attributes:
        tz: Reporting timezone for windows and day keys
        week_start: First weekday of "this week"
        top_n: Length of the top events / customers / locations lists
    """

    def __init__(self, tz: tzinfo = timezone.utc, week_start: int = 0, top_n: int = 10):
        self.tz = tz
        self.week_start = week_start
        self.top_n = top_n
        self.engine = RollupEngine(tz)

    def aggregate(
        self,
        records: dict[RecordKind, list[Any]],
        timeframe: Timeframe,
        now: datetime,
        dropped: Optional[dict[RecordKind, int]] = None,
    ) -> AggregationResult:
        """
        Run one aggregation pass.

        Args:
            records: Normalized records per source; missing sources count as empty
            timeframe: Selected timeframe
            now: Pinned evaluation instant for the whole pass
            dropped: Documents dropped during normalization, per source

        Returns:
            AggregationResult
        """
        window = resolve_window(timeframe, now, self.tz, self.week_start)

        sales: list[Sale] = records.get(RecordKind.SALE, [])
        attendances: list[Attendance] = records.get(RecordKind.ATTENDANCE, [])
        events: list[EventRecord] = records.get(RecordKind.EVENT, [])
        interactions: list[Interaction] = records.get(RecordKind.INTERACTION, [])

        window_sales = [s for s in sales if window.contains(s.timestamp)]
        completed_sales = [s for s in window_sales if s.counts_as_revenue]
        window_rsvps = [a for a in attendances if window.contains(a.timestamp)]
        active_rsvps = [a for a in window_rsvps if a.status.is_active]

        join = TierPriceJoin(events)
        priced_rsvps = [(a, join.value(a)) for a in active_rsvps]

        ticket_rollup = self.engine.rollup(
            completed_sales, window, value=lambda s: s.amount, entity=lambda s: s.buyer_id
        )
        rsvp_rollup = self.engine.rollup(
            priced_rsvps,
            window,
            value=lambda p: p[1],
            timestamp=lambda p: p[0].timestamp,
            entity=lambda p: p[0].user_id,
        )
        attendee_rollup = self.engine.rollup(
            active_rsvps, window, value=lambda a: a.quantity, entity=lambda a: a.user_id
        )
        rsvp_count_rollup = self.engine.rollup(window_rsvps, window, value=lambda a: 1)

        customer_ids = {s.buyer_id for s in completed_sales if s.buyer_id}
        customer_ids |= {a.user_id for a in active_rsvps if a.user_id}

        confirmed = sum(1 for a in window_rsvps if a.status.is_confirmed)
        pending = sum(1 for a in window_rsvps if a.status == AttendanceStatus.PENDING)
        total_attendees = int(attendee_rollup.total)

        snapshot = MetricsSnapshot(
            timeframe=timeframe,
            window=window,
            total_revenue=ticket_rollup.total + rsvp_rollup.total,
            ticket_revenue=ticket_rollup.total,
            rsvp_revenue=rsvp_rollup.total,
            sales_count=ticket_rollup.count,
            tickets_sold=sum(s.quantity for s in completed_sales),
            rsvp_count=len(window_rsvps),
            confirmed_rsvps=confirmed,
            pending_rsvps=pending,
            checked_in_rsvps=sum(1 for a in window_rsvps if a.checked_in),
            total_attendees=total_attendees,
            unique_customers=len(customer_ids),
            average_order_value=ticket_rollup.average,
            average_group_size=total_attendees / len(active_rsvps) if active_rsvps else 0.0,
            events=self._event_summary(events, completed_sales, priced_rsvps),
            customers=self._customer_summary(
                completed_sales,
                priced_rsvps,
                self._first_seen(sales, attendances, now),
                now,
            ),
            interactions=self._interaction_summary(interactions, window, confirmed, events),
            revenue_breakdown=self._revenue_breakdown(completed_sales, events),
            recent_sales=sorted(window_sales, key=lambda s: (s.timestamp, s.sale_id), reverse=True)[
                :RECENT_LIMIT
            ],
            recent_rsvps=sorted(window_rsvps, key=lambda a: (a.timestamp, a.rsvp_id), reverse=True)[
                :RECENT_LIMIT
            ],
        )

        # Until parties have been delivered every tier lookup misses
        events_known = RecordKind.EVENT in records
        join_misses = join.misses if events_known else 0
        quality = DataQualityReport(
            dropped={kind: count for kind, count in (dropped or {}).items() if count},
            join_misses=join_misses,
            records={kind: len(items) for kind, items in records.items()},
        )
        if join_misses:
            logger.info("tier_join_misses", misses=join_misses, tiers_known=len(join))

        return AggregationResult(
            snapshot=snapshot,
            daily_buckets=merge_buckets(ticket_rollup.buckets, rsvp_rollup.buckets),
            attendee_buckets=attendee_rollup.buckets,
            rsvp_buckets=rsvp_count_rollup.buckets,
            quality=quality,
        )

    def window_for(self, timeframe: Timeframe, now: datetime) -> TimeWindow:
        return resolve_window(timeframe, now, self.tz, self.week_start)

    # =========================================================================
    # Summaries
    # =========================================================================

    def _event_summary(
        self,
        events: list[EventRecord],
        sales: list[Sale],
        rsvps: list[tuple[Attendance, Decimal]],
    ) -> EventSummary:
        """Party counts reflect current state; per-party revenue is windowed."""
        if not events:
            return EventSummary()

        revenue: dict[str, Decimal] = {}
        for sale in sales:
            revenue[sale.event_id] = revenue.get(sale.event_id, ZERO) + sale.amount
        for rsvp, value in rsvps:
            revenue[rsvp.event_id] = revenue.get(rsvp.event_id, ZERO) + value

        statuses = Counter(event.status for event in events)
        ranked = sorted(events, key=lambda e: (-e.occupancy_rate, e.title, e.event_id))

        return EventSummary(
            total_events=len(events),
            live_events=statuses[EventStatus.LIVE],
            upcoming_events=statuses[EventStatus.UPCOMING],
            completed_events=statuses[EventStatus.ENDED],
            cancelled_events=statuses[EventStatus.CANCELLED],
            sold_out_events=sum(1 for e in events if e.is_sold_out),
            average_occupancy=sum(e.occupancy_rate for e in events) / len(events),
            host_start_date=min(e.start_date for e in events),
            top_events=[
                EventPerformance(
                    event_id=e.event_id,
                    title=e.title,
                    status=e.status.value,
                    current_attendees=e.current_attendees,
                    capacity=e.capacity,
                    occupancy_rate=e.occupancy_rate,
                    revenue=revenue.get(e.event_id, ZERO),
                )
                for e in ranked[: self.top_n]
            ],
        )

    def _first_seen(
        self,
        sales: Iterable[Sale],
        attendances: Iterable[Attendance],
        now: datetime,
    ) -> dict[str, datetime]:
        """Earliest revenue-bearing activity per customer over the whole history."""
        first: dict[str, datetime] = {}

        def see(customer_id: Optional[str], instant: datetime) -> None:
            if customer_id and instant <= now:
                seen = first.get(customer_id)
                if seen is None or instant < seen:
                    first[customer_id] = instant

        for sale in sales:
            if sale.counts_as_revenue:
                see(sale.buyer_id, sale.timestamp)
        for rsvp in attendances:
            if rsvp.status.is_active:
                see(rsvp.user_id, rsvp.timestamp)
        return first

    def _new_customer_counts(self, first_seen: dict[str, datetime], now: datetime) -> dict[str, Any]:
        since = {
            timeframe: resolve_window(timeframe, now, self.tz, self.week_start).start
            for timeframe in (Timeframe.TODAY, Timeframe.THIS_WEEK, Timeframe.THIS_MONTH)
        }
        counts = {
            field: sum(1 for seen in first_seen.values() if seen >= since[timeframe])
            for field, timeframe in (
                ("new_today", Timeframe.TODAY),
                ("new_this_week", Timeframe.THIS_WEEK),
                ("new_this_month", Timeframe.THIS_MONTH),
            )
        }
        counts["new_customer_growth_rate"] = _percent(counts["new_this_month"], len(first_seen))
        return counts

    def _customer_summary(
        self,
        sales: list[Sale],
        rsvps: list[tuple[Attendance, Decimal]],
        first_seen: dict[str, datetime],
        now: datetime,
    ) -> CustomerSummary:
        """
        Window customers plus acquisition counts.

        The new-customer counts are calendar based (today, this week, this
        month) and independent of the selected timeframe: a customer is new
        in a period when their first activity ever falls inside it.
        """
        acquisition = self._new_customer_counts(first_seen, now)
        customers: dict[str, _CustomerAccumulator] = {}

        def track(customer_id: Optional[str], name: str, amount, tickets, event_id, seen) -> None:
            if not customer_id:
                return
            acc = customers.get(customer_id)
            if acc is None:
                acc = customers[customer_id] = _CustomerAccumulator(customer_id, name, seen)
            acc.add(amount, tickets, event_id, name, seen)

        for sale in sales:
            track(sale.buyer_id, sale.buyer_name, sale.amount, sale.quantity, sale.event_id, sale.timestamp)
        for rsvp, value in rsvps:
            track(
                rsvp.user_id,
                rsvp.guest_name,
                value,
                rsvp.quantity,
                rsvp.event_id,
                rsvp.timestamp,
            )

        if not customers:
            return CustomerSummary(**acquisition)

        activities = [acc.to_activity() for acc in customers.values()]
        total_spent = sum((a.total_spent for a in activities), ZERO)
        repeat = sum(1 for a in activities if a.events_attended > 1)

        segments = []
        for segment in CustomerValue:
            members = [a for a in activities if a.segment == segment]
            spent = sum((a.total_spent for a in members), ZERO)
            segments.append(
                CustomerSegment(
                    segment=segment,
                    customers=len(members),
                    total_spent=spent,
                    average_spent=spent / len(members) if members else ZERO,
                    revenue_share=_percent(float(spent), float(total_spent)),
                )
            )

        ranked = sorted(activities, key=lambda a: (-a.total_spent, a.customer_id))
        return CustomerSummary(
            unique_customers=len(activities),
            repeat_customers=repeat,
            retention_rate=_percent(repeat, len(activities)),
            average_customer_value=total_spent / len(activities),
            segments=segments,
            top_customers=ranked[: self.top_n],
            **acquisition,
        )

    def _revenue_breakdown(self, sales: list[Sale], events: list[EventRecord]) -> list[EventRevenue]:
        """Completed ticket sales grouped by party, highest revenue first."""
        titles = {event.event_id: event.title for event in events}
        groups: dict[str, list[Sale]] = {}
        for sale in sales:
            groups.setdefault(sale.event_id, []).append(sale)

        rows = []
        for event_id, group in groups.items():
            revenue = sum((s.amount for s in group), ZERO)
            tickets = sum(s.quantity for s in group)
            rows.append(
                EventRevenue(
                    event_id=event_id,
                    event_name=titles.get(event_id) or group[0].event_name,
                    revenue=revenue,
                    tickets_sold=tickets,
                    average_ticket_price=revenue / tickets if tickets else ZERO,
                )
            )
        return sorted(rows, key=lambda r: (-r.revenue, r.event_id))

    def _clicks_by_event(
        self,
        interactions: list[Interaction],
        events: list[EventRecord],
    ) -> list[EventClicks]:
        titles = {event.event_id: event.title for event in events}
        per_event: dict[str, list[Interaction]] = {}
        for interaction in interactions:
            if interaction.interaction_type == InteractionType.CLICK and interaction.event_id:
                per_event.setdefault(interaction.event_id, []).append(interaction)

        rows = []
        for event_id, clicks in per_event.items():
            ages = [c.user_age for c in clicks if c.user_age is not None]
            locations = Counter(c.user_location for c in clicks if c.user_location)
            rows.append(
                EventClicks(
                    event_id=event_id,
                    title=titles.get(event_id, "Unknown Event"),
                    clicks=len(clicks),
                    unique_users=len({c.user_id for c in clicks if c.user_id}),
                    average_user_age=sum(ages) / len(ages) if ages else None,
                    top_location=locations.most_common(1)[0][0] if locations else None,
                )
            )
        return sorted(rows, key=lambda r: (-r.clicks, r.event_id))

    def _interaction_summary(
        self,
        interactions: Iterable[Interaction],
        window: TimeWindow,
        confirmed_rsvps: int,
        events: list[EventRecord],
    ) -> InteractionSummary:
        in_window = [i for i in interactions if window.contains(i.timestamp)]
        if not in_window:
            return InteractionSummary()

        types = Counter(i.interaction_type for i in in_window)
        ages = Counter(age_range(i.user_age) for i in in_window if i.user_age is not None)
        genders = Counter(i.user_gender for i in in_window if i.user_gender)
        locations = Counter(i.user_location for i in in_window if i.user_location)
        views = types[InteractionType.VIEW]

        return InteractionSummary(
            views=views,
            clicks=types[InteractionType.CLICK],
            shares=types[InteractionType.SHARE],
            unique_users=len({i.user_id for i in in_window if i.user_id}),
            conversion_rate=_percent(confirmed_rsvps, views),
            age_ranges=dict(ages),
            gender_distribution=dict(genders),
            top_locations=dict(locations.most_common(self.top_n)),
            by_event=self._clicks_by_event(in_window, events),
        )
