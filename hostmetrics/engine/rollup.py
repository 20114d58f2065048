"""
Time-window rollup engine.

A rollup filters records into a resolved window (inclusive at both ends),
sums a value per record, counts records and distinct entities, and buckets
by calendar day in the reporting timezone. The sum of bucket values always
equals the total.
"""

from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Callable, Hashable, Iterable, Optional

import structlog

from hostmetrics.models import (
    Attendance,
    DailyBucket,
    EventRecord,
    JoinMissReason,
    RollupResult,
    TimeWindow,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


class JoinMiss(Exception):
    """A cross-entity lookup key that is not present in the lookup table."""

    def __init__(self, key: Any, reason: JoinMissReason = JoinMissReason.MISSING_LOOKUP_KEY):
        self.key = key
        self.reason = reason
        super().__init__(f"{reason.value}: {key!r}")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


class TierPriceJoin:
    """
    Prices attendances through the ticket tiers of their party.

    Tier IDs are looked up scoped to the attendance's party first and then
    globally, since older RSVP documents do not always carry the party ID.
    RSVPs without a tier are free. A tier that cannot be found contributes
    zero and is counted as a join miss.

    Attributes:
        misses: Join misses seen since construction
    """

    def __init__(self, events: Iterable[EventRecord]):
        self._scoped: dict[tuple[str, str], Decimal] = {}
        self._global: dict[str, Decimal] = {}
        for event in events:
            for tier in event.tiers:
                self._scoped[(event.event_id, tier.tier_id)] = tier.price
                self._global.setdefault(tier.tier_id, tier.price)
        self.misses = 0

    def __len__(self) -> int:
        return len(self._global)

    def price(self, attendance: Attendance) -> Decimal:
        """
        Unit price of the attendance's tier.

        Raises:
            JoinMiss: If the tier is not offered by any known party
        """
        if attendance.tier_id is None:
            return ZERO
        scoped = self._scoped.get((attendance.event_id, attendance.tier_id))
        if scoped is not None:
            return scoped
        price = self._global.get(attendance.tier_id)
        if price is None:
            raise JoinMiss(attendance.tier_id)
        return price

    def value(self, attendance: Attendance) -> Decimal:
        """Tier price times seats held, zero (and counted) on a join miss."""
        try:
            return self.price(attendance) * attendance.quantity
        except JoinMiss as miss:
            self.misses += 1
            logger.debug(
                "tier_join_miss",
                rsvp_id=attendance.rsvp_id,
                tier_id=miss.key,
                reason=miss.reason.value,
            )
            return ZERO


class RollupEngine:
    """
    Windowed sum / count / distinct / daily-bucket computation.

    Attributes:
        tz: Reporting timezone used for day keys
    """

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def day_of(self, instant: datetime) -> date:
        return instant.astimezone(self.tz).date()

    def rollup(
        self,
        records: Iterable[Any],
        window: TimeWindow,
        value: Callable[[Any], Any],
        timestamp: Callable[[Any], datetime] = lambda record: record.timestamp,
        entity: Optional[Callable[[Any], Optional[Hashable]]] = None,
    ) -> RollupResult:
        """
        Roll up records falling inside the window.

        Args:
            records: Normalized records of one family
            window: Resolved window, inclusive at both ends
            value: Numeric value contributed by a record
            timestamp: Instant used for windowing and bucketing
            entity: Entity key for the distinct count (None keys are ignored)

        Returns:
            RollupResult with sparse ascending buckets
        """
        total = ZERO
        count = 0
        entities: set[Hashable] = set()
        per_day: dict[date, list] = {}

        for record in records:
            instant = timestamp(record)
            if not window.contains(instant):
                continue

            amount = _to_decimal(value(record))
            total += amount
            count += 1

            if entity is not None:
                key = entity(record)
                if key is not None:
                    entities.add(key)

            bucket = per_day.setdefault(self.day_of(instant), [ZERO, 0])
            bucket[0] += amount
            bucket[1] += 1

        return RollupResult(
            total=total,
            count=count,
            distinct_entities=len(entities),
            average=total / count if count else ZERO,
            buckets=[
                DailyBucket(day=day, value=per_day[day][0], count=per_day[day][1])
                for day in sorted(per_day)
            ],
        )


def merge_buckets(*bucket_lists: Iterable[DailyBucket]) -> list[DailyBucket]:
    """Sum several sparse bucket lists day by day, keeping ascending order."""
    per_day: dict[date, list] = {}
    for buckets in bucket_lists:
        for bucket in buckets:
            entry = per_day.setdefault(bucket.day, [ZERO, 0])
            entry[0] += bucket.value
            entry[1] += bucket.count
    return [
        DailyBucket(day=day, value=per_day[day][0], count=per_day[day][1])
        for day in sorted(per_day)
    ]
