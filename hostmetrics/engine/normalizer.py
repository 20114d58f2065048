"""
Metric extraction and normalization.

Turns raw store documents into typed, immutable records. Every function here
is pure: the output depends only on the document (including its fetched_at
stamp), so re-normalizing the same document always yields an equal record.

Missing or malformed fields fall back to documented defaults. The single
exception is the identity timestamp of each record type. A record without
one cannot be placed in any window, so the document is dropped and counted.
"""

import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

import pandas as pd
import structlog
from pydantic import BaseModel, ConfigDict, Field

from hostmetrics.models import (
    Attendance,
    AttendanceStatus,
    DropReason,
    EventRecord,
    EventStatus,
    Interaction,
    InteractionType,
    NormalizedRecord,
    RawDocument,
    RecordKind,
    Sale,
    SaleStatus,
    TicketTier,
)

logger = structlog.get_logger(__name__)


class NormalizationDrop(Exception):
    """A document that cannot produce a record (identity field missing)."""

    def __init__(self, reason: DropReason, field: str, document_id: str = ""):
        self.reason = reason
        self.field = field
        self.document_id = document_id
        super().__init__(f"{reason.value}: {field} ({document_id})")


class NormalizationResult(BaseModel):
    """Records produced from one batch plus the number of documents dropped."""

    model_config = ConfigDict(frozen=True)

    kind: RecordKind
    records: list[Any] = Field(default_factory=list)
    dropped: int = 0


# =============================================================================
# Coercion helpers
# =============================================================================


def _first(data: dict[str, Any], *keys: str) -> Any:
    """Value of the first key present with a non-null value."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _safe_str(value: Any, default: str = "") -> str:
    """
    Safely convert value to string, handling None and NaN.

    Blank strings count as missing.
    """
    if _is_missing(value) or isinstance(value, (dict, list)):
        return default
    text = str(value).strip()
    return text or default


def _safe_optional_str(value: Any) -> Optional[str]:
    text = _safe_str(value)
    return text or None


def _safe_decimal(value: Any, default: Decimal = Decimal("0")) -> Decimal:
    """
    Safely convert value to Decimal, handling None, NaN, infinities and junk.

    Floats go through str() so 19.99 stays 19.99. Magnitudes of a trillion
    or more are treated as junk.
    """
    if _is_missing(value) or isinstance(value, bool):
        return default
    try:
        if isinstance(value, float):
            if not math.isfinite(value):
                return default
            result = Decimal(str(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return default
    if not result.is_finite() or result.adjusted() >= 12:
        return default
    return result


def _safe_int(value: Any, default: int = 0) -> int:
    """Safely convert value to a non-negative int."""
    if _is_missing(value) or isinstance(value, bool):
        return default
    try:
        result = int(float(value))
    except (ValueError, TypeError, OverflowError):
        return default
    return result if result >= 0 else default


def _safe_datetime(value: Any, default: Optional[datetime] = None) -> Optional[datetime]:
    """
    Safely convert value to a UTC-aware datetime.

    Accepts datetimes (including the store's nanosecond timestamps), ISO
    strings, epoch seconds or milliseconds, and {"seconds", "nanoseconds"}
    maps as produced by JSON exports of store timestamps.
    """
    if _is_missing(value) or isinstance(value, (bool, list, tuple, set)):
        return default

    if isinstance(value, dict):
        if "seconds" not in value and "_seconds" not in value:
            return default
        seconds = _first(value, "seconds", "_seconds")
        nanos = _first(value, "nanoseconds", "_nanoseconds") or 0
        try:
            value = float(seconds) + float(nanos) / 1e9
        except (ValueError, TypeError):
            return default

    try:
        if isinstance(value, (int, float)):
            unit = "ms" if abs(value) >= 1e11 else "s"
            result = pd.to_datetime(value, unit=unit, utc=True, errors="coerce")
        else:
            result = pd.to_datetime(value, utc=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return default

    if _is_missing(result):
        return default
    if hasattr(result, "to_pydatetime"):
        result = result.to_pydatetime()
    if result.tzinfo is None:
        result = result.replace(tzinfo=timezone.utc)
    return result.astimezone(timezone.utc)


def _identity_timestamp(doc: RawDocument, *keys: str) -> datetime:
    value = _safe_datetime(_first(doc.data, *keys))
    if value is None:
        raise NormalizationDrop(DropReason.MISSING_IDENTITY, "/".join(keys), doc.id)
    return value


def _event_id(doc: RawDocument) -> str:
    """Party ID from the document, or from its parent path for sub-collections."""
    return _safe_str(_first(doc.data, "eventId", "partyId"), doc.parent_id or "")


# =============================================================================
# Status mapping
# =============================================================================

_SALE_STATUS = {
    "completed": SaleStatus.COMPLETED,
    "complete": SaleStatus.COMPLETED,
    "paid": SaleStatus.COMPLETED,
    "succeeded": SaleStatus.COMPLETED,
    "pending": SaleStatus.PENDING,
    "processing": SaleStatus.PENDING,
    "refunded": SaleStatus.REFUNDED,
    "failed": SaleStatus.FAILED,
    "cancelled": SaleStatus.FAILED,
    "canceled": SaleStatus.FAILED,
}

_ATTENDANCE_STATUS = {
    "pending": AttendanceStatus.PENDING,
    "confirmed": AttendanceStatus.CONFIRMED,
    "going": AttendanceStatus.CONFIRMED,
    "checked_in": AttendanceStatus.CHECKED_IN,
    "checkedin": AttendanceStatus.CHECKED_IN,
    "attended": AttendanceStatus.CHECKED_IN,
    "cancelled": AttendanceStatus.CANCELLED,
    "canceled": AttendanceStatus.CANCELLED,
    "declined": AttendanceStatus.CANCELLED,
    "no_show": AttendanceStatus.NO_SHOW,
    "noshow": AttendanceStatus.NO_SHOW,
}

_EVENT_STATUS = {
    "upcoming": EventStatus.UPCOMING,
    "scheduled": EventStatus.UPCOMING,
    "live": EventStatus.LIVE,
    "active": EventStatus.LIVE,
    "ended": EventStatus.ENDED,
    "completed": EventStatus.ENDED,
    "cancelled": EventStatus.CANCELLED,
    "canceled": EventStatus.CANCELLED,
}

_INTERACTION_TYPE = {
    "view": InteractionType.VIEW,
    "click": InteractionType.CLICK,
    "share": InteractionType.SHARE,
}


def _status_key(value: Any) -> str:
    return _safe_str(value).lower().replace("-", "_").replace(" ", "_")


def _lookup(table: dict[str, Any], value: Any, default: Any) -> Any:
    key = _status_key(value)
    return table.get(key, table.get(key.replace("_", ""), default))


# =============================================================================
# Record normalizers
# =============================================================================


def normalize_sale(doc: RawDocument) -> Sale:
    """
    Normalize a ticket sale document.

    Raises:
        NormalizationDrop: When neither purchaseDate nor timestamp is usable
    """
    data = doc.data
    timestamp = _identity_timestamp(doc, "purchaseDate", "timestamp")
    quantity = _safe_int(_first(data, "quantity", "ticketCount"))
    unit_price = _safe_decimal(_first(data, "ticketPrice", "unitPrice", "price"))
    explicit_amount = _first(data, "amount", "totalAmount")
    amount = (
        _safe_decimal(explicit_amount)
        if not _is_missing(explicit_amount)
        else unit_price * quantity
    )

    return Sale(
        sale_id=doc.id,
        event_id=_event_id(doc),
        event_name=_safe_str(_first(data, "eventName", "partyTitle"), "Unknown Event"),
        buyer_id=_safe_optional_str(_first(data, "buyerId", "customerId", "userId")),
        buyer_name=_safe_str(_first(data, "buyerName", "customerName"), "Anonymous"),
        ticket_type=_safe_str(data.get("ticketType"), "General"),
        quantity=quantity,
        unit_price=unit_price,
        amount=amount,
        status=_lookup(_SALE_STATUS, data.get("status"), SaleStatus.COMPLETED),
        timestamp=timestamp,
    )


def normalize_attendance(doc: RawDocument) -> Attendance:
    """
    Normalize an RSVP document.

    Raises:
        NormalizationDrop: When rsvpDate is missing or unparseable
    """
    data = doc.data
    timestamp = _identity_timestamp(doc, "rsvpDate")

    return Attendance(
        rsvp_id=doc.id,
        event_id=_event_id(doc),
        event_name=_safe_str(_first(data, "eventName", "partyTitle"), "Unknown Event"),
        user_id=_safe_optional_str(_first(data, "userId", "guestId")),
        guest_name=_safe_str(_first(data, "guestName", "userName"), "Anonymous"),
        tier_id=_safe_optional_str(_first(data, "ticketTierId", "tierId")),
        quantity=_safe_int(_first(data, "quantity", "partySize"), 1),
        status=_lookup(_ATTENDANCE_STATUS, data.get("status"), AttendanceStatus.PENDING),
        timestamp=timestamp,
        check_in_at=_safe_datetime(_first(data, "checkInTime", "checkedInAt")),
    )


def _normalize_tier(raw: Any, index: int) -> Optional[TicketTier]:
    if not isinstance(raw, dict):
        return None
    tier_id = _safe_str(_first(raw, "id", "tierId"))
    if not tier_id:
        return None
    return TicketTier(
        tier_id=tier_id,
        name=_safe_str(raw.get("name"), f"Tier {index + 1}"),
        price=_safe_decimal(raw.get("price")),
        sold=_safe_int(_first(raw, "soldCount", "sold")),
    )


def normalize_event(doc: RawDocument) -> EventRecord:
    """
    Normalize a party document.

    Capacity is floored at 1 so occupancy and sold-out checks are always
    defined. Tiers without an id are skipped since nothing can reference them.

    Raises:
        NormalizationDrop: When startDate is missing or unparseable
    """
    data = doc.data
    start_date = _identity_timestamp(doc, "startDate")

    raw_tiers = data.get("ticketTiers")
    tiers = []
    if isinstance(raw_tiers, list):
        for index, raw in enumerate(raw_tiers):
            tier = _normalize_tier(raw, index)
            if tier is not None:
                tiers.append(tier)

    return EventRecord(
        event_id=doc.id,
        title=_safe_str(_first(data, "title", "eventName"), "Unknown Event"),
        status=_lookup(_EVENT_STATUS, data.get("status"), EventStatus.UNKNOWN),
        start_date=start_date,
        capacity=max(_safe_int(_first(data, "capacity", "guestCap")), 1),
        current_attendees=_safe_int(data.get("currentAttendees")),
        tiers=tuple(tiers),
        created_at=_safe_datetime(data.get("createdAt"), doc.fetched_at),
    )


def normalize_interaction(doc: RawDocument) -> Interaction:
    """
    Normalize an event interaction document.

    Raises:
        NormalizationDrop: When timestamp is missing or unparseable
    """
    data = doc.data
    timestamp = _identity_timestamp(doc, "timestamp")
    age = _safe_int(data.get("userAge"), -1)

    return Interaction(
        interaction_id=doc.id,
        event_id=_event_id(doc),
        user_id=_safe_optional_str(data.get("userId")),
        interaction_type=_lookup(_INTERACTION_TYPE, data.get("type"), InteractionType.OTHER),
        timestamp=timestamp,
        user_age=age if age >= 0 else None,
        user_gender=_safe_optional_str(data.get("userGender")),
        user_location=_safe_optional_str(data.get("userLocation")),
    )


NORMALIZERS: dict[RecordKind, Callable[[RawDocument], NormalizedRecord]] = {
    RecordKind.SALE: normalize_sale,
    RecordKind.ATTENDANCE: normalize_attendance,
    RecordKind.EVENT: normalize_event,
    RecordKind.INTERACTION: normalize_interaction,
}


def normalize_batch(kind: RecordKind, documents: Iterable[RawDocument]) -> NormalizationResult:
    """
    Normalize a full snapshot for one source, absorbing and counting drops.

    Args:
        kind: Record family of the documents
        documents: Full result set from the store

    Returns:
        NormalizationResult with records in input order
    """
    normalize = NORMALIZERS[kind]
    records = []
    dropped = 0
    for doc in documents:
        try:
            records.append(normalize(doc))
        except NormalizationDrop as drop:
            dropped += 1
            logger.debug(
                "document_dropped",
                kind=kind.value,
                document_id=drop.document_id,
                reason=drop.reason.value,
                field=drop.field,
            )

    if dropped:
        logger.info("normalization_drops", kind=kind.value, dropped=dropped, kept=len(records))
    return NormalizationResult(kind=kind, records=records, dropped=dropped)
