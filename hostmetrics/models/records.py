"""
Normalized record models.

Each record is the typed, immutable projection of one RawDocument. Records
are rebuilt from scratch on every snapshot delivery; nothing here is ever
mutated in place.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .enums import AttendanceStatus, EventStatus, InteractionType, SaleStatus


class Sale(BaseModel):
    """
    A ticket purchase.

    Attributes:
        sale_id: Source document ID
        event_id: Party the tickets were sold for ("" when unknown)
        event_name: Party title at purchase time
        buyer_id: Buying user, None when the document carries no buyer
        buyer_name: Display name ("Anonymous" when absent)
        ticket_type: Tier name ("General" when absent)
        quantity: Tickets purchased
        unit_price: Price per ticket
        amount: Total charged; unit_price * quantity unless the document states it
        status: Sale lifecycle status
        timestamp: Purchase time (identity field for bucketing)
    """

    model_config = ConfigDict(frozen=True)

    sale_id: str
    event_id: str = ""
    event_name: str = "Unknown Event"
    buyer_id: Optional[str] = None
    buyer_name: str = "Anonymous"
    ticket_type: str = "General"
    quantity: int = Field(default=0, ge=0)
    unit_price: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    status: SaleStatus = SaleStatus.COMPLETED
    timestamp: datetime

    @property
    def counts_as_revenue(self) -> bool:
        return self.status == SaleStatus.COMPLETED


class Attendance(BaseModel):
    """
    An RSVP to a party.

    Attributes:
        rsvp_id: Source document ID
        event_id: Party ID ("" when unknown)
        event_name: Party title
        user_id: Attending user, None when absent
        guest_name: Display name
        tier_id: Ticket tier reserved, None for free RSVPs
        quantity: Seats held (group size)
        status: RSVP lifecycle status
        timestamp: RSVP time (identity field for bucketing)
        check_in_at: When the guest checked in, if they did
    """

    model_config = ConfigDict(frozen=True)

    rsvp_id: str
    event_id: str = ""
    event_name: str = "Unknown Event"
    user_id: Optional[str] = None
    guest_name: str = "Anonymous"
    tier_id: Optional[str] = None
    quantity: int = Field(default=1, ge=0)
    status: AttendanceStatus = AttendanceStatus.PENDING
    timestamp: datetime
    check_in_at: Optional[datetime] = None

    @property
    def checked_in(self) -> bool:
        return self.status == AttendanceStatus.CHECKED_IN or (
            self.check_in_at is not None and self.status.is_active
        )


class TicketTier(BaseModel):
    """Price point offered by a party."""

    model_config = ConfigDict(frozen=True)

    tier_id: str
    name: str = "General"
    price: Decimal = Decimal("0")
    sold: int = 0


class EventRecord(BaseModel):
    """
    A party owned by the host.

    Attributes:
        event_id: Source document ID
        title: Party title
        status: Lifecycle status
        start_date: Scheduled start (identity field)
        capacity: Guest cap, floored at 1 so occupancy is always defined
        current_attendees: Attendee counter maintained on the party document
        tiers: Ticket tiers offered
        created_at: Creation time (defaults to fetch time)
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    title: str = "Unknown Event"
    status: EventStatus = EventStatus.UNKNOWN
    start_date: datetime
    capacity: int = Field(default=1, ge=1)
    current_attendees: int = Field(default=0, ge=0)
    tiers: tuple[TicketTier, ...] = ()
    created_at: datetime

    @property
    def is_sold_out(self) -> bool:
        return self.current_attendees >= self.capacity

    @property
    def occupancy_rate(self) -> float:
        return self.current_attendees / self.capacity * 100


class Interaction(BaseModel):
    """
    A view, click or share on a party card.

    Attributes:
        interaction_id: Source document ID
        event_id: Party interacted with
        user_id: Acting user, None for anonymous traffic
        interaction_type: Kind of interaction
        timestamp: When it happened (identity field for bucketing)
        user_age: Age from the user's profile, if shared
        user_gender: Gender from the user's profile, if shared
        user_location: Location from the user's profile, if shared
    """

    model_config = ConfigDict(frozen=True)

    interaction_id: str
    event_id: str = ""
    user_id: Optional[str] = None
    interaction_type: InteractionType = InteractionType.OTHER
    timestamp: datetime
    user_age: Optional[int] = None
    user_gender: Optional[str] = None
    user_location: Optional[str] = None


NormalizedRecord = Union[Sale, Attendance, EventRecord, Interaction]
