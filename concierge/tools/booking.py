"""``create_booking``: hold a visit with ``pending_payment`` status."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from concierge.errors import ToolInputError
from concierge.kb import get_knowledge_base
from concierge.services.metrics import metrics
from concierge.tools.contact import Email, RequiredText
from concierge.tools.quote import QuoteResult
from concierge.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

BookingStatus = Literal["pending_payment", "paid", "cancelled"]


class Customer(BaseModel):
    name: RequiredText
    phone: RequiredText
    email: Email
    address: RequiredText


class BookingArgs(BaseModel):
    customer: Customer
    scheduled_start: datetime = Field(description="ISO timestamp for visit start")
    scheduled_end: datetime = Field(description="ISO timestamp for visit end")
    quote: QuoteResult


class Booking(BaseModel):
    id: str
    created_at: datetime
    status: BookingStatus
    customer: Customer
    scheduled_start: datetime
    scheduled_end: datetime
    quote: QuoteResult


class BookingLedger:
    """In-process list of bookings created since start-up."""

    def __init__(self) -> None:
        self._bookings: list[Booking] = []
        self._lock = threading.Lock()

    def add(self, booking: Booking) -> None:
        with self._lock:
            self._bookings.append(booking)

    def snapshot(self) -> list[Booking]:
        with self._lock:
            return list(self._bookings)

    def clear(self) -> None:
        with self._lock:
            self._bookings.clear()


ledger = BookingLedger()


def in_service_area(address: str) -> bool:
    lowered = address.lower()
    return any(area.lower() in lowered for area in get_knowledge_base().company.service_areas)


def create_booking(args: BookingArgs, bookings: BookingLedger | None = None) -> Booking:
    if args.scheduled_end <= args.scheduled_start:
        raise ToolInputError("scheduled_end must be after scheduled_start")
    if not in_service_area(args.customer.address):
        raise ToolInputError("Address is outside the supported service areas.")

    booking = Booking(
        id=str(uuid.uuid4()),
        created_at=datetime.now(UTC),
        status="pending_payment",
        customer=args.customer,
        scheduled_start=args.scheduled_start,
        scheduled_end=args.scheduled_end,
        quote=args.quote,
    )
    (bookings or ledger).add(booking)
    logger.info("Booking %s created (%.2f %s)", booking.id, booking.quote.total, booking.quote.currency)
    return booking


async def _execute(args: BookingArgs, context: ToolContext) -> dict:
    booking = create_booking(args)
    metrics.record_funnel("booking_created")
    return {"booking": booking.model_dump(mode="json")}


BOOKING_TOOL = ToolSpec(
    name="create_booking",
    description="Create a booking entry for the client with a pending payment status.",
    args_model=BookingArgs,
    executor=_execute,
)
