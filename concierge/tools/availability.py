"""``check_availability``: visit slots inside business hours for one day."""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from concierge.errors import ToolInputError
from concierge.kb import get_knowledge_base
from concierge.tools.registry import ToolContext, ToolSpec

DEFAULT_DURATION_HOURS = 2
DEFAULT_INTERVAL_MINUTES = 60

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_HOURS_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


class AvailabilityArgs(BaseModel):
    date: str = Field(description="Target date in YYYY-MM-DD format")
    duration_hours: float = Field(default=DEFAULT_DURATION_HOURS, gt=0)
    slot_interval_minutes: float = Field(default=DEFAULT_INTERVAL_MINUTES, gt=0)


class Slot(BaseModel):
    start: datetime
    end: datetime
    label: str


def _parse_date(value: str) -> date:
    if not _DATE_RE.match(value):
        raise ToolInputError("date must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ToolInputError("date is invalid") from exc


def parse_hours(window: str) -> tuple[int, int]:
    """``"08:00-18:00"`` -> minutes since midnight for start and end."""
    match = _HOURS_RE.match(window)
    if not match:
        raise ToolInputError(f"Invalid business hours: {window}")
    sh, sm, eh, em = (int(g) for g in match.groups())
    start, end = sh * 60 + sm, eh * 60 + em
    if end <= start:
        raise ToolInputError(f"End time must be after start time in: {window}")
    return start, end


def get_availability(args: AvailabilityArgs) -> list[Slot]:
    day = _parse_date(args.date)
    hours = get_knowledge_base().company.hours
    window = hours.weekends if day.weekday() >= 5 else hours.weekdays
    open_min, close_min = parse_hours(window)

    duration = round(args.duration_hours * 60)
    step = args.slot_interval_minutes
    midnight = datetime.combine(day, datetime.min.time())

    slots: list[Slot] = []
    start = float(open_min)
    while start + duration <= close_min:
        begin = midnight + timedelta(minutes=start)
        end = begin + timedelta(minutes=duration)
        slots.append(Slot(start=begin, end=end, label=f"{begin:%H:%M} - {end:%H:%M}"))
        start += step
    return slots


async def _execute(args: AvailabilityArgs, context: ToolContext) -> dict:
    slots = get_availability(args)
    return {"slots": [slot.model_dump(mode="json") for slot in slots]}


AVAILABILITY_TOOL = ToolSpec(
    name="check_availability",
    description="Return available time slots for a given date.",
    args_model=AvailabilityArgs,
    executor=_execute,
)
