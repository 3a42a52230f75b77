"""``quote_cleaning``: price a visit from the knowledge-base pricing table."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from concierge.kb import get_knowledge_base
from concierge.services.metrics import metrics
from concierge.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

ServiceType = Literal["standard", "deep"]
Frequency = Literal["one_time", "weekly", "biweekly", "monthly"]


class QuoteExtras(BaseModel):
    inside_oven: bool = False
    inside_fridge: bool = False
    windows: int = Field(default=0, ge=0, description="Number of rooms with windows to clean")


class QuoteArgs(BaseModel):
    rooms: int = Field(ge=0)
    baths: int = Field(ge=0)
    square_meters: float = Field(gt=0)
    service_type: ServiceType
    frequency: Frequency
    extras: QuoteExtras | None = None


class ExtrasBreakdown(BaseModel):
    inside_oven: float
    inside_fridge: float
    windows: float


class QuoteBreakdown(BaseModel):
    base_visit_fee: float
    rooms: float
    baths: float
    square_meters: float
    service_multiplier: float
    frequency_multiplier: float
    extras: ExtrasBreakdown


class QuoteResult(BaseModel):
    currency: str
    total: float
    subtotal: float
    breakdown: QuoteBreakdown


def calculate_quote(args: QuoteArgs) -> QuoteResult:
    """Apply the pricing table.

    ``subtotal`` is the sum of the fixed fee, the per-unit costs and the
    extras; ``total`` applies the service and frequency multipliers.
    """
    kb = get_knowledge_base()
    pricing, addons = kb.pricing, kb.addons

    service_multiplier = pricing.deep_clean_multiplier if args.service_type == "deep" else 1.0
    frequency_multiplier = getattr(pricing.frequency_discounts, args.frequency)

    extras_in = args.extras or QuoteExtras()
    extras = ExtrasBreakdown(
        inside_oven=addons.inside_oven if extras_in.inside_oven else 0,
        inside_fridge=addons.inside_fridge if extras_in.inside_fridge else 0,
        windows=addons.windows_per_room * extras_in.windows,
    )

    breakdown = QuoteBreakdown(
        base_visit_fee=pricing.base_visit_fee,
        rooms=args.rooms * pricing.per_room,
        baths=args.baths * pricing.per_bath,
        square_meters=args.square_meters * pricing.per_sqm,
        service_multiplier=service_multiplier,
        frequency_multiplier=frequency_multiplier,
        extras=extras,
    )
    subtotal = (
        breakdown.base_visit_fee
        + breakdown.rooms
        + breakdown.baths
        + breakdown.square_meters
        + extras.inside_oven
        + extras.inside_fridge
        + extras.windows
    )
    total = round(subtotal * service_multiplier * frequency_multiplier, 2)

    return QuoteResult(
        currency=kb.company.currency,
        total=total,
        subtotal=round(subtotal, 2),
        breakdown=breakdown,
    )


async def _execute(args: QuoteArgs, context: ToolContext) -> dict:
    result = calculate_quote(args)
    metrics.record_funnel("quote_issued")
    logger.info("Quote issued: %.2f %s", result.total, result.currency)
    return {"result": result.model_dump(mode="json")}


QUOTE_TOOL = ToolSpec(
    name="quote_cleaning",
    description="Calculate a cleaning quote using the official pricing table.",
    args_model=QuoteArgs,
    executor=_execute,
)
