"""``generate_payment_link``: stub checkout URL for a booking."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from pydantic import BaseModel, Field

from concierge.services.metrics import metrics
from concierge.tools.contact import RequiredText
from concierge.tools.registry import ToolContext, ToolSpec

CHECKOUT_URL = "https://pay.cleaning.local/checkout"
PAYMENT_LINK_EXPIRY_MINUTES = 60


class PaymentLinkArgs(BaseModel):
    booking_id: RequiredText
    amount: float = Field(gt=0)
    currency: RequiredText
    metadata: dict[str, str | int | float | bool] | None = None


class PaymentLink(BaseModel):
    url: str
    booking_id: str
    amount: float
    currency: str
    created_at: datetime
    expires_at: datetime


def generate_payment_link(args: PaymentLinkArgs) -> PaymentLink:
    currency = args.currency.upper()
    params = {
        "booking_id": args.booking_id,
        "amount": f"{args.amount:.2f}",
        "currency": currency,
    }
    for key, value in (args.metadata or {}).items():
        params[f"meta_{key}"] = str(value)

    created_at = datetime.now(UTC)
    return PaymentLink(
        url=f"{CHECKOUT_URL}?{urlencode(params)}",
        booking_id=args.booking_id,
        amount=round(args.amount, 2),
        currency=currency,
        created_at=created_at,
        expires_at=created_at + timedelta(minutes=PAYMENT_LINK_EXPIRY_MINUTES),
    )


async def _execute(args: PaymentLinkArgs, context: ToolContext) -> dict:
    link = generate_payment_link(args)
    metrics.record_funnel("payment_link_generated")
    return {"payment_link": link.model_dump(mode="json")}


PAYMENT_LINK_TOOL = ToolSpec(
    name="generate_payment_link",
    description="Create a payment link for the specified booking and amount.",
    args_model=PaymentLinkArgs,
    executor=_execute,
)
