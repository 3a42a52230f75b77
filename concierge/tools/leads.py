"""``save_lead``: store a prospective customer for follow-up."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from concierge.services.stores import JsonListStore, get_leads_store
from concierge.tools.contact import ContactMethod, Email, RequiredText
from concierge.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)


class LeadArgs(BaseModel):
    name: RequiredText
    email: Email
    phone: str | None = None
    message: str | None = None
    preferred_contact_method: ContactMethod | None = None
    metadata: dict[str, Any] | None = None


class Lead(LeadArgs):
    id: str
    created_at: datetime
    source: str = "assistant"


def new_lead_id() -> str:
    return f"lead_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def save_lead(args: LeadArgs, store: JsonListStore | None = None) -> Lead:
    lead = Lead(id=new_lead_id(), created_at=datetime.now(UTC), **args.model_dump())
    (store or get_leads_store()).append(lead.model_dump(mode="json"))
    logger.info("Lead %s saved", lead.id)
    return lead


async def _execute(args: LeadArgs, context: ToolContext) -> dict:
    lead = await asyncio.to_thread(save_lead, args)
    return {"lead": lead.model_dump(mode="json")}


LEAD_TOOL = ToolSpec(
    name="save_lead",
    description="Store a prospective customer lead for follow-up.",
    args_model=LeadArgs,
    executor=_execute,
)
