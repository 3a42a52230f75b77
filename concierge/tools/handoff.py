"""``escalate_to_human``: file a hand-off request in the inbox."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel

from concierge.services.metrics import metrics
from concierge.services.stores import JsonListStore, get_handoff_inbox
from concierge.tools.contact import ContactMethod
from concierge.tools.registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)


class HandoffContact(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    preferred_contact_method: ContactMethod | None = None


class HandoffArgs(BaseModel):
    reason: str | None = None
    notes: str | None = None
    contact: HandoffContact | None = None


def write_handoff(
    args: HandoffArgs,
    context: ToolContext,
    inbox: JsonListStore | None = None,
) -> str:
    """Append a hand-off record with a conversation snapshot; return its id."""
    handoff_id = str(uuid.uuid4())
    record = {
        "id": handoff_id,
        "created_at": datetime.now(UTC).isoformat(),
        **args.model_dump(mode="json", exclude_none=True),
        "conversation": [m for m in context.conversation if m.get("role") != "system"],
        "metadata": context.metadata,
    }
    (inbox or get_handoff_inbox()).append(record)
    logger.info("Human hand-off %s filed (reason=%s)", handoff_id, args.reason)
    return handoff_id


async def _execute(args: HandoffArgs, context: ToolContext) -> dict:
    handoff_id = await asyncio.to_thread(write_handoff, args, context)
    metrics.record_funnel("human_handoff")
    return {"handoff_id": handoff_id}


HANDOFF_TOOL = ToolSpec(
    name="escalate_to_human",
    description=(
        "Escalate the conversation to a human specialist when the assistant "
        "cannot help or upon request."
    ),
    args_model=HandoffArgs,
    executor=_execute,
)
