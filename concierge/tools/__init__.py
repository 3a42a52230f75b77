"""Tools the agent can call, and the registry that dispatches them."""

from concierge.tools.availability import AVAILABILITY_TOOL
from concierge.tools.booking import BOOKING_TOOL
from concierge.tools.faq import FAQ_TOOL
from concierge.tools.handoff import HANDOFF_TOOL
from concierge.tools.leads import LEAD_TOOL
from concierge.tools.payments import PAYMENT_LINK_TOOL
from concierge.tools.quote import QUOTE_TOOL
from concierge.tools.registry import TOOL_CATALOG_VERSION, ToolContext, ToolRegistry, ToolResult, ToolSpec

DEFAULT_TOOLS = [
    QUOTE_TOOL,
    AVAILABILITY_TOOL,
    BOOKING_TOOL,
    PAYMENT_LINK_TOOL,
    LEAD_TOOL,
    FAQ_TOOL,
    HANDOFF_TOOL,
]


def build_default_registry() -> ToolRegistry:
    return ToolRegistry(DEFAULT_TOOLS)


__all__ = [
    "TOOL_CATALOG_VERSION",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "build_default_registry",
]
