"""Conversation data types shared by the store, the agent and the API."""

from __future__ import annotations

from typing import Literal, NamedTuple

from pydantic import BaseModel, ConfigDict

Role = Literal["system", "user", "assistant", "tool"]


class ChatMessage(BaseModel):
    """One entry of the model context.  Frozen: never edited once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | None = None
    tool_call_id: str | None = None
    name: str | None = None


class SessionKey(NamedTuple):
    """Scope of one conversation history."""

    tenant_id: str
    session_id: str
    client_id: str

    def __str__(self) -> str:
        return f"{self.tenant_id}/{self.session_id}/{self.client_id}"
