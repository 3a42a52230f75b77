"""Request identity and credential checks shared by the routes."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from fastapi import Header, Query, Request

from concierge import config
from concierge.models import SessionKey

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """An error answered as ``{"error": code, "details": ...}``."""

    def __init__(self, status_code: int, error: str, details: str | None = None):
        super().__init__(details or error)
        self.status_code = status_code
        self.error = error
        self.details = details

    def to_wire(self) -> dict:
        body = {"error": self.error}
        if self.details:
            body["details"] = self.details
        return body


def _same_secret(provided: str | None, expected: str | None) -> bool:
    if not provided or not expected:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())


def require_bot_token(
    x_bot_token: str | None = Header(default=None),
    x_public_token: str | None = Header(default=None),
) -> None:
    """Reject calls that do not carry the widget's shared token."""
    if not _same_secret(x_bot_token or x_public_token, config.BOT_PUBLIC_TOKEN):
        raise ApiError(401, "UNAUTHORIZED")


def require_admin_key(
    x_admin_key: str | None = Header(default=None),
    key: str | None = Query(default=None),
) -> None:
    if not config.ADMIN_PASSWORD:
        raise ApiError(503, "ADMIN_PASSWORD_NOT_CONFIGURED")
    if not _same_secret(x_admin_key or key, config.ADMIN_PASSWORD):
        raise ApiError(401, "UNAUTHORIZED")


@dataclass(frozen=True)
class Caller:
    tenant_id: str
    session_id: str
    client_id: str | None

    def session_key(self) -> SessionKey:
        """History key for this caller.  Raises ``MISSING_CLIENT_ID`` without one."""
        if not self.client_id:
            raise ApiError(400, "MISSING_CLIENT_ID")
        return SessionKey(self.tenant_id, self.session_id, self.client_id)


def get_caller(
    request: Request,
    x_client_id: str | None = Header(default=None),
    x_tenant_id: str | None = Header(default=None),
) -> Caller:
    """Identity of the widget instance; the session id comes from the middleware."""
    return Caller(
        tenant_id=(x_tenant_id or "").strip() or config.DEFAULT_TENANT_ID,
        session_id=request.state.session_id,
        client_id=(x_client_id or "").strip() or None,
    )
