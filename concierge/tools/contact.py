"""Shared contact-field types for tool argument models."""

from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import AfterValidator, StringConstraints

# RFC 5322-ish pattern: covers the vast majority of real-world emails
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str) -> str:
    """Return the stripped address or raise ``ValueError``."""
    email = (email or "").strip()
    if not email:
        raise ValueError("No email address was provided")
    if not _EMAIL_RE.match(email):
        raise ValueError(f'"{email}" does not look like a valid email address')
    return email


RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Email = Annotated[str, AfterValidator(validate_email)]
ContactMethod = Literal["email", "phone"]
