"""Centralized configuration for the Cleaning Concierge.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/concierge/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/concierge/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _optional_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _optional_secret(name)
    if value:
        return value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /concierge/{name} (AWS)."
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ── LLM ─────────────────────────────────────────────────────────────
# Optional at import time: the health check reports its absence and chat
# calls fail with a MISSING_CREDENTIAL error instead of crashing the app.
ANTHROPIC_API_KEY: str | None = _optional_secret("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.6"))
LLM_MAX_TOKENS: int = _int_env("LLM_MAX_TOKENS", 1024)
LLM_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "30"))

# ── Bot access ──────────────────────────────────────────────────────
BOT_PUBLIC_TOKEN: str = _require_env("BOT_PUBLIC_TOKEN")
ADMIN_PASSWORD: str | None = _optional_secret("ADMIN_PASSWORD")
DEFAULT_TENANT_ID: str = os.getenv("DEFAULT_TENANT_ID", "neurox").strip() or "neurox"

# ── Business ────────────────────────────────────────────────────────
COMPANY_NAME: str = os.getenv("COMPANY_NAME", "NEURO")
CURRENCY: str = os.getenv("CURRENCY", "USD")

# ── Chat orchestration ──────────────────────────────────────────────
FIRST_TOKEN_TIMEOUT_MS: int = _int_env("FIRST_TOKEN_TIMEOUT_MS", 4000)
OVERALL_TIMEOUT_MS: int = _int_env("OVERALL_TIMEOUT_MS", 45000)
HEARTBEAT_MS: int = _int_env("HEARTBEAT_MS", 10000)
MAX_HISTORY_TURNS: int = _int_env("MAX_HISTORY_TURNS", 20)
MAX_TOOL_EXECUTIONS: int = _int_env("MAX_TOOL_EXECUTIONS", 6)

# ── Storage ─────────────────────────────────────────────────────────
DATA_DIR: Path = Path(
    os.getenv("DATA_DIR", str(Path(__file__).resolve().parent.parent / "data"))
)

# ── Server ──────────────────────────────────────────────────────────
ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 3000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
