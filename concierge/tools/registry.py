"""Typed tool registry: the single boundary between model tool calls and code.

Every tool is a :class:`ToolSpec` pairing a Pydantic argument model with an
async executor.  :meth:`ToolRegistry.dispatch` resolves the name, validates
the arguments, runs the executor through :func:`execute_with_retry` and
always returns a :class:`ToolResult`; it never raises for tool failures.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ValidationError

from concierge.services.metrics import metrics
from concierge.services.retry import execute_with_retry

logger = logging.getLogger(__name__)

TOOL_CATALOG_VERSION = "2024-07"


@dataclass
class ToolContext:
    """What an executor may know about the conversation that called it."""

    conversation: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


ToolExecutor = Callable[[Any, ToolContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    executor: ToolExecutor

    def schema(self) -> dict[str, Any]:
        """OpenAI-style function schema, accepted by ``bind_tools``."""
        tool = convert_to_openai_tool(self.args_model)
        tool["function"]["name"] = self.name
        tool["function"]["description"] = self.description
        return tool


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    ok: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def success(cls, tool_name: str, data: Any) -> ToolResult:
        return cls(tool_name=tool_name, ok=True, data=data)

    @classmethod
    def failure(cls, tool_name: str, error: str) -> ToolResult:
        return cls(tool_name=tool_name, ok=False, error=error)

    def to_content(self) -> str:
        """Body of the ``tool`` message sent back to the model."""
        if self.ok:
            return json.dumps({"ok": True, "data": self.data}, default=str)
        return json.dumps({"ok": False, "error": self.error}, default=str)


def describe_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
        for err in exc.errors()
    )


class ToolRegistry:
    def __init__(self, specs: list[ToolSpec] | None = None) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool {spec.name!r} is already registered")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def catalog(self) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self._specs.values()]

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any] | None,
        context: ToolContext,
    ) -> ToolResult:
        """Validate and execute one tool call.

        Unknown names and invalid arguments fail immediately; executor
        errors are retried, and the last one becomes the failure message.
        """
        spec = self.get(name)
        if spec is None:
            logger.warning("Model requested unknown tool %r", name)
            return ToolResult.failure(name, f"Unknown tool: {name}")

        try:
            args = spec.args_model.model_validate(arguments or {})
        except ValidationError as exc:
            logger.info("Invalid arguments for %s: %s", name, exc.error_count())
            return ToolResult.failure(name, f"Invalid arguments: {describe_validation_error(exc)}")

        def _log_retry(attempt: int, error: BaseException, delay_ms: float) -> None:
            logger.warning(
                "Tool %s failed on attempt %d. Retrying in %.0fms: %s",
                name, attempt, delay_ms, error,
            )

        t0 = time.perf_counter()
        try:
            data = await execute_with_retry(
                lambda: spec.executor(args, context), on_retry=_log_retry,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure("tool", name, error_type=type(exc).__name__, latency_ms=elapsed)
            logger.warning("Tool %s failed after retries: %s", name, exc)
            return ToolResult.failure(name, str(exc) or "Tool execution failed")

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("tool", name, latency_ms=elapsed)
        logger.debug("Tool %s succeeded in %.0fms", name, elapsed)
        return ToolResult.success(name, data)
