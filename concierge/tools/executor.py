"""
Tool Executor — the boundary between deciding to act and acting.

When the model asks for a tool, this module runs it. Nothing that goes wrong
in here escapes as an exception: unknown tools, unparseable arguments, schema
violations, handler crashes and timeouts all come back as a
``ToolExecutionResult`` with ``success=False``, which the loop feeds to the
model as an ordinary tool result so it can decide what to do next.

Every handler receives the owner the call is running for. The owner is
supplied by the engine, never by the model: an ``owner`` key inside the
model's arguments is discarded.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable, Optional, Union

import structlog

from concierge.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

ERROR_UNKNOWN_TOOL = "unknown_tool"
ERROR_INVALID_ARGUMENTS = "invalid_arguments"
ERROR_EXECUTION = "execution"
ERROR_TIMEOUT = "timeout"


class ToolExecutionResult:
    """
    The outcome of one tool call.

    ``content`` is the text the model will see: the JSON encoding of the
    handler's return value on success, ``{"error": ...}`` on failure.
    """
    def __init__(
        self,
        tool_use_id: str,
        tool_name: str,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        execution_time: float = 0.0,
    ):
        self.tool_use_id = tool_use_id
        self.tool_name = tool_name
        self.success = success
        self.result = result
        self.error = error
        self.error_kind = error_kind
        self.execution_time = execution_time

    @property
    def content(self) -> str:
        if not self.success:
            return json.dumps({"error": self.error or "unknown error"})
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, default=str)

    def to_message(self) -> dict[str, Any]:
        """Render as a neutral ``tool`` message for the next gateway call."""
        return {
            "role": "tool",
            "tool_call_id": self.tool_use_id,
            "content": self.content,
            "is_error": not self.success,
        }


# JSON Schema type → Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def _validate_tool_input(
    schema: dict[str, Any],
    tool_input: dict[str, Any],
) -> Optional[str]:
    """
    Lightweight JSON Schema validation for tool inputs.

    Checks required fields, basic types and enums. Returns an error message
    on failure, or None if the input is valid.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not prop_schema or not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if expected_type else None
        if py_types is not None:
            # In Python bool is a subclass of int, but JSON booleans are distinct
            if isinstance(value, bool) and expected_type in ("integer", "number"):
                return f"Parameter '{name}' expected {expected_type}, got boolean"
            if not isinstance(value, py_types):
                return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
        allowed = prop_schema.get("enum")
        if allowed and value not in allowed:
            return f"Parameter '{name}' must be one of {allowed}, got {value!r}"

    return None


def parse_arguments(raw: Union[str, dict[str, Any], None]) -> dict[str, Any]:
    """
    Normalize a tool-call argument payload to a dict.

    Malformed JSON, or JSON that is not an object, becomes ``{}``; the schema
    check then reports any missing required fields to the model.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("tool_executor.argument_parse_failed", payload_length=len(raw))
            return {}
        return parsed if isinstance(parsed, dict) else {}
    logger.warning("tool_executor.argument_parse_failed", payload_type=type(raw).__name__)
    return {}


class ToolExecutor:
    """Looks tools up by name, validates arguments, runs handlers with a timeout."""

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 30.0,
        max_output_length: int = 25000,
        max_concurrent_sync: int = 8,
    ):
        self._registry = registry
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length
        self._sync_slot = asyncio.Semaphore(max(1, int(max_concurrent_sync)))

        self._total_executions = 0
        self._total_successes = 0
        self._total_failures = 0

    def _failure(
        self,
        tool_use_id: str,
        tool_name: str,
        error: str,
        error_kind: str,
        elapsed: float = 0.0,
    ) -> ToolExecutionResult:
        self._total_failures += 1
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=False,
            error=error,
            error_kind=error_kind,
            execution_time=elapsed,
        )

    async def execute(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: Union[str, dict[str, Any], None],
        owner: str,
    ) -> ToolExecutionResult:
        """
        Execute one tool call on behalf of ``owner``.

        Args:
            tool_use_id: Call id from the model's reply (for correlation)
            tool_name: Exact registered name of the tool
            tool_input: Argument object, or its raw JSON text
            owner: Tenant the call runs for

        Returns:
            ToolExecutionResult; never raises for tool-level problems
        """
        start_time = time.monotonic()
        self._total_executions += 1
        arguments = parse_arguments(tool_input)
        arguments.pop("owner", None)

        logger.info(
            "tool_executor.executing",
            tool_name=tool_name,
            tool_use_id=tool_use_id,
            owner=owner,
            input_keys=sorted(arguments.keys()),
        )

        tool_def = self._registry.get(tool_name)
        if tool_def is None or not tool_def.enabled:
            logger.warning("tool_executor.unknown_tool", tool_name=tool_name)
            return self._failure(tool_use_id, tool_name, f"Unknown tool: {tool_name}", ERROR_UNKNOWN_TOOL)

        handler = tool_def.handler
        if handler is None:
            return self._failure(
                tool_use_id, tool_name, f"No handler registered for tool: {tool_name}", ERROR_UNKNOWN_TOOL
            )

        validation_error = _validate_tool_input(tool_def.input_schema, arguments)
        if validation_error:
            return self._failure(tool_use_id, tool_name, validation_error, ERROR_INVALID_ARGUMENTS)

        timeout = tool_def.timeout if tool_def.timeout is not None else self._default_timeout
        try:
            if asyncio.iscoroutinefunction(handler):
                result = await asyncio.wait_for(handler(owner=owner, **arguments), timeout=timeout)
            else:
                result = await self._execute_sync_handler(handler, owner, arguments, timeout)
        except asyncio.TimeoutError:
            logger.warning("tool_executor.timeout", tool_name=tool_name, timeout=timeout)
            return self._failure(
                tool_use_id,
                tool_name,
                f"Tool execution timed out after {timeout}s",
                ERROR_TIMEOUT,
                time.monotonic() - start_time,
            )
        except Exception as e:
            error_detail = f"{type(e).__name__}: {e}"
            logger.error(
                "tool_executor.error",
                tool_name=tool_name,
                owner=owner,
                error=error_detail,
            )
            return self._failure(
                tool_use_id, tool_name, error_detail, ERROR_EXECUTION, time.monotonic() - start_time
            )

        if not isinstance(result, str):
            try:
                encoded = json.dumps(result, default=str)
            except (TypeError, ValueError):
                encoded = str(result)
        else:
            encoded = result
        if len(encoded) > self._max_output_length:
            result = (
                encoded[: self._max_output_length - 100]
                + f"\n\n[Output truncated: {len(encoded)} chars total, "
                f"showing first {self._max_output_length - 100}]"
            )

        elapsed = time.monotonic() - start_time
        self._total_successes += 1
        logger.info("tool_executor.success", tool_name=tool_name, elapsed=round(elapsed, 2))
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=True,
            result=result,
            execution_time=elapsed,
        )

    async def _execute_sync_handler(
        self,
        handler: Callable[..., Any],
        owner: str,
        arguments: dict[str, Any],
        timeout: float,
    ) -> Any:
        """
        Run a blocking handler on a worker thread, bounded by a semaphore.

        A timed-out thread cannot be stopped, so its slot is only returned
        when the thread itself finishes.
        """
        await asyncio.wait_for(self._sync_slot.acquire(), timeout=timeout)
        try:
            worker = asyncio.ensure_future(asyncio.to_thread(handler, owner=owner, **arguments))
        except Exception:
            self._sync_slot.release()
            raise

        def _release(done: asyncio.Future) -> None:
            self._sync_slot.release()
            if not done.cancelled():
                done.exception()  # marks it retrieved when the caller timed out

        worker.add_done_callback(_release)
        return await asyncio.wait_for(asyncio.shield(worker), timeout=timeout)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "successes": self._total_successes,
            "failures": self._total_failures,
            "success_rate": self._total_successes / max(1, self._total_executions),
        }
