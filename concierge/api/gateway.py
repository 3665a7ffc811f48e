"""
Language-Model Gateway — the engine's single door to the model provider.

The gateway is stateless. Callers hand it the whole message history on every
call, in a provider-neutral shape:

    {"role": "system",    "content": "..."}
    {"role": "user",      "content": "..."}
    {"role": "assistant", "content": "...", "tool_calls": [{"id", "name", "arguments"}]}
    {"role": "tool",      "tool_call_id": "...", "content": "...", "is_error": False}

and get back a ``Completion``: the reply text, the requested tool calls, or
both. The Anthropic Messages API wants something different (system prompt as
a separate parameter, tool calls and tool results as content blocks, strictly
alternating user/assistant turns), so this module owns that translation.

Two failure types leave the gateway. ``ProviderError`` covers transport and
provider-side failures and carries the HTTP status when there is one plus a
coarse category. ``MalformedResponse`` means the provider answered
successfully with neither text nor tool calls. Neither is retried here: the
SDK's own retry loop is disabled by default and a failed turn simply ends.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import anthropic
import structlog

from concierge.config import ModelConfig

logger = structlog.get_logger(__name__)

# Anthropic requires the first turn to come from the user.
_HISTORY_LEAD_IN = "[Earlier conversation follows.]"


class GatewayInitError(RuntimeError):
    """Raised when the gateway cannot be constructed."""


class ProviderError(Exception):
    """A transport or provider-side failure. Aborts the current turn."""

    def __init__(self, message: str, status: Optional[int] = None, category: str = "provider"):
        super().__init__(message)
        self.status = status
        self.category = category

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"[{self.category} {self.status}] {base}"
        return f"[{self.category}] {base}"


class MalformedResponse(Exception):
    """A successful reply that carried neither content nor tool calls."""


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class Completion:
    content: Optional[str] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


def _text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def to_anthropic_messages(
    messages: list[dict[str, Any]],
) -> tuple[str, list[dict[str, Any]]]:
    """
    Translate neutral messages into ``(system, messages)`` for the Messages API.

    System messages are concatenated into the system prompt. Consecutive
    messages that end up with the same API role are merged, which is how a run
    of tool results becomes one user turn of ``tool_result`` blocks.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    def _push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": list(blocks)})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            if content:
                system_parts.append(str(content))
        elif role == "user":
            _push("user", [_text_block(str(content))] if content else [])
        elif role == "assistant":
            blocks: list[dict[str, Any]] = []
            if content:
                blocks.append(_text_block(str(content)))
            for call in msg.get("tool_calls") or []:
                arguments = call.get("arguments")
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["name"],
                        "input": arguments if isinstance(arguments, dict) else {},
                    }
                )
            _push("assistant", blocks)
        elif role == "tool":
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": msg["tool_call_id"],
                "content": str(content or ""),
            }
            if msg.get("is_error"):
                block["is_error"] = True
            _push("user", [block])
        else:
            raise ValueError(f"Unknown message role: {role!r}")

    if converted and converted[0]["role"] != "user":
        converted.insert(0, {"role": "user", "content": [_text_block(_HISTORY_LEAD_IN)]})

    return "\n\n".join(system_parts), converted


def _tool_schemas(tools: Optional[list[Any]]) -> list[dict[str, Any]]:
    if not tools:
        return []
    return [t.to_api_format() if hasattr(t, "to_api_format") else dict(t) for t in tools]


class LanguageModelGateway:
    """Thin, stateless wrapper over ``anthropic.AsyncAnthropic``."""

    def __init__(self, config: ModelConfig, client: Optional[Any] = None):
        try:
            if client is not None:
                self._client = client
            else:
                if not config.api_key:
                    raise GatewayInitError("ANTHROPIC_API_KEY is not set")
                self._client = anthropic.AsyncAnthropic(
                    api_key=config.api_key,
                    max_retries=config.sdk_max_retries,
                )
        except GatewayInitError:
            raise
        except Exception as exc:
            raise GatewayInitError(f"Failed to initialize model gateway: {exc}") from exc

        self._model = config.model
        self._max_tokens = config.max_tokens
        self._timeout = float(config.request_timeout_seconds)

        self._total_calls = 0
        self._total_input_tokens = 0
        self._total_output_tokens = 0

        logger.info("gateway.initialized", model=self._model)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[Any]] = None,
        temperature: float = 0.7,
        model: Optional[str] = None,
    ) -> Completion:
        system, api_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "max_tokens": self._max_tokens,
            "messages": api_messages,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        schemas = _tool_schemas(tools)
        if schemas:
            kwargs["tools"] = schemas

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("gateway.timeout", timeout=self._timeout)
            raise ProviderError(
                f"Model call exceeded {self._timeout:.0f}s", category="timeout"
            ) from exc
        except anthropic.APITimeoutError as exc:
            logger.error("gateway.timeout", error=str(exc))
            raise ProviderError(str(exc), category="timeout") from exc
        except anthropic.APIConnectionError as exc:
            logger.error("gateway.connection_error", error=str(exc))
            raise ProviderError(str(exc), category="connection") from exc
        except anthropic.RateLimitError as exc:
            logger.warning("gateway.rate_limited", error=str(exc))
            raise ProviderError(str(exc), status=exc.status_code, category="rate_limit") from exc
        except anthropic.APIStatusError as exc:
            logger.error("gateway.api_error", error=str(exc), status=exc.status_code)
            raise ProviderError(str(exc), status=exc.status_code, category="api_status") from exc
        except anthropic.APIError as exc:
            logger.error("gateway.api_error", error=str(exc))
            raise ProviderError(str(exc), category="provider") from exc

        completion = self._parse(response)
        self._total_calls += 1
        self._total_input_tokens += completion.input_tokens
        self._total_output_tokens += completion.output_tokens
        logger.debug(
            "gateway.completed",
            elapsed_seconds=round(time.monotonic() - start, 2),
            stop_reason=completion.stop_reason,
            tool_calls=len(completion.tool_calls),
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        return completion

    @staticmethod
    def _parse(response: Any) -> Completion:
        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in getattr(response, "content", None) or []:
            block_type = getattr(block, "type", None)
            if block_type == "text" and block.text:
                texts.append(block.text)
            elif block_type == "tool_use":
                calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))

        content = "\n".join(texts).strip() or None
        if content is None and not calls:
            raise MalformedResponse(
                f"Model reply had neither content nor tool calls "
                f"(stop_reason={getattr(response, 'stop_reason', None)})"
            )

        usage = getattr(response, "usage", None)
        return Completion(
            content=content,
            tool_calls=calls,
            stop_reason=getattr(response, "stop_reason", None),
            input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
        )

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
