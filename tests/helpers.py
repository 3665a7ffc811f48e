"""
Test doubles shared across the suite: a deterministic embedder, a scripted
model gateway, an event bus that records what it was given, and a helper that
wires the built-in tools over whatever services a test provides.
"""

from __future__ import annotations

import hashlib
import math
import re
from typing import Any, Optional

from concierge.api.gateway import Completion, ToolCall
from concierge.events import EventBus
from concierge.instructions import InstructionStore
from concierge.retrieval.embeddings import EmbeddingError
from concierge.retrieval.index import RetrievalIndex
from concierge.tasks import TaskStore
from concierge.tools.builtin import register_builtin_tools
from concierge.tools.builtin.handlers import ToolServices, wire_builtin_handlers
from concierge.tools.executor import ToolExecutor
from concierge.tools.registry import ToolRegistry

OWNER = "alice@example.com"
OTHER_OWNER = "bob@example.com"


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

class HashEmbedder:
    """
    Bag-of-words embedding: each lower-cased word hashes into one of ``dim``
    buckets. Identical texts embed identically, texts sharing words score
    above zero, and nothing needs to be downloaded.
    """

    def __init__(self, dim: int = 256):
        self.dim = dim
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        vector = [0.0] * self.dim
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


class FailingEmbedder:
    def embed(self, text: str) -> list[float]:
        raise EmbeddingError("embedding service unavailable")


# ---------------------------------------------------------------------------
# Scripted gateway
# ---------------------------------------------------------------------------

def text_reply(content: str) -> Completion:
    return Completion(content=content, stop_reason="end_turn")


def tool_reply(*calls: tuple[str, dict[str, Any]], content: Optional[str] = None) -> Completion:
    return Completion(
        content=content,
        tool_calls=[
            ToolCall(id=f"call_{i}_{name}", name=name, arguments=args)
            for i, (name, args) in enumerate(calls)
        ],
        stop_reason="tool_use",
    )


class ScriptedGateway:
    """
    A fake gateway that returns pre-scripted completions in order.

    Entries may be a ``Completion``, an exception instance (raised), or a
    callable taking the message list and returning either. With
    ``repeat_last`` the final entry is served forever. Every call is recorded
    so tests can inspect exactly what the model was shown.
    """

    def __init__(self, responses: list[Any], repeat_last: bool = False):
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, Any]],
        tools: Optional[list[Any]] = None,
        temperature: float = 0.7,
        model: Optional[str] = None,
    ) -> Completion:
        self.calls.append(
            {
                "messages": [dict(m) for m in messages],
                "tools": [getattr(t, "name", t) for t in tools or []],
                "temperature": temperature,
            }
        )
        if not self._responses:
            raise AssertionError("ScriptedGateway ran out of responses")
        if self._repeat_last and len(self._responses) == 1:
            response = self._responses[0]
        else:
            response = self._responses.pop(0)
        if callable(response) and not isinstance(response, (Completion, BaseException)):
            response = response(messages)
        if isinstance(response, BaseException):
            raise response
        return response

    @property
    def call_count(self) -> int:
        return len(self.calls)


class RecordingBus(EventBus):
    """An EventBus that also keeps every emitted event, for synchronous assertions."""

    def __init__(self) -> None:
        super().__init__()
        self.events: list[Any] = []

    def emit(self, event: Any) -> None:
        self.events.append(event)
        super().emit(event)

    publish = emit

    def of_type(self, event_type: str) -> list[Any]:
        return [e for e in self.events if e.event_type == event_type]


# ---------------------------------------------------------------------------
# Tool layer
# ---------------------------------------------------------------------------

def build_tools(
    tasks: TaskStore,
    instructions: Optional[InstructionStore] = None,
    index: Optional[RetrievalIndex] = None,
    mail: Any = None,
    calendar: Any = None,
    crm: Any = None,
) -> tuple[ToolRegistry, ToolExecutor]:
    registry = ToolRegistry()
    register_builtin_tools(registry)
    wire_builtin_handlers(
        registry,
        ToolServices(
            tasks=tasks,
            instructions=instructions,
            index=index,
            mail=mail,
            calendar=calendar,
            crm=crm,
        ),
    )
    return registry, ToolExecutor(registry, default_timeout=5.0)
