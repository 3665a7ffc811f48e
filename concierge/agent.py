"""
Assistant — where a user message becomes a grounded, tool-using answer.

Every model interaction in the engine goes through one function,
``run_agentic_turn()``: given an owner, a message list, a tool subset and a
temperature, it runs the bounded agentic loop and returns its result. The chat
path and the orchestration paths are just different callers of it.

A chat turn is:

    1. Ground: retrieve the owner's most relevant chunks for the message.
    2. Build: system message (preamble + numbered, sourced snippets) followed
       by the owner's most recent turns, oldest first.
    3. Run: the agentic loop with the full tool set at chat temperature.
    4. Finish: persist exactly one assistant message and publish
       ``turn.completed``, or on failure publish ``turn.failed`` and persist
       nothing.

``submit()`` is fire-and-forget. It records the user's message, starts the
turn in the background and hands back the ``asyncio.Task``; the outcome
arrives on the event bus. Turns for the same owner are not serialized, and
there is no cancellation.

Grounding is best-effort: if retrieval fails the turn proceeds without it.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Optional

import structlog

from concierge.api.gateway import MalformedResponse, ProviderError, ToolCall
from concierge.config import LoopConfig, ModelConfig, RetrievalConfig
from concierge.conversation import ConversationLog
from concierge.events import EventBus, ToolExecutingEvent, TurnCompletedEvent, TurnFailedEvent
from concierge.harness.loop import AgenticLoop, IterationLimitExceeded, LoopResult
from concierge.orchestration.prompts import CHAT_PREAMBLE, render_chat_system
from concierge.retrieval.embeddings import EmbeddingError
from concierge.retrieval.index import RetrievalError, RetrievalIndex, RetrievalResult
from concierge.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

# Failures that end a turn. Everything else a tool can do wrong is already a result.
TURN_ABORTING_ERRORS = (ProviderError, MalformedResponse, IterationLimitExceeded)


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return f"provider_{exc.category}"
    if isinstance(exc, MalformedResponse):
        return "malformed_response"
    if isinstance(exc, IterationLimitExceeded):
        return "iteration_limit"
    return "internal"


class Assistant:
    def __init__(
        self,
        loop: AgenticLoop,
        registry: ToolRegistry,
        conversation: ConversationLog,
        index: Optional[RetrievalIndex] = None,
        event_bus: Optional[EventBus] = None,
        model_config: Optional[ModelConfig] = None,
        loop_config: Optional[LoopConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
        preamble: str = CHAT_PREAMBLE,
    ):
        self._loop = loop
        self._registry = registry
        self._conversation = conversation
        self._index = index
        self._event_bus = event_bus
        self._model_config = model_config or ModelConfig()
        self._loop_config = loop_config or LoopConfig()
        self._retrieval_config = retrieval_config or RetrievalConfig()
        self._preamble = preamble
        self._inflight: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Shared entry point
    # -------------------------------------------------------------------------

    async def run_agentic_turn(
        self,
        owner: str,
        messages: list[dict[str, Any]],
        tool_categories: Optional[list[str]] = None,
        temperature: Optional[float] = None,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Run the bounded loop for ``owner`` with a tool subset; aborting errors propagate."""
        tools = self._registry.definitions(tool_categories)

        def _on_tool_call(call: ToolCall, iteration: int) -> None:
            self._publish(
                ToolExecutingEvent(
                    owner=owner,
                    tool_name=call.name,
                    tool_use_id=call.id,
                    iteration=iteration,
                )
            )

        return await self._loop.run(
            messages,
            owner=owner,
            tools=tools,
            temperature=(
                self._model_config.chat_temperature if temperature is None else temperature
            ),
            max_iterations=max_iterations,
            on_tool_call=_on_tool_call,
        )

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def ground(self, owner: str, text: str) -> list[RetrievalResult]:
        """Top grounding chunks for ``text``; empty when retrieval is unavailable."""
        if self._index is None or self._retrieval_config.context_chunks <= 0:
            return []
        try:
            return await asyncio.to_thread(
                self._index.query, owner, text, self._retrieval_config.context_chunks
            )
        except (EmbeddingError, RetrievalError) as exc:
            logger.warning("assistant.grounding_failed", owner=owner, error=str(exc))
            return []

    def build_chat_messages(
        self, owner: str, grounding: list[RetrievalResult]
    ) -> list[dict[str, Any]]:
        history = self._conversation.recent(owner, self._loop_config.history_window)
        return [
            {"role": "system", "content": render_chat_system(grounding, self._preamble)},
            *(turn.to_message() for turn in history),
        ]

    def submit(self, owner: str, text: str) -> asyncio.Task:
        """Record the user's message and start the turn in the background."""
        self._conversation.append(owner, "user", text)
        turn_id = uuid.uuid4().hex
        task = asyncio.create_task(self.run_turn(owner, text, turn_id=turn_id), name=f"turn-{turn_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        logger.info("assistant.turn_submitted", owner=owner, turn_id=turn_id)
        return task

    async def chat(self, owner: str, text: str) -> Optional[LoopResult]:
        """Submit and wait: the synchronous convenience used by the CLI."""
        return await self.submit(owner, text)

    async def run_turn(
        self, owner: str, text: str, turn_id: Optional[str] = None
    ) -> Optional[LoopResult]:
        """
        Run one chat turn whose user message is already in the log.

        Returns the loop result on success and None on failure; either way
        the outcome is also published on the event bus.
        """
        turn_id = turn_id or uuid.uuid4().hex
        grounding = await self.ground(owner, text)
        messages = self.build_chat_messages(owner, grounding)

        logger.info(
            "assistant.turn_starting",
            owner=owner,
            turn_id=turn_id,
            grounding_chunks=len(grounding),
            history=len(messages) - 1,
        )

        try:
            result = await self.run_agentic_turn(owner, messages)
        except TURN_ABORTING_ERRORS as exc:
            logger.warning(
                "assistant.turn_failed",
                owner=owner,
                turn_id=turn_id,
                error_kind=_error_kind(exc),
                error=str(exc),
            )
            self._publish(
                TurnFailedEvent(
                    owner=owner, turn_id=turn_id, error=str(exc), error_kind=_error_kind(exc)
                )
            )
            return None
        except Exception as exc:
            logger.error(
                "assistant.turn_crashed", owner=owner, turn_id=turn_id, error=str(exc), exc_info=True
            )
            self._publish(
                TurnFailedEvent(owner=owner, turn_id=turn_id, error=str(exc), error_kind="internal")
            )
            return None

        self._conversation.append(owner, "assistant", result.content)
        self._publish(
            TurnCompletedEvent(
                owner=owner,
                turn_id=turn_id,
                content=result.content,
                iterations=result.iterations,
                tool_calls=len(result.tool_calls),
            )
        )
        logger.info(
            "assistant.turn_completed",
            owner=owner,
            turn_id=turn_id,
            iterations=result.iterations,
            tools=result.tool_names_used,
        )
        return result

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _publish(self, event: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event)

    @property
    def inflight_turns(self) -> int:
        return len(self._inflight)
