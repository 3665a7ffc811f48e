"""
The Agentic Loop — one bounded tool-calling run.

The pattern is a while loop with tools:

    while True:
        completion = gateway.complete(messages, tools)
        if not completion.tool_calls:
            return completion.content
        results = execute_all(completion.tool_calls)
        messages += [assistant tool-call message, *tool result messages]

Chat turns, orchestration passes and instruction evaluation all run through
this same loop; they differ only in the messages, the tool subset and the
temperature they pass in.

Within one round every requested tool is executed (concurrently unless
configured otherwise) and all results are collected, in the order the model
asked for them, before the next gateway call. Each completed round counts as
one iteration. When the count reaches the cap the run is abandoned with
``IterationLimitExceeded``; there is no wrap-up call and no partial answer.

Gateway failures (``ProviderError``, ``MalformedResponse``) propagate
unchanged. Tool failures never do: they are already error results.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import structlog

from concierge.api.gateway import Completion, LanguageModelGateway, ToolCall
from concierge.tools.executor import ToolExecutionResult, ToolExecutor

logger = structlog.get_logger(__name__)

ToolCallCallback = Callable[[ToolCall, int], Any]


class IterationLimitExceeded(Exception):
    """The model kept requesting tools until the iteration cap was reached."""

    def __init__(self, iterations: int, tool_calls: int):
        super().__init__(
            f"Iteration limit reached after {iterations} iterations and {tool_calls} tool calls"
        )
        self.iterations = iterations
        self.tool_calls = tool_calls


class LoopResult:
    """The final answer of a loop run plus what it took to get there."""

    def __init__(
        self,
        content: str,
        tool_calls: Optional[list[ToolCall]] = None,
        tool_results: Optional[list[ToolExecutionResult]] = None,
        iterations: int = 0,
        elapsed_seconds: float = 0.0,
        messages: Optional[list[dict[str, Any]]] = None,
    ):
        self.content = content
        self.tool_calls = tool_calls or []
        self.tool_results = tool_results or []
        self.iterations = iterations
        self.elapsed_seconds = elapsed_seconds
        self.messages = messages or []

    @property
    def used_tools(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def tool_names_used(self) -> list[str]:
        return sorted({tc.name for tc in self.tool_calls})


def assistant_tool_call_message(completion: Completion) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": completion.content,
        "tool_calls": [call.to_dict() for call in completion.tool_calls],
    }


class AgenticLoop:
    def __init__(
        self,
        gateway: LanguageModelGateway,
        executor: ToolExecutor,
        max_iterations: int = 10,
        concurrent_tool_calls: bool = True,
    ):
        self._gateway = gateway
        self._executor = executor
        self._max_iterations = max_iterations
        self._concurrent = concurrent_tool_calls

        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0

    async def run(
        self,
        messages: list[dict[str, Any]],
        owner: str,
        tools: Optional[list[Any]] = None,
        temperature: float = 0.7,
        max_iterations: Optional[int] = None,
        on_tool_call: Optional[ToolCallCallback] = None,
    ) -> LoopResult:
        """
        Run the loop to a final answer.

        Args:
            messages: Full message list, system message first
            owner: Tenant every tool call runs for
            tools: Tool definitions offered to the model
            temperature: Sampling temperature for every gateway call
            max_iterations: Per-run cap (None = instance default)
            on_tool_call: Called with (call, iteration) before each execution

        Raises:
            ProviderError, MalformedResponse: from the gateway, unchanged
            IterationLimitExceeded: when the cap is reached
        """
        cap = max_iterations if max_iterations is not None else self._max_iterations
        self._total_runs += 1
        start_time = time.monotonic()
        iteration = 0
        all_calls: list[ToolCall] = []
        all_results: list[ToolExecutionResult] = []
        loop_messages = list(messages)

        logger.info(
            "agentic_loop.starting",
            owner=owner,
            message_count=len(loop_messages),
            tool_count=len(tools) if tools else 0,
            max_iterations=cap,
        )

        while True:
            completion = await self._gateway.complete(
                loop_messages, tools=tools, temperature=temperature
            )

            if not completion.tool_calls:
                content = completion.content or ""
                loop_messages.append({"role": "assistant", "content": content})
                logger.info(
                    "agentic_loop.complete",
                    owner=owner,
                    iterations=iteration,
                    tool_calls=len(all_calls),
                    response_length=len(content),
                )
                return LoopResult(
                    content=content,
                    tool_calls=all_calls,
                    tool_results=all_results,
                    iterations=iteration,
                    elapsed_seconds=time.monotonic() - start_time,
                    messages=loop_messages,
                )

            results = await self._execute_round(completion.tool_calls, owner, iteration + 1, on_tool_call)
            all_calls.extend(completion.tool_calls)
            all_results.extend(results)
            self._total_tool_calls += len(results)

            loop_messages.append(assistant_tool_call_message(completion))
            loop_messages.extend(result.to_message() for result in results)

            iteration += 1
            self._total_iterations += 1
            if iteration >= cap:
                logger.warning(
                    "agentic_loop.max_iterations",
                    owner=owner,
                    max=cap,
                    tool_calls=len(all_calls),
                )
                raise IterationLimitExceeded(iteration, len(all_calls))

    async def _execute_round(
        self,
        calls: list[ToolCall],
        owner: str,
        iteration: int,
        on_tool_call: Optional[ToolCallCallback],
    ) -> list[ToolExecutionResult]:
        for call in calls:
            self._invoke_callback(on_tool_call, call, iteration)

        async def _run(call: ToolCall) -> ToolExecutionResult:
            return await self._executor.execute(
                tool_use_id=call.id,
                tool_name=call.name,
                tool_input=call.arguments,
                owner=owner,
            )

        if self._concurrent and len(calls) > 1:
            return list(await asyncio.gather(*(_run(call) for call in calls)))
        return [await _run(call) for call in calls]

    @staticmethod
    def _invoke_callback(callback: Optional[ToolCallCallback], *args: Any) -> None:
        """Run callback hooks without letting callback failures crash the loop."""
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as callback_error:
            logger.warning("agentic_loop.callback_failed", error=str(callback_error))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
        }
