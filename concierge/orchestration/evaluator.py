"""
Instruction evaluation — standing rules checked against new events.

An owner's active instructions and the events that arrived since the last
pass are rendered into one prompt. The model is offered only the task tools:
a match normally becomes a ``create_task`` call, and it may also note the
event on an existing task with ``update_task_status`` or
``update_task_context``. It cannot send mail or touch the calendar or CRM.
When nothing clearly applies it answers in prose and nothing is written.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

import structlog

from concierge.harness.loop import LoopResult
from concierge.instructions import InstructionStore
from concierge.orchestration.prompts import (
    INSTRUCTION_EVALUATOR_SYSTEM_PROMPT,
    render_instruction_prompt,
)
from concierge.tools.registry import CATEGORY_TASKS

if TYPE_CHECKING:
    from concierge.agent import Assistant

logger = structlog.get_logger(__name__)


class InstructionEvaluator:
    def __init__(
        self,
        assistant: Assistant,
        instructions: InstructionStore,
        temperature: float = 0.3,
    ):
        self._assistant = assistant
        self._instructions = instructions
        self._temperature = temperature

    async def evaluate(
        self, owner: str, events: Sequence[dict[str, Any]]
    ) -> Optional[LoopResult]:
        """Evaluate ``events`` against the owner's active rules; None when skipped."""
        if not events:
            return None
        rules = self._instructions.list_instructions(owner, active_only=True)
        if not rules:
            return None

        messages = [
            {"role": "system", "content": INSTRUCTION_EVALUATOR_SYSTEM_PROMPT},
            {"role": "user", "content": render_instruction_prompt(rules, events)},
        ]
        result = await self._assistant.run_agentic_turn(
            owner,
            messages,
            tool_categories=[CATEGORY_TASKS],
            temperature=self._temperature,
        )
        created = [r for r in result.tool_results if r.tool_name == "create_task" and r.success]
        logger.info(
            "instruction_evaluator.evaluated",
            owner=owner,
            instructions=len(rules),
            events=len(events),
            tasks_created=len(created),
        )
        return result
