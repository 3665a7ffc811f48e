"""
Prompt rendering for every model call the engine makes.

Three prompts live here: the chat system message with its grounding block,
the orchestration directive that resumes tasks, and the instruction
evaluation prompt that decides whether a standing rule has fired. They are
plain functions over plain data so they can be tested without a model.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Sequence

from concierge.instructions import Instruction
from concierge.retrieval.index import RetrievalResult
from concierge.tasks import Task

EMAIL_BODY_PROMPT_CHARS = 500

CHAT_PREAMBLE = (
    "You are a helpful assistant for a busy professional. You have access to the "
    "user's emails, contacts and calendar through tools, and to a search over their "
    "indexed data.\n\n"
    "Be helpful, professional and accurate. When you use information from the "
    "user's data, say where it came from (email, contact, calendar). Use tools to "
    "look things up, send email, schedule meetings and manage contacts. When "
    "something cannot be finished now, for example because you need to wait for a "
    "reply, create a task so it is picked up later. When the user states a rule "
    "they want followed from now on, save it as an instruction."
)

ORCHESTRATOR_SYSTEM_PROMPT = """\
You are the task orchestrator for an AI assistant. Your job is to move forward \
tasks that could not be completed immediately.

Tools available include update_task_status, update_task_context, send_email, \
create_calendar_event, find_available_slots, the search tools and the rest of the \
assistant's tools.

Task completion rules:
1. Mark a task "completed" as soon as its objective is achieved.
2. If a task says "Email John about the meeting" and you send that email, it is completed.
3. If a task says "Schedule a meeting with Sarah" and you create the event, it is completed.
4. Never leave successfully executed work "in_progress".
5. Record what you did with update_task_context before changing the status.

Statuses:
- "in_progress": there is a next step you can take
- "waiting": blocked on something external, such as an email reply
- "completed": the objective has been fully achieved
- "failed": the task cannot be done

Be decisive. If the work is done, mark it done."""

INSTRUCTION_EVALUATOR_SYSTEM_PROMPT = """\
You check new events against the user's standing instructions.

For each event, decide whether any instruction clearly applies to it. Only when \
an instruction clearly matches, call create_task once for that event with a \
description of the action the instruction asks for and a context naming the \
instruction and the event. If nothing clearly matches, do not call any tool and \
reply "No instructions matched." Never create a task for a vague or partial match."""


def render_grounding(results: Sequence[RetrievalResult]) -> str:
    """Numbered, sourced snippets: ``1. [mail] text (similarity: 0.912)``."""
    return "\n".join(
        f"{i}. [{r.source}] {r.content} (similarity: {round(r.similarity, 3)})"
        for i, r in enumerate(results, start=1)
    )


def render_chat_system(results: Sequence[RetrievalResult], preamble: str = CHAT_PREAMBLE) -> str:
    if not results:
        return preamble
    return f"{preamble}\n\nRelevant context from the user's data:\n{render_grounding(results)}"


def _format_task(task: Task) -> str:
    line = f"- Task {task.task_id}: {task.description} ({task.status.value}, version {task.version})"
    if task.context:
        line += f"\n  context: {json.dumps(task.context, sort_keys=True)}"
    return line


def format_tasks(tasks: Sequence[Task]) -> str:
    if not tasks:
        return "No tasks"
    return "\n".join(_format_task(t) for t in tasks)


def format_emails(emails: Sequence[dict[str, Any]]) -> str:
    if not emails:
        return "No new emails"
    blocks = []
    for email in emails:
        body = (email.get("body") or "")[:EMAIL_BODY_PROMPT_CHARS].strip()
        block = f"- From: {email.get('from', '')}, Subject: {email.get('subject', '')}"
        if body:
            block += f"\n  {body}"
        blocks.append(block)
    return "\n".join(blocks)


def render_orchestration_prompt(
    now: datetime,
    active_tasks: Sequence[Task],
    waiting_tasks: Sequence[Task],
    new_emails: Sequence[dict[str, Any]],
    lookback_minutes: float = 15,
) -> str:
    return f"""\
Current time: {now.isoformat()}

Active tasks (in progress):
{format_tasks(active_tasks)}

Waiting tasks:
{format_tasks(waiting_tasks)}

New emails received in the last {lookback_minutes:g} minutes:
{format_emails(new_emails)}

Review each task and decide its current state:

1. ACTIVE tasks: check whether they are actually finished.
   - If the objective has been met, call update_task_status with "completed".
   - If work is still needed, take the next step.
   - If it now depends on an outside response, set it to "waiting".

2. WAITING tasks: check whether they can proceed.
   - Look for new emails that answer a waiting task.
   - If a relevant response arrived, resume the task and act on it.
   - Otherwise leave it "waiting".

3. Always keep statuses accurate:
   - Use update_task_context to record what was accomplished.
   - Use update_task_status with "completed" once the objective is fully met.

A task is "completed" as soon as its description is fulfilled."""


def render_instruction_prompt(
    instructions: Sequence[Instruction],
    events: Sequence[dict[str, Any]],
) -> str:
    rules = "\n".join(
        f"{i}. [{ins.instruction_id}] {ins.description}"
        for i, ins in enumerate(instructions, start=1)
    )
    return f"""\
Standing instructions:
{rules}

New events:
{format_emails(events)}

For each event, create a task only if one of the instructions clearly applies."""
