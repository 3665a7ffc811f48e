"""
Handlers for the built-in tools.

``wire_builtin_handlers()`` closes over a ``ToolServices`` bundle and attaches
one handler to each registered definition. Handlers return plain dicts shaped
``{"status": "success", ...}``; anything that goes wrong is raised and becomes
an error result in the executor.

A tool whose backing service is not configured (no CRM client, say) is left
disabled so the model never sees it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

import structlog

from concierge.capabilities import CalendarClient, CrmClient, MailClient
from concierge.instructions import InstructionStore
from concierge.retrieval.index import RetrievalIndex
from concierge.tasks import TaskNotFoundError, TaskStatus, TaskStore
from concierge.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)

EMAIL_BODY_PREVIEW_CHARS = 500


@dataclass
class ToolServices:
    tasks: TaskStore
    instructions: Optional[InstructionStore] = None
    index: Optional[RetrievalIndex] = None
    mail: Optional[MailClient] = None
    calendar: Optional[CalendarClient] = None
    crm: Optional[CrmClient] = None
    default_search_limit: int = 5
    max_results: int = 100


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def format_email(email: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": email.get("id"),
        "subject": email.get("subject"),
        "from": email.get("from"),
        "to": email.get("to"),
        "date": email.get("date"),
        "snippet": email.get("snippet"),
        "body": (email.get("body") or "")[:EMAIL_BODY_PREVIEW_CHARS],
    }


def format_event(event: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": event.get("id"),
        "title": event.get("title"),
        "description": event.get("description"),
        "start_time": event.get("start_time"),
        "end_time": event.get("end_time"),
        "attendees": event.get("attendees") or [],
        "location": event.get("location"),
    }


def wire_builtin_handlers(registry: ToolRegistry, services: ToolServices) -> None:
    """Attach live handlers to every built-in tool definition."""

    def _bind(name: str, handler: Any, available: bool = True) -> None:
        tool = registry.get(name)
        if tool is None:
            return
        tool.handler = handler
        tool.enabled = available

    # ---- retrieval ---------------------------------------------------------

    def handle_search_data(
        owner: str, query: str, source_filter: Optional[str] = None, limit: Optional[int] = None
    ) -> dict[str, Any]:
        k = limit if limit and limit > 0 else services.default_search_limit
        results = services.index.query(owner, query, k, source_filter=source_filter)
        return {
            "status": "success",
            "results": [
                {
                    "content": r.content,
                    "source": r.source,
                    "similarity": round(r.similarity, 3),
                    "timestamp": _iso(r.created_at),
                }
                for r in results
            ],
            "count": len(results),
        }

    _bind("search_data", handle_search_data, services.index is not None)

    # ---- crm ---------------------------------------------------------------

    async def handle_search_contacts(owner: str, query: str) -> dict[str, Any]:
        contacts = await services.crm.search_contacts(owner, query, limit=services.max_results)
        return {"status": "success", "contacts": contacts, "count": len(contacts)}

    async def handle_get_contact_details(owner: str, contact_id: str) -> dict[str, Any]:
        contact = await services.crm.get_contact(owner, contact_id)
        return {"status": "success", "contact": contact}

    async def handle_create_contact(owner: str, **fields: Any) -> dict[str, Any]:
        contact = await services.crm.create_contact(owner, **fields)
        return {"status": "success", "message": "Contact created successfully", "contact": contact}

    async def handle_update_contact(owner: str, contact_id: str, **fields: Any) -> dict[str, Any]:
        contact = await services.crm.update_contact(owner, contact_id, **fields)
        return {"status": "success", "message": "Contact updated successfully", "contact": contact}

    crm_ready = services.crm is not None
    _bind("search_contacts", handle_search_contacts, crm_ready)
    _bind("get_contact_details", handle_get_contact_details, crm_ready)
    _bind("create_contact", handle_create_contact, crm_ready)
    _bind("update_contact", handle_update_contact, crm_ready)

    # ---- mail --------------------------------------------------------------

    async def handle_send_email(owner: str, to: str, subject: str, body: str) -> dict[str, Any]:
        sent = await services.mail.send(owner, to=to, subject=subject, body=body)
        return {"status": "success", "message": "Email sent successfully", "message_id": sent.get("id")}

    async def handle_get_email_details(owner: str, query: str) -> dict[str, Any]:
        emails = await services.mail.search(owner, query=query, limit=services.max_results)
        return {
            "status": "success",
            "emails": [format_email(e) for e in emails],
            "count": len(emails),
        }

    mail_ready = services.mail is not None
    _bind("send_email", handle_send_email, mail_ready)
    _bind("get_email_details", handle_get_email_details, mail_ready)

    # ---- calendar ----------------------------------------------------------

    async def handle_search_calendar(
        owner: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        query: Optional[str] = None,
    ) -> dict[str, Any]:
        events = await services.calendar.search(
            owner, time_min=time_min, time_max=time_max, query=query, limit=services.max_results
        )
        return {"status": "success", "events": [format_event(e) for e in events], "count": len(events)}

    async def handle_create_calendar_event(
        owner: str,
        title: str,
        start_time: str,
        end_time: str,
        description: Optional[str] = None,
        attendees: Optional[list[str]] = None,
        location: Optional[str] = None,
    ) -> dict[str, Any]:
        event = await services.calendar.create_event(
            owner,
            title=title,
            start_time=start_time,
            end_time=end_time,
            description=description,
            attendees=attendees,
            location=location,
        )
        return {
            "status": "success",
            "message": "Calendar event created successfully",
            "event": format_event(event),
        }

    async def handle_find_available_slots(
        owner: str, date: str, duration_minutes: int = 60
    ) -> dict[str, Any]:
        day = _parse_day(date)
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        slots = await services.calendar.find_available_slots(owner, day, duration_minutes)
        return {"status": "success", "date": day.isoformat(), "slots": slots, "count": len(slots)}

    calendar_ready = services.calendar is not None
    _bind("search_calendar", handle_search_calendar, calendar_ready)
    _bind("create_calendar_event", handle_create_calendar_event, calendar_ready)
    _bind("find_available_slots", handle_find_available_slots, calendar_ready)

    # ---- tasks -------------------------------------------------------------

    def handle_create_task(
        owner: str, description: str, context: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        task = services.tasks.create(owner, description, context=context)
        return {"status": "success", "task": task.to_dict()}

    def handle_update_task_status(
        owner: str,
        task_id: str,
        status: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        reopen: bool = False,
    ) -> dict[str, Any]:
        task = services.tasks.update_status(
            owner,
            task_id,
            TaskStatus(status),
            expected_version=expected_version,
            reopen=reopen,
            context_updates={"status_reason": reason} if reason else None,
        )
        return {"status": "success", "task": task.to_dict()}

    def handle_update_task_context(
        owner: str,
        task_id: str,
        context: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> dict[str, Any]:
        task = services.tasks.update_context(
            owner, task_id, context, expected_version=expected_version
        )
        return {"status": "success", "task": task.to_dict()}

    def handle_list_tasks(owner: str, status: Optional[str] = None) -> dict[str, Any]:
        if status:
            tasks = services.tasks.list_by_status(owner, TaskStatus(status))
        else:
            tasks = services.tasks.list_tasks(owner)
        return {"status": "success", "tasks": [t.to_dict() for t in tasks], "count": len(tasks)}

    def handle_get_task(owner: str, task_id: str) -> dict[str, Any]:
        task = services.tasks.get(owner, task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return {"status": "success", "task": task.to_dict()}

    _bind("create_task", handle_create_task)
    _bind("update_task_status", handle_update_task_status)
    _bind("update_task_context", handle_update_task_context)
    _bind("list_tasks", handle_list_tasks)
    _bind("get_task", handle_get_task)

    # ---- instructions ------------------------------------------------------

    def handle_create_instruction(owner: str, description: str) -> dict[str, Any]:
        instruction = services.instructions.create(owner, description)
        return {"status": "success", "instruction": instruction.to_dict()}

    def handle_list_instructions(owner: str, active_only: bool = True) -> dict[str, Any]:
        items = services.instructions.list_instructions(owner, active_only=active_only)
        return {
            "status": "success",
            "instructions": [i.to_dict() for i in items],
            "count": len(items),
        }

    instructions_ready = services.instructions is not None
    _bind("create_instruction", handle_create_instruction, instructions_ready)
    _bind("list_instructions", handle_list_instructions, instructions_ready)

    logger.debug(
        "builtin_tools.wired",
        enabled=[t.name for t in registry.definitions()],
    )


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise ValueError(f"date must be YYYY-MM-DD, got {value!r}") from exc
