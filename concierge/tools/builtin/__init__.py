"""
Built-in Tools — the engine's native capabilities.

Three families ship with the engine:

  - capability tools, which wrap one call to the retrieval index or to the
    mail, calendar or CRM clients;
  - task tools, which are the only way a task is created or mutated;
  - instruction tools, which let an owner leave standing rules from chat.

``register_builtin_tools()`` adds the definitions to a ToolRegistry with no
handlers attached. ``wire_builtin_handlers()`` (in ``handlers``) binds them
to live services once those exist, so the schemas can be inspected and
tested without any I/O.
"""

from __future__ import annotations

from concierge.tools.registry import (
    CATEGORY_CALENDAR,
    CATEGORY_CRM,
    CATEGORY_INSTRUCTIONS,
    CATEGORY_MAIL,
    CATEGORY_RETRIEVAL,
    CATEGORY_TASKS,
    ToolDefinition,
    ToolRegistry,
)

TASK_STATUSES = ["in_progress", "waiting", "completed", "failed"]
SOURCES = ["mail", "crm", "calendar"]

_CONTACT_FIELDS = {
    "email": {"type": "string", "description": "Contact email address"},
    "first_name": {"type": "string", "description": "Contact first name"},
    "last_name": {"type": "string", "description": "Contact last name"},
    "company": {"type": "string", "description": "Contact company name"},
    "phone": {"type": "string", "description": "Contact phone number"},
    "job_title": {"type": "string", "description": "Contact job title"},
}


def register_builtin_tools(registry: ToolRegistry) -> None:
    """Register all built-in tool definitions with the registry."""
    _register_capability_tools(registry)
    _register_task_tools(registry)
    _register_instruction_tools(registry)


def _register_capability_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="search_data",
            description=(
                "Semantic search over the user's own indexed content: emails, CRM contacts "
                "and calendar events. Use this first whenever the question is about people, "
                "conversations or plans the user has been involved in."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query to find relevant information",
                    },
                    "source_filter": {
                        "type": "string",
                        "enum": SOURCES,
                        "description": "Optional filter to search only one content source",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of results to return (default: 5)",
                    },
                },
                "required": ["query"],
            },
            category=CATEGORY_RETRIEVAL,
        )
    )

    registry.register(
        ToolDefinition(
            name="search_contacts",
            description="Search the CRM for contacts by name, email or company.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Search term for finding contacts (name, email, company)",
                    },
                },
                "required": ["query"],
            },
            category=CATEGORY_CRM,
        )
    )

    registry.register(
        ToolDefinition(
            name="get_contact_details",
            description="Get every stored field of one CRM contact by its id.",
            input_schema={
                "type": "object",
                "properties": {
                    "contact_id": {"type": "string", "description": "CRM contact id"},
                },
                "required": ["contact_id"],
            },
            category=CATEGORY_CRM,
        )
    )

    registry.register(
        ToolDefinition(
            name="create_contact",
            description=(
                "Create a new CRM contact. Search first so you do not create a duplicate "
                "of someone who is already there."
            ),
            input_schema={
                "type": "object",
                "properties": dict(_CONTACT_FIELDS),
                "required": ["email"],
            },
            category=CATEGORY_CRM,
        )
    )

    registry.register(
        ToolDefinition(
            name="update_contact",
            description="Update fields on an existing CRM contact. Only the fields you pass change.",
            input_schema={
                "type": "object",
                "properties": {
                    "contact_id": {"type": "string", "description": "CRM contact id"},
                    **_CONTACT_FIELDS,
                },
                "required": ["contact_id"],
            },
            category=CATEGORY_CRM,
        )
    )

    registry.register(
        ToolDefinition(
            name="send_email",
            description=(
                "Send an email from the user's mailbox. This really sends; only call it when "
                "the user asked for the message or a task clearly requires it."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "to": {"type": "string", "description": "Recipient email address"},
                    "subject": {"type": "string", "description": "Email subject line"},
                    "body": {"type": "string", "description": "Plain-text email body"},
                },
                "required": ["to", "subject", "body"],
            },
            category=CATEGORY_MAIL,
        )
    )

    registry.register(
        ToolDefinition(
            name="get_email_details",
            description=(
                "Fetch emails matching a mailbox search query (for example "
                "'from:sam@example.com' or 'subject:invoice'). Bodies are truncated."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Mailbox search query"},
                },
                "required": ["query"],
            },
            category=CATEGORY_MAIL,
        )
    )

    registry.register(
        ToolDefinition(
            name="search_calendar",
            description=(
                "List calendar events, optionally within a time range and filtered by text "
                "in the title or description."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "time_min": {
                        "type": "string",
                        "description": "Range start, ISO 8601 (optional)",
                    },
                    "time_max": {
                        "type": "string",
                        "description": "Range end, ISO 8601 (optional)",
                    },
                    "query": {
                        "type": "string",
                        "description": "Text to look for in event titles and descriptions (optional)",
                    },
                },
                "required": [],
            },
            category=CATEGORY_CALENDAR,
        )
    )

    registry.register(
        ToolDefinition(
            name="create_calendar_event",
            description="Create a calendar event, inviting attendees by email if given.",
            input_schema={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Event title"},
                    "description": {"type": "string", "description": "Event description (optional)"},
                    "start_time": {"type": "string", "description": "Start time, ISO 8601"},
                    "end_time": {"type": "string", "description": "End time, ISO 8601"},
                    "attendees": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Attendee email addresses (optional)",
                    },
                    "location": {"type": "string", "description": "Event location (optional)"},
                },
                "required": ["title", "start_time", "end_time"],
            },
            category=CATEGORY_CALENDAR,
        )
    )

    registry.register(
        ToolDefinition(
            name="find_available_slots",
            description=(
                "Find free start times between 09:00 and 17:00 UTC on a given day for a "
                "meeting of the given length. Use before proposing or booking a meeting."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "Day to check, YYYY-MM-DD"},
                    "duration_minutes": {
                        "type": "integer",
                        "description": "Meeting length in minutes (default 60)",
                    },
                },
                "required": ["date"],
            },
            category=CATEGORY_CALENDAR,
        )
    )


def _register_task_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="create_task",
            description=(
                "Record work that cannot be finished right now, such as waiting for a reply "
                "or acting at a later time. The task will be revisited automatically. Put "
                "everything a later pass needs to continue into the context."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "description": {
                        "type": "string",
                        "description": "What needs to be achieved, stated as the goal",
                    },
                    "context": {
                        "type": "object",
                        "description": "Initial notes: who is involved, what has been done so far",
                    },
                },
                "required": ["description"],
            },
            category=CATEGORY_TASKS,
        )
    )

    registry.register(
        ToolDefinition(
            name="update_task_status",
            description=(
                "Move a task to a new status: 'completed' when its goal is met, 'waiting' "
                "when it needs an outside event such as a reply, 'in_progress' when there is "
                "a next step to take, 'failed' when it cannot be done. Give a short reason."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Id of the task"},
                    "status": {"type": "string", "enum": TASK_STATUSES},
                    "reason": {
                        "type": "string",
                        "description": "Why the status is changing (kept in the task context)",
                    },
                    "expected_version": {
                        "type": "integer",
                        "description": "Only apply if the task is still at this version (optional)",
                    },
                    "reopen": {
                        "type": "boolean",
                        "description": (
                            "Set true to move a completed or failed task back to "
                            "in_progress or waiting"
                        ),
                    },
                },
                "required": ["task_id", "status"],
            },
            category=CATEGORY_TASKS,
        )
    )

    registry.register(
        ToolDefinition(
            name="update_task_context",
            description=(
                "Merge notes into a task's context. Keys you pass overwrite keys with the same "
                "name; nested objects are merged; everything else is kept."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Id of the task"},
                    "context": {"type": "object", "description": "Keys to merge into the context"},
                    "expected_version": {
                        "type": "integer",
                        "description": "Only apply if the task is still at this version (optional)",
                    },
                },
                "required": ["task_id", "context"],
            },
            category=CATEGORY_TASKS,
        )
    )

    registry.register(
        ToolDefinition(
            name="list_tasks",
            description="List the user's tasks, optionally only those with one status.",
            input_schema={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": TASK_STATUSES},
                },
                "required": [],
            },
            category=CATEGORY_TASKS,
        )
    )

    registry.register(
        ToolDefinition(
            name="get_task",
            description="Get one task with its full context.",
            input_schema={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string", "description": "Id of the task"},
                },
                "required": ["task_id"],
            },
            category=CATEGORY_TASKS,
        )
    )


def _register_instruction_tools(registry: ToolRegistry) -> None:
    registry.register(
        ToolDefinition(
            name="create_instruction",
            description=(
                "Save a standing rule the user wants followed from now on, e.g. 'when someone "
                "emails me who is not in the CRM, add them'. New events are checked against "
                "active rules automatically."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "description": {"type": "string", "description": "The rule, in plain language"},
                },
                "required": ["description"],
            },
            category=CATEGORY_INSTRUCTIONS,
        )
    )

    registry.register(
        ToolDefinition(
            name="list_instructions",
            description="List the user's standing rules.",
            input_schema={
                "type": "object",
                "properties": {
                    "active_only": {
                        "type": "boolean",
                        "description": "Only rules that are switched on (default true)",
                    },
                },
                "required": [],
            },
            category=CATEGORY_INSTRUCTIONS,
        )
    )
