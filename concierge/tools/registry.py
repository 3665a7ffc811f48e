"""
Tool Registry — the fixed table of named capabilities.

Every tool the model may call is registered here with a JSON Schema for its
arguments, a description, and the handler that performs it. The registry
serves two purposes:

1. DISCOVERY: the conversation loop asks for ``definitions()`` (optionally
   narrowed to some categories) and hands them to the gateway, which puts
   them in the request's ``tools`` array.

2. DISPATCH: when the model returns a tool call, the executor looks the name
   up here. Lookup is by exact name; there is no fuzzy matching.

Tool descriptions are prompts. They tell the model not just what a tool does
but when it should reach for it, so they are written with that reader in mind.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

CATEGORY_RETRIEVAL = "retrieval"
CATEGORY_MAIL = "mail"
CATEGORY_CALENDAR = "calendar"
CATEGORY_CRM = "crm"
CATEGORY_TASKS = "tasks"
CATEGORY_INSTRUCTIONS = "instructions"


@dataclass
class ToolDefinition:
    """
    A registered tool with its schema, description, and handler.

    Handlers are called as ``handler(owner=..., **arguments)`` and may be
    plain functions or coroutines. Whatever they return is serialized to
    text before it goes back to the model.
    """
    name: str
    description: str
    input_schema: dict[str, Any]          # JSON Schema for tool parameters
    handler: Optional[Callable] = None
    category: str = "general"
    enabled: bool = True
    timeout: Optional[float] = None       # Per-tool timeout in seconds (None = use default)

    def to_api_format(self) -> dict[str, Any]:
        """The exact shape that goes into the request's ``tools`` array."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Central registry for every tool the engine exposes to the model."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        existing = self._tools.get(tool.name)
        if existing is not None and not allow_override:
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._tools[tool.name] = tool
        logger.debug("tool_registry.registered", name=tool.name, category=tool.category)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            logger.info("tool_registry.unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def definitions(self, categories: Optional[list[str]] = None) -> list[ToolDefinition]:
        """Enabled tools in registration order, optionally narrowed to some categories."""
        return [
            tool
            for tool in self._tools.values()
            if tool.enabled and (not categories or tool.category in categories)
        ]

    def get_api_tools(self, categories: Optional[list[str]] = None) -> list[dict[str, Any]]:
        return [tool.to_api_format() for tool in self.definitions(categories)]

    def get_handler(self, tool_name: str) -> Optional[Callable]:
        tool = self._tools.get(tool_name)
        if tool and tool.handler:
            return tool.handler
        return None

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": tool.name, "category": tool.category, "enabled": tool.enabled}
            for tool in self._tools.values()
        ]

    @property
    def count(self) -> int:
        return len(self._tools)
