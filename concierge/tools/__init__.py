"""Tool system — the assistant's hands in the world."""
from concierge.tools.executor import ToolExecutionResult, ToolExecutor
from concierge.tools.registry import ToolDefinition, ToolRegistry

__all__ = ["ToolRegistry", "ToolDefinition", "ToolExecutor", "ToolExecutionResult"]
