"""Read-only tools the orchestrator can call."""

from recurwatch.queries.executor import ToolExecutor, ToolResult

__all__ = ["ToolExecutor", "ToolResult"]
