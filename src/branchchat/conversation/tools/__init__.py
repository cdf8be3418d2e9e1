"""
Built-in tools and the registry that executes them.

Quick-start example::

    from branchchat.conversation.tools import DateTimeTool, ToolRegistry

    registry = ToolRegistry(timeout=10.0)
    registry.register(
        DateTimeTool.TOOL_DEFINITION,
        DateTimeTool().as_handler(),
        display_name=DateTimeTool.DISPLAY_NAME,
    )
"""

from branchchat.conversation.tools.datetime_tool import DateTimeTool
from branchchat.conversation.tools.registry import AsyncToolHandler, ToolExecutor, ToolRegistry


def default_registry(timeout: float | None = 30.0, max_retries: int = 0) -> ToolRegistry:
    """Return a registry holding the built-in tools."""
    registry = ToolRegistry(timeout=timeout, max_retries=max_retries)
    registry.register(
        DateTimeTool.TOOL_DEFINITION,
        DateTimeTool().as_handler(),
        display_name=DateTimeTool.DISPLAY_NAME,
    )
    return registry


__all__ = ["AsyncToolHandler", "DateTimeTool", "ToolExecutor", "ToolRegistry", "default_registry"]
