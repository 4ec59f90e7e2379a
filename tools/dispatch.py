"""Tool execution dispatch and approval category lookup."""

import logging
from typing import Any, Dict, Optional

from backend import Backend
from tools._common import ToolResult
from tools.schemas import TOOL_IMPLEMENTATIONS, TOOL_CATEGORIES, FILE_MUTATING_TOOLS

logger = logging.getLogger(__name__)


def execute_tool(
    name: str,
    inputs: Dict[str, Any],
    working_directory: str = ".",
    backend: Optional[Backend] = None,
) -> ToolResult:
    """Execute a tool by name with the given inputs."""
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if not impl:
        return ToolResult(success=False, output="", error=f"Unknown tool: {name}")
    kwargs = dict(inputs, working_directory=working_directory, backend=backend)
    try:
        return impl(**kwargs)
    except TypeError as e:
        return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}")
    except Exception as e:
        logger.exception(f"Tool execution error: {name}")
        return ToolResult(success=False, output="", error=f"Tool error: {e}")


def tool_category(tool_name: str) -> Optional[str]:
    """Approval category of a tool: edits, terminal, dangerous, or None."""
    return TOOL_CATEGORIES.get(tool_name)


def needs_file_snapshot(tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> Optional[str]:
    """Return the target path a tool is about to mutate, or None.

    Only file-mutating tools that name a non-empty path qualify.
    """
    if tool_name not in FILE_MUTATING_TOOLS:
        return None
    path = (tool_input or {}).get("path")
    if isinstance(path, str) and path.strip():
        return path
    return None
