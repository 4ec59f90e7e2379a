"""
Tool definitions and implementations for the coding agent.
Each tool has an Anthropic-compatible schema and an implementation function.
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolResult  # noqa: F401
from tools.file_ops import (  # noqa: F401
    read_file,
    list_directory,
    write_file,
    edit_file,
    delete_file,
)
from tools.external_ops import run_command  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    TOOL_CATEGORIES,
    FILE_MUTATING_TOOLS,
    SAFE_TOOLS,
    CATEGORY_EDITS,
    CATEGORY_TERMINAL,
    CATEGORY_DANGEROUS,
)
from tools.dispatch import execute_tool, tool_category, needs_file_snapshot  # noqa: F401
