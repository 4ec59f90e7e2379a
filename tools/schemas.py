"""Tool schema definitions (Bedrock/Anthropic Messages API), categories and dispatch maps."""

from typing import Any, Dict, List

from tools.file_ops import read_file, list_directory, write_file, edit_file, delete_file
from tools.external_ops import run_command


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read a file from the workspace. Returns line-numbered content. Large files return a structural overview; use offset/limit to page through them.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (relative to working directory)"},
                "offset": {"type": "integer", "description": "1-based line to start reading from"},
                "limit": {"type": "integer", "description": "Number of lines to read"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "list_directory",
        "description": "List files and directories at a path (default: working directory).",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path (relative to working directory)"},
            },
        },
    },
    {
        "name": "write_file",
        "description": "Create a new file or completely overwrite an existing one. Prefer edit_file for partial changes.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (relative to working directory)"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "edit_file",
        "description": "Replace an exact string in a file. old_string must match exactly one location unless replace_all is true (useful for renames). Read the file first.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (relative to working directory)"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence (default: false)"},
            },
            "required": ["path", "old_string", "new_string"],
        },
    },
    {
        "name": "delete_file",
        "description": "Delete a single file. The file is snapshotted first so the change can be rolled back.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path (relative to working directory)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "run_command",
        "description": "Run a shell command in the working directory. Returns stdout, stderr and the exit code.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to run"},
                "timeout": {"type": "integer", "description": "Timeout in seconds (default: 30)"},
            },
            "required": ["command"],
        },
    },
]


TOOL_IMPLEMENTATIONS = {
    "read_file": read_file,
    "list_directory": list_directory,
    "write_file": write_file,
    "edit_file": edit_file,
    "delete_file": delete_file,
    "run_command": run_command,
}

# Approval categories. Tools absent from this map run without approval.
CATEGORY_EDITS = "edits"
CATEGORY_TERMINAL = "terminal"
CATEGORY_DANGEROUS = "dangerous"

TOOL_CATEGORIES: Dict[str, str] = {
    "write_file": CATEGORY_EDITS,
    "edit_file": CATEGORY_EDITS,
    "delete_file": CATEGORY_DANGEROUS,
    "run_command": CATEGORY_TERMINAL,
}

# Tools that mutate a single named file; snapshotted before they run.
FILE_MUTATING_TOOLS = frozenset({"write_file", "edit_file", "delete_file"})

SAFE_TOOLS = frozenset(name for name in TOOL_IMPLEMENTATIONS if name not in TOOL_CATEGORIES)
