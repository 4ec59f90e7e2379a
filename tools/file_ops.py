"""File operation tools: read, list, write, edit, delete."""

import difflib
import logging
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult, _require_path, _format_size

logger = logging.getLogger(__name__)


_MAX_FULL_READ_LINES = 500


def _extract_structure(lines: List[str]) -> str:
    """Extract a structural summary from source code: imports, classes, functions."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "function ", "export ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


def read_file(path: str, offset: Optional[int] = None, limit: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.is_file(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")

        lines = b.read_file(path).splitlines(keepends=True)
        total_lines = len(lines)

        if offset is not None or limit is not None:
            start = max((offset or 1) - 1, 0)
            end = start + (limit or total_lines)
            selected = lines[start:end]
            line_start = start + 1
            numbered = [f"{line_start + i:6}|{line.rstrip()}" for i, line in enumerate(selected)]
            header = f"[{total_lines} lines total] (showing lines {line_start}-{line_start + len(selected) - 1})"
            return ToolResult(success=True, output=header + "\n" + "\n".join(numbered))

        if total_lines <= _MAX_FULL_READ_LINES:
            numbered = [f"{i+1:6}|{line.rstrip()}" for i, line in enumerate(lines)]
            return ToolResult(success=True, output=f"[{total_lines} lines total]\n" + "\n".join(numbered))

        # Large file: structural overview + head + tail
        head_n, tail_n = 80, 40
        omitted = total_lines - head_n - tail_n
        head = [f"{i+1:6}|{lines[i].rstrip()}" for i in range(head_n)]
        tail = [f"{total_lines - tail_n + i + 1:6}|{lines[total_lines - tail_n + i].rstrip()}" for i in range(tail_n)]
        parts = [
            f"[{total_lines} lines total; file is large, showing overview + head + tail]",
            "[Use offset/limit to read specific sections]", "",
            "-- structure --", _extract_structure(lines), "",
            f"-- first {head_n} lines --", "\n".join(head),
            f"\n  ... ({omitted} lines omitted, use offset={head_n + 1} limit=N to read more) ...\n",
            f"-- last {tail_n} lines --", "\n".join(tail),
        ]
        return ToolResult(success=True, output="\n".join(parts))
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def list_directory(path: Optional[str] = None,
                   backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """List files and directories at a path."""
    try:
        b = backend or LocalBackend(working_directory)
        target = path or "."
        if not b.is_dir(target):
            return ToolResult(success=False, output="", error=f"Not a directory: {target}")

        lines = []
        for e in b.list_dir(target):
            if e["type"] == "directory":
                lines.append(f"  {e['name']}/")
            else:
                lines.append(f"  {e['name']} ({_format_size(e.get('size', 0))})")

        display = b.resolve_path(target)
        output = f"{display}/\n" + "\n".join(lines) if lines else f"{display}/ (empty)"
        return ToolResult(success=True, output=output)
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for the tool result."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def write_file(path: str, content: str,
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        old_content = b.read_file_or_none(path)
        b.write_file(path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        if old_content is None:
            return ToolResult(success=True, output=f"Created {line_count} lines in {path}")
        summary = f"Wrote {line_count} lines to {path}"
        diff_text = _compact_diff(old_content, content, path)
        if diff_text:
            return ToolResult(success=True, output=f"{summary}\n{diff_text}")
        return ToolResult(success=True, output=summary)
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def edit_file(path: str, old_string: str, new_string: str,
              backend: Optional[Backend] = None, working_directory: str = ".",
              replace_all: bool = False, **kw: Any) -> ToolResult:
    """Replace an exact string in a file. By default must match exactly one location.
    With replace_all=True, replaces every occurrence (useful for renames)."""
    err = _require_path(path)
    if err:
        return err
    if not old_string:
        return ToolResult(success=False, output="", error="old_string is required")
    try:
        b = backend or LocalBackend(working_directory)
        if not b.is_file(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")
        content = b.read_file(path)
        count = content.count(old_string)
        if count == 0:
            return ToolResult(success=False, output="",
                error=f"old_string not found in {path}. Re-read the file to see current content.")
        if count > 1 and not replace_all:
            return ToolResult(success=False, output="",
                error=f"Found {count} occurrences of old_string in {path}. Add more context to make it unique, or set replace_all=true.")
        if replace_all:
            new_content = content.replace(old_string, new_string)
            replaced = count
        else:
            new_content = content.replace(old_string, new_string, 1)
            replaced = 1
        b.write_file(path, new_content)
        diff_text = _compact_diff(content, new_content, path)
        summary = f"Applied edit to {path}" + (f" ({replaced} replacements)" if replaced > 1 else "")
        if diff_text:
            return ToolResult(success=True, output=f"{summary}\n{diff_text}")
        return ToolResult(success=True, output=summary)
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def delete_file(path: str,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Delete a single file."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.is_file(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")
        b.remove_file(path)
        return ToolResult(success=True, output=f"Deleted {path}")
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))
