"""Tests for the workspace tools and their dispatch."""

import pytest

from tools import (
    CATEGORY_DANGEROUS,
    CATEGORY_EDITS,
    CATEGORY_TERMINAL,
    SAFE_TOOLS,
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    execute_tool,
    needs_file_snapshot,
    tool_category,
)


def _run(backend, name, **inputs):
    return execute_tool(name, inputs, working_directory=backend.working_directory, backend=backend)


def test_every_definition_has_an_implementation():
    assert {d["name"] for d in TOOL_DEFINITIONS} == set(TOOL_IMPLEMENTATIONS)
    assert SAFE_TOOLS == {"read_file", "list_directory"}


def test_write_then_read(workspace, backend):
    created = _run(backend, "write_file", path="pkg/mod.py", content="x = 1\ny = 2\n")
    assert created.success
    assert created.output == "Created 2 lines in pkg/mod.py"

    read = _run(backend, "read_file", path="pkg/mod.py")
    assert read.success
    assert read.output.startswith("[2 lines total]")
    assert "     2|y = 2" in read.output


def test_read_with_offset_and_limit(workspace, backend):
    (workspace / "n.txt").write_text("".join(f"line {i}\n" for i in range(1, 11)))

    result = _run(backend, "read_file", path="n.txt", offset=4, limit=2)

    assert "(showing lines 4-5)" in result.output
    assert "line 4" in result.output and "line 6" not in result.output


def test_overwrite_reports_a_diff(workspace, backend):
    (workspace / "a.txt").write_text("old\n")
    result = _run(backend, "write_file", path="a.txt", content="new\n")
    assert result.output.startswith("Wrote 1 lines to a.txt")
    assert "-old" in result.output and "+new" in result.output


def test_edit_requires_a_unique_match(workspace, backend):
    (workspace / "app.ts").write_text("foo(); foo();\n")

    ambiguous = _run(backend, "edit_file", path="app.ts", old_string="foo", new_string="bar")
    assert not ambiguous.success
    assert "2 occurrences" in ambiguous.error

    renamed = _run(backend, "edit_file", path="app.ts", old_string="foo", new_string="bar", replace_all=True)
    assert renamed.success
    assert "(2 replacements)" in renamed.output
    assert (workspace / "app.ts").read_text() == "bar(); bar();\n"


def test_edit_missing_string_and_missing_file(workspace, backend):
    (workspace / "a.txt").write_text("hello\n")
    assert "old_string not found" in _run(backend, "edit_file", path="a.txt",
                                          old_string="nope", new_string="x").error
    assert _run(backend, "edit_file", path="b.txt", old_string="a", new_string="b").error == "File not found: b.txt"
    assert _run(backend, "edit_file", path="a.txt", old_string="", new_string="b").error == "old_string is required"


def test_delete_file(workspace, backend):
    (workspace / "gone.txt").write_text("bye")
    assert _run(backend, "delete_file", path="gone.txt").success
    assert not (workspace / "gone.txt").exists()
    assert not _run(backend, "delete_file", path="gone.txt").success


def test_list_directory(workspace, backend):
    (workspace / "src").mkdir()
    (workspace / "README.md").write_text("# hi\n")

    result = _run(backend, "list_directory")

    assert "  src/" in result.output
    assert "  README.md (5B)" in result.output


def test_paths_cannot_escape_the_workspace(backend):
    result = _run(backend, "write_file", path="../outside.txt", content="x")
    assert not result.success
    assert "escapes working directory" in result.error


def test_unknown_tool_and_bad_arguments(backend):
    assert _run(backend, "format_disk").error == "Unknown tool: format_disk"
    bad = _run(backend, "write_file", path="a.txt")
    assert not bad.success
    assert bad.error.startswith("Invalid arguments for write_file")


def test_run_command(workspace, backend):
    ok = _run(backend, "run_command", command="echo hello")
    assert ok.success
    assert ok.output.strip() == "hello"

    failed = _run(backend, "run_command", command="exit 3")
    assert not failed.success
    assert failed.output.startswith("[exit code: 3]")
    assert _run(backend, "run_command", command="  ").error == "command is required"


@pytest.mark.parametrize("name, category", [
    ("read_file", None),
    ("list_directory", None),
    ("write_file", CATEGORY_EDITS),
    ("edit_file", CATEGORY_EDITS),
    ("delete_file", CATEGORY_DANGEROUS),
    ("run_command", CATEGORY_TERMINAL),
])
def test_tool_categories(name, category):
    assert tool_category(name) == category


def test_needs_file_snapshot():
    assert needs_file_snapshot("edit_file", {"path": "a.py"}) == "a.py"
    assert needs_file_snapshot("edit_file", {"path": "  "}) is None
    assert needs_file_snapshot("write_file", None) is None
    assert needs_file_snapshot("read_file", {"path": "a.py"}) is None
    assert needs_file_snapshot("run_command", {"command": "rm a.py"}) is None


def test_symlinks_cannot_lead_out_of_the_workspace(workspace, backend):
    outside = workspace.parent / "outside"
    outside.mkdir()
    (workspace / "link").symlink_to(outside, target_is_directory=True)

    result = _run(backend, "write_file", path="link/x.txt", content="x")

    assert not result.success
    assert not (outside / "x.txt").exists()


def test_writes_leave_no_temp_files(workspace, backend):
    _run(backend, "write_file", path="a.txt", content="one\n")
    _run(backend, "edit_file", path="a.txt", old_string="one", new_string="two")
    assert sorted(p.name for p in workspace.iterdir()) == ["a.txt"]
