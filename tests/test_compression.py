"""Tests for ContextCompressor: levels, monotone reporting, compressed views, handoff."""

import pytest

from orchestrator.compression import (
    LEVEL_DEEP,
    LEVEL_FULL,
    LEVEL_HANDOFF,
    LEVEL_SLIDING_WINDOW,
    LEVEL_TRUNCATE,
    ContextCompressor,
    HandoffDocument,
    TokenEstimator,
    extract_pending_steps,
)
from orchestrator.errors import HandoffConsumedError
from orchestrator.messages import AssistantMessage, ChatThread, ToolResultMessage, UserMessage

from conftest import add_tool_turn


def _long_thread(turns: int, result_chars: int = 6000) -> ChatThread:
    thread = ChatThread()
    for i in range(turns):
        add_tool_turn(
            thread,
            f"Step {i}: update module {i} so the parser handles trailing commas.",
            f"toolu_{i}",
            "edit_file" if i % 2 else "read_file",
            {"path": f"src/mod{i}.py", "old_string": "a", "new_string": "b"},
            f"result {i} " + "x" * result_chars,
            reply=f"Done with step {i}.",
        )
    return thread


def test_level_thresholds():
    c = ContextCompressor()
    assert c.level_for_ratio(0.0) == LEVEL_FULL
    assert c.level_for_ratio(0.49) == LEVEL_FULL
    assert c.level_for_ratio(0.5) == LEVEL_TRUNCATE
    assert c.level_for_ratio(0.7) == LEVEL_SLIDING_WINDOW
    assert c.level_for_ratio(0.85) == LEVEL_DEEP
    assert c.level_for_ratio(0.99) == LEVEL_DEEP
    assert c.level_for_ratio(1.0) == LEVEL_HANDOFF


def test_reported_level_never_decreases_until_reset():
    c = ContextCompressor()
    limit = 1000
    usage = [100, 550, 750, 900, 600, 300, 50]

    levels = [c.evaluate(tokens, limit).level for tokens in usage]

    assert levels == [0, 1, 2, 3, 3, 3, 3]
    c.reset()
    assert c.evaluate(50, limit).level == LEVEL_FULL


def test_restore_resumes_a_persisted_level():
    c = ContextCompressor()
    stats = c.evaluate(800, 1000)
    fresh = ContextCompressor()
    fresh.restore(stats)
    assert fresh.evaluate(10, 1000).level == LEVEL_SLIDING_WINDOW


def test_estimate_grows_with_conversation_size():
    est = TokenEstimator()
    short = _long_thread(2, result_chars=100).messages
    longer = _long_thread(4, result_chars=100).messages
    assert 0 < est.estimate_messages(short) < est.estimate_messages(longer)


def test_truncate_level_shortens_only_old_tool_results():
    thread = _long_thread(6)
    c = ContextCompressor(keep_recent_turns=2, truncate_chars=300)

    view, kept, compacted = c.compress(thread.messages, LEVEL_TRUNCATE)

    results = [m for m in view if isinstance(m, ToolResultMessage)]
    assert all(len(r.content) < 400 for r in results[:4])
    assert all("chars truncated" in r.content for r in results[:4])
    assert all(len(r.content) > 6000 for r in results[4:])
    assert compacted == 4
    # The thread itself is never modified
    assert all(len(m.content) > 6000 for m in thread.tool_results())


def test_sliding_window_level_replaces_old_results_with_markers():
    thread = _long_thread(6)
    c = ContextCompressor(keep_recent_turns=2)

    view, _, _ = c.compress(thread.messages, LEVEL_SLIDING_WINDOW)

    results = [m for m in view if isinstance(m, ToolResultMessage)]
    assert results[0].content.startswith("[read_file result omitted")
    assert results[-1].content.startswith("result 5")
    # User and assistant text survives
    assert len([m for m in view if isinstance(m, UserMessage)]) == 6
    assert len(view) == len(thread.messages)


def test_deep_level_summarises_old_turns():
    thread = _long_thread(6)
    c = ContextCompressor(deep_keep_turns=2)

    view, kept, compacted = c.compress(thread.messages, LEVEL_DEEP)

    summary = view[0]
    assert isinstance(summary, UserMessage)
    assert summary.text.startswith("[Summary of 4 earlier turns]")
    assert "Objective: Step 0: update module 0" in summary.text
    assert "Modified file: src/mod1.py" in summary.text
    assert (kept, compacted) == (2, 4)
    assert isinstance(view[1], UserMessage) and view[1].text.startswith("Step 4")


def test_prepare_escalates_until_the_view_fits():
    thread = _long_thread(8)
    c = ContextCompressor(keep_recent_turns=2, deep_keep_turns=1)
    full = c.estimator.estimate_messages(thread.messages)

    view, stats = c.prepare(thread.messages, context_limit=int(full * 1.2))

    assert LEVEL_TRUNCATE <= stats.level < LEVEL_HANDOFF
    assert stats.saved_percent > 0
    assert stats.input_tokens < full
    assert not stats.needs_handoff


def test_prepare_reports_handoff_when_even_deep_compression_does_not_fit():
    thread = _long_thread(4)
    c = ContextCompressor()

    _, stats = c.prepare(thread.messages, context_limit=50)

    assert stats.level == LEVEL_HANDOFF
    assert stats.needs_handoff


def test_build_handoff_document():
    thread = ChatThread()
    add_tool_turn(thread, "Rename foo to bar across the project. Keep tests green.", "toolu_1",
                  "edit_file", {"path": "app.ts", "old_string": "foo", "new_string": "bar"}, "Applied edit")
    thread.append(AssistantMessage(
        text="Next:\n1. Update the README examples\n2. Run the full test suite again",
        finalized=True,
    ))

    doc = ContextCompressor().build_handoff(thread, "/work/project")

    assert doc.objective == "Rename foo to bar across the project."
    assert doc.file_changes == [{"path": "app.ts", "action": "edit"}]
    assert doc.completed_steps == ["Modified file: app.ts"]
    assert "Update the README examples" in doc.pending_steps
    assert doc.from_thread_id == thread.id
    assert doc.workspace_root == "/work/project"
    prompt = doc.to_prompt()
    assert "[EDIT] app.ts" in prompt
    assert "Rename foo to bar" in prompt


def test_handoff_can_be_consumed_once():
    doc = HandoffDocument(objective="x", from_thread_id="t1")
    doc.consume()
    with pytest.raises(HandoffConsumedError):
        doc.consume()

    copy = HandoffDocument.from_dict(doc.to_dict())
    assert copy.consumed


def test_extract_pending_steps_ignores_short_items():
    text = "- ok\n- Write the migration for the users table\n* Add an index on email"
    assert extract_pending_steps(text) == ["Write the migration for the users table", "Add an index on email"]
