"""Tests for ToolExecutionGate and ApprovalChannel."""

import asyncio
import threading
import time

import pytest

from orchestrator.checkpoints import CheckpointManager
from orchestrator.errors import ParseError, RejectionError, ToolError, ToolInterruptedError
from orchestrator.gate import (
    ApprovalChannel,
    ApprovalDecision,
    ApprovalPolicy,
    ToolExecutionGate,
    WorkspaceExecutor,
    truncate_result,
)
from orchestrator.messages import (
    REASON_INTERRUPTED,
    REASON_USER,
    CheckpointMessage,
    InterruptedToolMessage,
    ThreadPhase,
    ToolCall,
    ToolCallStatus,
    ToolResultMessage,
)
from tools import ToolResult

from conftest import thread_with_calls


class SpyExecutor(WorkspaceExecutor):
    """Records calls, the number of checkpoints at call time and peak concurrency."""

    def __init__(self, backend, checkpoints=None, delay: float = 0.0):
        super().__init__(backend)
        self.checkpoints = checkpoints
        self.delay = delay
        self.calls = []
        self.checkpoints_seen = []
        self.active = 0
        self.peak = 0
        self.cancelled = False
        self._lock = threading.Lock()

    def execute(self, name, arguments):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            self.calls.append(name)
            if self.checkpoints is not None:
                self.checkpoints_seen.append(len(self.checkpoints))
            if self.delay:
                time.sleep(self.delay)
            return super().execute(name, arguments)
        finally:
            with self._lock:
                self.active -= 1

    def cancel(self):
        self.cancelled = True
        return True


class SlowCheckpoints(CheckpointManager):
    """Checkpoint manager whose file snapshots take a while."""

    def __init__(self, backend, delay: float):
        super().__init__(backend)
        self.delay = delay

    def snapshot_file(self, path):
        time.sleep(self.delay)
        return super().snapshot_file(path)


def _gate(backend, checkpoints, policy=None, **kwargs):
    executor = kwargs.pop("executor", None) or SpyExecutor(backend, checkpoints)
    return ToolExecutionGate(executor, checkpoints, policy=policy or ApprovalPolicy(), **kwargs)


AUTO = ApprovalPolicy(auto_approve_edits=True, auto_approve_terminal=True, auto_approve_dangerous=True)


# ============================================================
# ApprovalChannel
# ============================================================

@pytest.mark.asyncio
async def test_channel_send_without_waiter_is_a_noop():
    channel = ApprovalChannel()
    assert channel.approve() is False
    assert channel.reject() is False
    assert not channel.waiting


@pytest.mark.asyncio
async def test_channel_delivers_exactly_one_decision():
    channel = ApprovalChannel()
    waiter = asyncio.ensure_future(channel.wait())
    await asyncio.sleep(0)

    assert channel.waiting
    assert channel.approve() is True
    assert channel.reject() is False
    assert await waiter == ApprovalDecision.APPROVED
    assert not channel.waiting


@pytest.mark.asyncio
async def test_channel_refuses_a_second_waiter():
    channel = ApprovalChannel()
    channel.open()
    with pytest.raises(RuntimeError):
        channel.open()
    channel.close()


def test_policy_maps_categories():
    policy = ApprovalPolicy(auto_approve_terminal=True)
    assert policy.needs_approval("edits")
    assert not policy.needs_approval("terminal")
    assert policy.needs_approval("dangerous")
    assert not policy.needs_approval(None)


# ============================================================
# Gate
# ============================================================

@pytest.mark.asyncio
async def test_safe_tool_runs_without_approval(workspace, backend, checkpoints, event_log):
    (workspace / "a.py").write_text("print('hi')\n")
    call = ToolCall(id="t1", name="read_file", arguments={"path": "a.py"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, on_event=event_log)

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.SUCCESS
    assert outcome.continues
    assert outcome.error is None
    result = thread.messages[-1]
    assert isinstance(result, ToolResultMessage)
    assert "print('hi')" in result.content
    assert len(checkpoints) == 0
    assert event_log.types == ["tool_running", "tool_result"]
    assert thread.active_tool_call_id is None


@pytest.mark.asyncio
async def test_parse_error_short_circuits_to_tool_error(backend, checkpoints):
    call = ToolCall(id="t1", name="edit_file", raw_arguments='{"path": ', parse_error="bad json")
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints)

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.TOOL_ERROR
    assert outcome.continues
    assert gate.executor.calls == []
    assert thread.messages[-1].is_error
    assert "could not parse" in thread.messages[-1].content
    assert isinstance(outcome.error, ParseError)


@pytest.mark.asyncio
async def test_gated_edit_checkpoints_before_running(workspace, backend, checkpoints, event_log):
    (workspace / "app.ts").write_text("const foo = 1;\n")
    call = ToolCall(id="t1", name="edit_file",
                    arguments={"path": "app.ts", "old_string": "foo", "new_string": "bar"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, on_event=event_log)
    phases = []

    def _approve(event):
        phases.append(thread.state.phase)
        assert thread.pending_approval is call
        gate.channel.approve()

    event_log.on_pending = _approve

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.SUCCESS
    assert phases == [ThreadPhase.AWAITING_APPROVAL]
    assert thread.state.phase == ThreadPhase.EXECUTING_TOOLS
    # The checkpoint existed when the tool body ran
    assert gate.executor.checkpoints_seen == [1]
    snapshot = next(iter(checkpoints.list()[0].snapshots.values()))
    assert snapshot.content == "const foo = 1;\n"
    assert (workspace / "app.ts").read_text() == "const bar = 1;\n"
    assert outcome.checkpoint_id == checkpoints.list()[0].id
    kinds = [m.kind for m in thread.messages[-2:]]
    assert kinds == ["checkpoint", "tool_result"]
    assert event_log.types == ["tool_pending", "tool_running", "checkpoint_created", "tool_result"]


@pytest.mark.asyncio
async def test_rejection_is_reported_to_the_model(workspace, backend, checkpoints, event_log):
    (workspace / "app.ts").write_text("const foo = 1;\n")
    call = ToolCall(id="t1", name="write_file", arguments={"path": "app.ts", "content": "gone"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, on_event=event_log)
    event_log.on_pending = lambda e: gate.channel.reject()

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.REJECTED
    assert call.reason == REASON_USER
    assert isinstance(outcome.error, RejectionError)
    assert not outcome.interrupted
    assert not outcome.continues
    result = thread.messages[-1]
    assert isinstance(result, ToolResultMessage)
    assert result.status == ToolCallStatus.REJECTED
    assert "rejected" in result.content
    assert gate.executor.calls == []
    assert len(checkpoints) == 0
    assert (workspace / "app.ts").read_text() == "const foo = 1;\n"


@pytest.mark.asyncio
async def test_abort_while_awaiting_approval_interrupts(workspace, backend, checkpoints, event_log):
    call = ToolCall(id="t1", name="run_command", arguments={"command": "echo hi"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, on_event=event_log)
    abort = asyncio.Event()
    event_log.on_pending = lambda e: asyncio.get_event_loop().call_later(0.02, abort.set)

    outcome = await gate.run(call, thread, abort)

    assert outcome.interrupted
    assert call.status == ToolCallStatus.REJECTED
    assert call.reason == REASON_INTERRUPTED
    assert isinstance(thread.messages[-1], InterruptedToolMessage)
    assert gate.executor.calls == []
    assert not gate.channel.waiting
    assert isinstance(outcome.error, ToolInterruptedError)


@pytest.mark.asyncio
async def test_already_aborted_call_is_not_executed(backend, checkpoints):
    call = ToolCall(id="t1", name="read_file", arguments={"path": "a.py"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints)
    abort = asyncio.Event()
    abort.set()

    outcome = await gate.run(call, thread, abort)

    assert outcome.interrupted
    assert gate.executor.calls == []


@pytest.mark.asyncio
async def test_abort_right_after_approval_does_not_run_the_tool(workspace, backend, checkpoints, event_log):
    (workspace / "app.ts").write_text("const foo = 1;\n")
    call = ToolCall(id="t1", name="write_file", arguments={"path": "app.ts", "content": "gone"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, on_event=event_log)
    abort = asyncio.Event()

    def _approve_then_abort(event):
        gate.channel.approve()
        abort.set()

    event_log.on_pending = _approve_then_abort

    outcome = await gate.run(call, thread, abort)

    assert outcome.interrupted
    assert call.reason == REASON_INTERRUPTED
    assert isinstance(thread.messages[-1], InterruptedToolMessage)
    assert gate.executor.calls == []
    assert len(checkpoints) == 0
    assert (workspace / "app.ts").read_text() == "const foo = 1;\n"
    assert "tool_running" not in event_log.types


@pytest.mark.asyncio
async def test_abort_during_snapshot_keeps_the_checkpoint_but_skips_the_tool(workspace, backend):
    (workspace / "app.ts").write_text("const foo = 1;\n")
    call = ToolCall(id="t1", name="edit_file",
                    arguments={"path": "app.ts", "old_string": "foo", "new_string": "bar"})
    thread = thread_with_calls([call])
    checkpoints = SlowCheckpoints(backend, delay=0.2)
    gate = _gate(backend, checkpoints, policy=AUTO)
    abort = asyncio.Event()
    asyncio.get_event_loop().call_later(0.05, abort.set)

    outcome = await gate.run(call, thread, abort)

    assert outcome.interrupted
    assert isinstance(outcome.error, ToolInterruptedError)
    assert gate.executor.calls == []
    assert (workspace / "app.ts").read_text() == "const foo = 1;\n"
    assert outcome.checkpoint_id == checkpoints.list()[0].id
    msg = thread.messages[-1]
    assert isinstance(msg, InterruptedToolMessage)
    assert "partially" not in msg.content
    assert thread.active_tool_call_id is None


@pytest.mark.asyncio
async def test_edit_of_a_non_utf8_file_is_refused_before_it_runs(workspace, backend, checkpoints):
    original = b"\x89PNG\r\n\x1a\n\xff\xfe\x00data"
    (workspace / "logo.png").write_bytes(original)
    call = ToolCall(id="t1", name="write_file", arguments={"path": "logo.png", "content": "text"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, policy=AUTO)

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.TOOL_ERROR
    assert outcome.continues
    assert "could not snapshot" in thread.messages[-1].content
    assert gate.executor.calls == []
    assert len(checkpoints) == 0
    assert (workspace / "logo.png").read_bytes() == original


@pytest.mark.asyncio
async def test_abort_during_execution_is_distinct_from_rejection(workspace, backend, checkpoints):
    (workspace / "a.py").write_text("x = 1\n")
    call = ToolCall(id="t1", name="read_file", arguments={"path": "a.py"})
    thread = thread_with_calls([call])
    executor = SpyExecutor(backend, delay=0.2)
    gate = _gate(backend, checkpoints, executor=executor)
    abort = asyncio.Event()
    asyncio.get_event_loop().call_later(0.05, abort.set)

    outcome = await gate.run(call, thread, abort)

    assert executor.calls == ["read_file"]
    assert outcome.interrupted
    assert call.reason == REASON_INTERRUPTED
    msg = thread.messages[-1]
    assert isinstance(msg, InterruptedToolMessage)
    assert "partially" in msg.content


@pytest.mark.asyncio
async def test_tool_failure_becomes_tool_error(workspace, backend, checkpoints):
    (workspace / "app.ts").write_text("const foo = 1;\n")
    call = ToolCall(id="t1", name="edit_file",
                    arguments={"path": "app.ts", "old_string": "missing", "new_string": "x"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, policy=AUTO)

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.TOOL_ERROR
    assert outcome.continues
    assert thread.messages[-1].content.startswith("Error: old_string not found")
    assert isinstance(outcome.error, ToolError)
    # Snapshot was still taken before the attempt
    assert len(checkpoints) == 1


@pytest.mark.asyncio
async def test_tool_timeout_cancels_the_command(workspace, backend, checkpoints):
    (workspace / "a.py").write_text("x = 1\n")
    call = ToolCall(id="t1", name="read_file", arguments={"path": "a.py"})
    thread = thread_with_calls([call])
    executor = SpyExecutor(backend, delay=0.5)
    gate = _gate(backend, checkpoints, executor=executor, tool_timeout=0.05)

    outcome = await gate.run(call, thread, asyncio.Event())

    assert outcome.status == ToolCallStatus.TOOL_ERROR
    assert "timed out" in thread.messages[-1].content
    assert executor.cancelled


@pytest.mark.asyncio
async def test_only_one_tool_runs_at_a_time(workspace, backend, checkpoints):
    for name in ("a.py", "b.py", "c.py"):
        (workspace / name).write_text(name)
    calls = [ToolCall(id=f"t{i}", name="read_file", arguments={"path": p})
             for i, p in enumerate(("a.py", "b.py", "c.py"))]
    thread = thread_with_calls(calls)
    executor = SpyExecutor(backend, delay=0.05)
    gate = _gate(backend, checkpoints, executor=executor)

    outcomes = await asyncio.gather(*(gate.run(c, thread, asyncio.Event()) for c in calls))

    assert executor.peak == 1
    assert all(o.status == ToolCallStatus.SUCCESS for o in outcomes)
    assert thread.active_tool_call_id is None


@pytest.mark.asyncio
async def test_long_results_are_truncated(workspace, backend, checkpoints):
    (workspace / "big.txt").write_text("\n".join(f"line {i}" for i in range(400)))
    call = ToolCall(id="t1", name="read_file", arguments={"path": "big.txt"})
    thread = thread_with_calls([call])
    gate = _gate(backend, checkpoints, max_result_chars=500)

    await gate.run(call, thread, asyncio.Event())

    content = thread.messages[-1].content
    assert "chars truncated" in content
    assert len(content) < 700


def test_truncate_result_keeps_head_and_tail():
    text = "A" * 100 + "B" * 100
    out = truncate_result(text, 60)
    assert out.startswith("A" * 40)
    assert out.endswith("B" * 20)
    assert truncate_result("short", 60) == "short"


def test_workspace_executor_runs_real_tools(workspace, backend):
    executor = WorkspaceExecutor(backend)
    result = executor.execute("write_file", {"path": "n.txt", "content": "hello\n"})
    assert isinstance(result, ToolResult)
    assert result.success
    assert (workspace / "n.txt").read_text() == "hello\n"
    assert executor.root == str(workspace)
