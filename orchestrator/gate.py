"""
ToolExecutionGate: approval, checkpoint, execution and classification of a
single tool call. Calls pass through strictly one at a time.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from backend import Backend
from config import agent_config
from tools import (
    CATEGORY_DANGEROUS,
    CATEGORY_EDITS,
    CATEGORY_TERMINAL,
    ToolResult,
    execute_tool,
    needs_file_snapshot,
    tool_category,
)

from .checkpoints import CHECKPOINT_TOOL_EDIT, CheckpointManager
from .errors import AgentError, ParseError, RejectionError, ToolError, ToolInterruptedError
from .events import AgentEvent, EventCallback, _noop_event
from .messages import (
    REASON_INTERRUPTED,
    REASON_USER,
    ChatThread,
    CheckpointMessage,
    InterruptedToolMessage,
    ThreadPhase,
    ToolCall,
    ToolCallStatus,
    ToolResultMessage,
)

logger = logging.getLogger(__name__)


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    INTERRUPTED = "interrupted"


class ApprovalChannel:
    """Single-slot rendezvous between the gate and the user.

    The gate opens the slot and blocks on it; approve/reject/interrupt deliver
    one value. A send with nobody waiting, or a second send, is dropped and
    returns False.
    """

    def __init__(self):
        self._future: Optional[asyncio.Future] = None

    @property
    def waiting(self) -> bool:
        return self._future is not None and not self._future.done()

    def open(self) -> asyncio.Future:
        if self.waiting:
            raise RuntimeError("ApprovalChannel already has a waiter")
        self._future = asyncio.get_event_loop().create_future()
        return self._future

    def close(self) -> None:
        self._future = None

    async def wait(self) -> ApprovalDecision:
        fut = self.open()
        try:
            return await fut
        finally:
            self.close()

    def _send(self, decision: ApprovalDecision) -> bool:
        fut = self._future
        if fut is None or fut.done():
            logger.debug(f"Approval signal {decision.value} ignored: nothing pending")
            return False
        fut.set_result(decision)
        return True

    def approve(self) -> bool:
        return self._send(ApprovalDecision.APPROVED)

    def reject(self) -> bool:
        return self._send(ApprovalDecision.REJECTED)

    def interrupt(self) -> bool:
        return self._send(ApprovalDecision.INTERRUPTED)


@dataclass
class ApprovalPolicy:
    """Which tool categories need the user's consent."""
    auto_approve_edits: bool = False
    auto_approve_terminal: bool = False
    auto_approve_dangerous: bool = False

    @classmethod
    def from_config(cls, cfg=agent_config) -> "ApprovalPolicy":
        return cls(
            auto_approve_edits=cfg.auto_approve_edits,
            auto_approve_terminal=cfg.auto_approve_terminal,
            auto_approve_dangerous=cfg.auto_approve_dangerous,
        )

    def needs_approval(self, category: Optional[str]) -> bool:
        if category == CATEGORY_EDITS:
            return not self.auto_approve_edits
        if category == CATEGORY_TERMINAL:
            return not self.auto_approve_terminal
        if category == CATEGORY_DANGEROUS:
            return not self.auto_approve_dangerous
        return False


class WorkspaceExecutor:
    """Adapts the tools package and a Backend to the gate."""

    def __init__(self, backend: Backend):
        self.backend = backend

    @property
    def root(self) -> str:
        return self.backend.working_directory

    def execute(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        return execute_tool(name, arguments, self.backend.working_directory, self.backend)

    def cancel(self) -> bool:
        return self.backend.cancel_running_command()


@dataclass
class ToolOutcome:
    call: ToolCall
    checkpoint_id: Optional[str] = None
    # The failure kind behind a non-success result; reported, never raised
    error: Optional[AgentError] = None

    @property
    def status(self) -> ToolCallStatus:
        return self.call.status

    @property
    def interrupted(self) -> bool:
        return self.call.interrupted

    @property
    def continues(self) -> bool:
        """Whether the model should see this result and react to it."""
        return self.call.status in (ToolCallStatus.SUCCESS, ToolCallStatus.TOOL_ERROR)


def truncate_result(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    head = text[: max_chars * 2 // 3]
    tail = text[-(max_chars // 3):]
    return f"{head}\n\n... [{len(text) - len(head) - len(tail)} chars truncated] ...\n\n{tail}"


class ToolExecutionGate:
    def __init__(
        self,
        executor: WorkspaceExecutor,
        checkpoints: CheckpointManager,
        policy: Optional[ApprovalPolicy] = None,
        channel: Optional[ApprovalChannel] = None,
        on_event: Optional[EventCallback] = None,
        tool_timeout: Optional[float] = None,
        max_result_chars: Optional[int] = None,
    ):
        self.executor = executor
        self.checkpoints = checkpoints
        self.policy = policy or ApprovalPolicy.from_config()
        self.channel = channel or ApprovalChannel()
        self.on_event = on_event or _noop_event
        self.tool_timeout = agent_config.tool_timeout if tool_timeout is None else tool_timeout
        self.max_result_chars = max_result_chars or agent_config.max_tool_result_chars
        self._lock = asyncio.Lock()

    async def run(self, call: ToolCall, thread: ChatThread, abort_event: asyncio.Event) -> ToolOutcome:
        """Take one tool call to a terminal state and append its result message."""
        async with self._lock:
            try:
                return await self._run(call, thread, abort_event)
            finally:
                thread.release_tool_slot(call.id)

    # ------------------------------------------------------------------

    async def _emit(self, etype: str, call: ToolCall, content: str = "", **extra: Any) -> None:
        data = {"tool_call_id": call.id, "name": call.name, "status": call.status.value}
        data.update(extra)
        await self.on_event(AgentEvent(type=etype, content=content, data=data))

    async def _finish_error(self, call: ToolCall, thread: ChatThread, message: str,
                            error_cls=ToolError) -> ToolOutcome:
        call.transition(ToolCallStatus.TOOL_ERROR)
        call.result = message
        thread.append(ToolResultMessage(
            tool_call_id=call.id, tool_name=call.name, content=message, status=ToolCallStatus.TOOL_ERROR,
        ))
        await self._emit("tool_result", call, message)
        return ToolOutcome(call, error=error_cls(message))

    async def _finish_interrupted(self, call: ToolCall, thread: ChatThread, message: str,
                                  checkpoint_id: Optional[str] = None) -> ToolOutcome:
        call.transition(ToolCallStatus.REJECTED)
        call.reason = REASON_INTERRUPTED
        thread.append(InterruptedToolMessage(tool_call_id=call.id, tool_name=call.name, content=message))
        logger.info(f"Tool call {call.id} ({call.name}) interrupted")
        await self._emit("tool_rejected", call, message, reason=REASON_INTERRUPTED)
        return ToolOutcome(call, checkpoint_id=checkpoint_id, error=ToolInterruptedError(message))

    async def _await_decision(self, pending: asyncio.Future, abort_event: asyncio.Event) -> ApprovalDecision:
        abort_task = asyncio.ensure_future(abort_event.wait())
        try:
            await asyncio.wait({pending, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_task.cancel()
        if pending.done():
            return pending.result()
        return ApprovalDecision.INTERRUPTED

    async def _run(self, call: ToolCall, thread: ChatThread, abort_event: asyncio.Event) -> ToolOutcome:
        if call.parse_error:
            return await self._finish_error(
                call, thread,
                f"Error: could not parse the arguments of {call.name}: {call.parse_error}. "
                "Send the call again with a valid JSON object.",
                error_cls=ParseError,
            )

        if abort_event.is_set():
            return await self._finish_interrupted(
                call, thread, f"Not executed: the user interrupted the run before {call.name} started.",
            )

        category = tool_category(call.name)
        if self.policy.needs_approval(category):
            call.transition(ToolCallStatus.TOOL_REQUEST)
            thread.acquire_tool_slot(call.id)
            call.transition(ToolCallStatus.AWAITING_USER)
            thread.state.transition(ThreadPhase.AWAITING_APPROVAL)
            pending = self.channel.open()
            try:
                await self._emit("tool_pending", call, arguments=call.arguments, category=category)
                decision = await self._await_decision(pending, abort_event)
            finally:
                self.channel.close()
                thread.state.transition(ThreadPhase.EXECUTING_TOOLS)
            logger.info(f"Tool call {call.id} ({call.name}): {decision.value}")

            if decision == ApprovalDecision.REJECTED:
                call.transition(ToolCallStatus.REJECTED)
                call.reason = REASON_USER
                message = (f"The user rejected this {call.name} call. Do not retry it unchanged; "
                           "adjust the approach or ask the user how to proceed.")
                call.result = message
                thread.append(ToolResultMessage(
                    tool_call_id=call.id, tool_name=call.name, content=message, status=ToolCallStatus.REJECTED,
                ))
                await self._emit("tool_rejected", call, message, reason=REASON_USER)
                return ToolOutcome(call, error=RejectionError(message))
            # An abort that lands in the same tick as the approval still wins
            if decision == ApprovalDecision.INTERRUPTED or abort_event.is_set():
                return await self._finish_interrupted(
                    call, thread, f"Not executed: the user interrupted the run while {call.name} awaited approval.",
                )

        thread.acquire_tool_slot(call.id)
        call.transition(ToolCallStatus.RUNNING_NOW)
        await self._emit("tool_running", call, arguments=call.arguments)
        loop = asyncio.get_event_loop()

        checkpoint_id = None
        path = needs_file_snapshot(call.name, call.arguments)
        if path:
            try:
                snapshot = await loop.run_in_executor(None, self.checkpoints.snapshot_file, path)
            except Exception as e:
                logger.warning(f"Snapshot of {path} failed, not running {call.name}: {e}")
                return await self._finish_error(call, thread, f"Error: could not snapshot {path} before editing: {e}")
            checkpoint = self.checkpoints.create(
                CHECKPOINT_TOOL_EDIT, f"Before {call.name} {path}", [snapshot], message_id=call.id,
            )
            checkpoint_id = checkpoint.id
            thread.append(CheckpointMessage(
                checkpoint_id=checkpoint.id, checkpoint_kind=checkpoint.kind, description=checkpoint.description,
            ))
            await self._emit("checkpoint_created", call, checkpoint.description,
                             checkpoint_id=checkpoint.id, path=snapshot.path)

        if abort_event.is_set():
            return await self._finish_interrupted(
                call, thread, f"Not executed: the user interrupted the run before {call.name} started.",
                checkpoint_id=checkpoint_id,
            )

        try:
            work = loop.run_in_executor(None, self.executor.execute, call.name, call.arguments)
            if self.tool_timeout and self.tool_timeout > 0:
                result = await asyncio.wait_for(work, timeout=self.tool_timeout)
            else:
                result = await work
        except asyncio.TimeoutError:
            self.executor.cancel()
            result = ToolResult(success=False, output="", error=f"{call.name} timed out after {self.tool_timeout:g}s")
        except Exception as e:
            logger.exception(f"Tool execution error: {call.name}")
            result = ToolResult(success=False, output="", error=str(e))

        if abort_event.is_set():
            call.result = result.output if result.success else (result.error or "")
            return await self._finish_interrupted(
                call, thread,
                f"Interrupted by the user while {call.name} was running. It may have partially "
                "completed; check the current state before relying on it.",
                checkpoint_id=checkpoint_id,
            )

        if not result.success:
            text = f"Error: {result.error or 'tool failed'}"
            if result.output:
                text += f"\n{result.output}"
            outcome = await self._finish_error(call, thread, truncate_result(text, self.max_result_chars))
            outcome.checkpoint_id = checkpoint_id
            return outcome

        call.transition(ToolCallStatus.SUCCESS)
        content = truncate_result(result.output or "(no output)", self.max_result_chars)
        call.result = content
        thread.append(ToolResultMessage(
            tool_call_id=call.id, tool_name=call.name, content=content, status=ToolCallStatus.SUCCESS,
        ))
        await self._emit("tool_result", call, content)
        return ToolOutcome(call, checkpoint_id=checkpoint_id)
