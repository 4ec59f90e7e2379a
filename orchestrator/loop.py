"""
AgentLoop: drives one user message through stream -> tools -> stream until
the model stops calling tools, the user aborts, or the iteration budget runs
out.

Flow per send_user_message():
1. Mark the turn with an (empty) user_message checkpoint, append the message
2. Each iteration: build the outbound window, compress it (or hand off),
   stream one model response, then run its tool calls one by one through
   the gate
3. Keep going while at least one tool call produced output the model should
   react to; stop on rejection, interruption, transport error or the limit
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from config import agent_config

from .checkpoints import CHECKPOINT_USER_MESSAGE, CheckpointManager
from .compression import LEVEL_NAMES, ContextCompressor
from .errors import AgentError, LimitExceededError, StreamCancelledError, ThreadFrozenError, TransportError
from .events import AgentEvent, EventCallback, _noop_event
from .gate import ToolExecutionGate, ToolOutcome
from .history import build_window, request_overhead_text, to_api_messages
from .messages import (
    AssistantMessage,
    ChatThread,
    CheckpointMessage,
    ThreadPhase,
    UserMessage,
)
from .stream import LLMRequest, StreamCoordinator, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 200_000


class AgentLoop:
    """Bounded tool-use loop over one ChatThread.

    All collaborators are passed in; nothing here reads global state beyond
    the defaults taken from ``agent_config``. When ``on_event`` is given it
    is also installed on the gate, so one callback observes the whole run.
    """

    def __init__(
        self,
        thread: ChatThread,
        coordinator: StreamCoordinator,
        gate: ToolExecutionGate,
        compressor: Optional[ContextCompressor] = None,
        checkpoints: Optional[CheckpointManager] = None,
        workspace_root: Optional[str] = None,
        system_prompt: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        max_loops: Optional[int] = None,
        max_history_messages: Optional[int] = None,
        context_limit: Optional[int] = None,
        generation_config: Any = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.thread = thread
        self.coordinator = coordinator
        self.gate = gate
        self.compressor = compressor or ContextCompressor()
        self.checkpoints = checkpoints or gate.checkpoints
        self.workspace_root = workspace_root or gate.executor.root
        self.system_prompt = system_prompt
        self.tools = tools
        self.max_loops = max_loops or agent_config.max_loops
        self.max_history_messages = max_history_messages or agent_config.max_history_messages
        self.context_limit = context_limit or DEFAULT_CONTEXT_LIMIT
        self.generation_config = generation_config
        if on_event is not None:
            self.on_event = on_event
            gate.on_event = on_event
        else:
            self.on_event = gate.on_event or _noop_event

        self.usage = TokenUsage()
        self.iterations = 0
        self._abort: Optional[asyncio.Event] = None
        self._running = False
        self.compressor.restore(thread.compression_stats)

    @property
    def running(self) -> bool:
        return self._running

    async def _emit(self, etype: str, content: str = "", **data: Any) -> None:
        await self.on_event(AgentEvent(type=etype, content=content, data=data or None))

    # ------------------------------------------------------------------
    # Caller entry points
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Stop the current run: cancel the stream, interrupt a pending approval."""
        if not self._running or self._abort is None:
            return
        logger.info(f"Abort requested for thread {self.thread.id}")
        self._abort.set()
        self.coordinator.abort()
        self.gate.channel.interrupt()

    def approve(self) -> bool:
        return self.gate.channel.approve()

    def reject(self) -> bool:
        return self.gate.channel.reject()

    def reset_compression(self) -> None:
        self.compressor.reset()
        self.thread.compression_stats = None

    def start_handoff_thread(self) -> ChatThread:
        """Consume this thread's handoff and return a fresh thread seeded with it."""
        doc = self.thread.handoff
        if doc is None:
            raise AgentError(f"Thread {self.thread.id} has no handoff document")
        doc.consume()
        fresh = ChatThread(workspace=self.thread.workspace)
        fresh.objective = doc.objective
        fresh.append(UserMessage(content=doc.to_prompt()))
        logger.info(f"Thread {self.thread.id} handed off to {fresh.id}")
        return fresh

    async def send_user_message(self, content: Union[str, List[Dict[str, Any]]]) -> None:
        """Append a user message and run the loop until it settles.

        Progress is observed through the thread and the event callback.
        Raises ThreadFrozenError on a handed-off thread.
        """
        if self.thread.frozen:
            raise ThreadFrozenError(f"Thread {self.thread.id} was handed off and accepts no new messages")
        if self._running:
            raise RuntimeError("send_user_message is already running on this thread")

        self._running = True
        self._abort = asyncio.Event()
        self.iterations = 0
        try:
            user = UserMessage(content=content)
            checkpoint = self.checkpoints.create(
                CHECKPOINT_USER_MESSAGE, f"Before: {user.text[:80]}", message_id=user.id,
            )
            self.thread.append(CheckpointMessage(
                checkpoint_id=checkpoint.id, checkpoint_kind=checkpoint.kind, description=checkpoint.description,
            ))
            self.thread.append(user)
            self.thread.state.transition(ThreadPhase.SENDING)
            await self._emit("checkpoint_created", checkpoint.description,
                             checkpoint_id=checkpoint.id, kind=checkpoint.kind)
            logger.info(f"Thread {self.thread.id}: new user message ({len(user.text)} chars)")
            await self._run()
        except Exception as e:
            logger.exception(f"Agent loop failed on thread {self.thread.id}")
            await self._fail(f"Internal error: {e}")
            raise
        finally:
            self._running = False
            self._abort = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        thread = self.thread
        overhead = self.compressor.estimator.estimate_text(request_overhead_text(self.system_prompt, self.tools))

        for iteration in range(1, self.max_loops + 1):
            if self._abort.is_set():
                await self._settle("Stopped by the user")
                return
            if thread.state.phase != ThreadPhase.SENDING:
                thread.state.transition(ThreadPhase.SENDING)
            self.iterations = iteration
            logger.debug(f"Thread {thread.id}: iteration {iteration}/{self.max_loops}")

            window = build_window(thread.messages, self.max_history_messages)
            previous_level = self.compressor.reported_level
            view, stats = self.compressor.prepare(window, self.context_limit, overhead)
            thread.compression_stats = stats
            if stats.level != previous_level:
                await self._emit("compression", LEVEL_NAMES[stats.level], **stats.to_dict())
            if stats.needs_handoff:
                await self._handoff()
                return

            outcome = await self._stream(view)
            if outcome is None:
                return
            assistant, calls = outcome
            if not calls:
                thread.state.transition(ThreadPhase.DONE)
                await self._emit("done", assistant.text, stop_reason=assistant.stop_reason)
                return

            thread.state.transition(ThreadPhase.EXECUTING_TOOLS)
            results = await self._run_tools(assistant)
            if any(r.interrupted for r in results):
                await self._settle("Interrupted during tool execution")
                return
            if not any(r.continues for r in results):
                logger.info(f"Thread {thread.id}: all tool calls rejected, stopping")
                thread.state.transition(ThreadPhase.DONE)
                await self._emit("done", "All tool calls were rejected")
                return

        await self._limit_reached()

    async def _stream(self, view):
        """Send one request; returns (assistant, tool_calls) or None when the run ended."""
        thread = self.thread
        assistant = thread.begin_assistant()

        async def _on_text(delta: str) -> None:
            assistant.append_text(delta)
            await self._emit("text", delta)

        async def _on_tool_start(call_id: str, name: str) -> None:
            await self._emit("tool_call_start", name, tool_call_id=call_id, name=name)

        request = LLMRequest(
            messages=to_api_messages(view),
            tools=self.tools,
            system_prompt=self.system_prompt,
            config=self.generation_config,
        )
        try:
            outcome = await self.coordinator.send(
                request, on_text=_on_text, on_tool_start=_on_tool_start, abort_event=self._abort,
            )
        except StreamCancelledError:
            assistant.finalize(stop_reason="cancelled")
            await self._settle("Stopped by the user")
            return None
        except TransportError as e:
            assistant.finalize(stop_reason="error")
            thread.append(AssistantMessage(text=f"Error: {e.message}", is_error=True, finalized=True))
            thread.state.transition(ThreadPhase.ERROR, error=e.message)
            await self._emit("error", e.message, code=e.code, retryable=e.retryable)
            return None

        assistant.finalize(text=outcome.text, tool_calls=outcome.tool_calls, stop_reason=outcome.stop_reason)
        self.usage.input_tokens += outcome.usage.input_tokens
        self.usage.output_tokens += outcome.usage.output_tokens
        logger.info(f"Thread {thread.id}: model returned {len(outcome.text)} chars, "
                    f"{len(outcome.tool_calls)} tool call(s), stop={outcome.stop_reason}")
        return assistant, assistant.tool_calls

    async def _run_tools(self, assistant: AssistantMessage) -> List[ToolOutcome]:
        """Run every call of one response strictly in emission order."""
        results: List[ToolOutcome] = []
        for call in assistant.tool_calls:
            result = await self.gate.run(call, self.thread, self._abort)
            results.append(result)
            if result.interrupted and not self._abort.is_set():
                # The rest of this turn resolves as interrupted too
                self._abort.set()
        return results

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    async def _settle(self, reason: str) -> None:
        logger.info(f"Thread {self.thread.id}: {reason}")
        if self.thread.state.phase != ThreadPhase.DONE:
            self.thread.state.transition(ThreadPhase.DONE)
        await self._emit("done", reason, aborted=True)

    async def _handoff(self) -> None:
        thread = self.thread
        doc = self.compressor.build_handoff(thread, self.workspace_root)
        thread.handoff = doc
        thread.frozen = True
        thread.append(AssistantMessage(
            text="This conversation has run out of context. Continue in a new thread seeded with the handoff summary.",
            is_notice=True,
            finalized=True,
        ))
        thread.state.transition(ThreadPhase.DONE)
        logger.warning(f"Thread {thread.id} frozen: context budget exhausted, handoff ready")
        await self._emit("handoff", doc.to_prompt(), **doc.to_dict())

    async def _limit_reached(self) -> None:
        err = LimitExceededError(self.max_loops)
        logger.warning(f"Thread {self.thread.id}: {err}")
        self.thread.append(AssistantMessage(
            text=f"Stopped after {self.max_loops} iterations without finishing. Send another message to continue.",
            is_notice=True,
            finalized=True,
        ))
        self.thread.state.transition(ThreadPhase.DONE)
        await self._emit("limit_reached", str(err), max_loops=self.max_loops)

    async def _fail(self, message: str) -> None:
        """Leave the thread consistent after an unexpected exception."""
        thread = self.thread
        streaming = thread.streaming_message
        if streaming is not None:
            streaming.finalize(stop_reason="error")
        thread.release_tool_slot(thread.active_tool_call_id)
        try:
            if thread.state.phase == ThreadPhase.AWAITING_APPROVAL:
                thread.state.transition(ThreadPhase.EXECUTING_TOOLS)
            if thread.state.phase in (ThreadPhase.SENDING, ThreadPhase.EXECUTING_TOOLS):
                thread.state.transition(ThreadPhase.ERROR, error=message)
            thread.append(AssistantMessage(text=message, is_error=True, finalized=True))
        except (AgentError, ValueError):
            logger.exception(f"Could not record failure on thread {thread.id}")
        await self._emit("error", message)
