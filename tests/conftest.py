"""Shared fakes for the orchestrator tests: scripted LLM clients, event log, builders."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from backend import LocalBackend
from orchestrator.checkpoints import CheckpointManager
from orchestrator.compression import ContextCompressor
from orchestrator.gate import ApprovalPolicy, ToolExecutionGate, WorkspaceExecutor
from orchestrator.loop import AgentLoop
from orchestrator.messages import (
    AssistantMessage,
    ChatThread,
    ThreadPhase,
    ToolCall,
    ToolCallStatus,
    ToolResultMessage,
    UserMessage,
)
from orchestrator.stream import StreamCoordinator


# ============================================================
# Scripted responses
# ============================================================

def text_response(text: str, stop_reason: str = "end_turn") -> List[Dict[str, Any]]:
    return [
        {"type": "usage", "input_tokens": 100, "output_tokens": 0},
        {"type": "text", "text": text},
        {"type": "usage", "output_tokens": 20},
        {"type": "done", "stop_reason": stop_reason},
    ]


def tool_response(*calls, text: str = "") -> List[Dict[str, Any]]:
    """One response with tool calls; each call is (id, name, arguments or raw JSON string)."""
    events: List[Dict[str, Any]] = []
    if text:
        events.append({"type": "text", "text": text})
    for call_id, name, args in calls:
        raw = args if isinstance(args, str) else json.dumps(args)
        events.append({"type": "tool_call_start", "id": call_id, "name": name})
        mid = len(raw) // 2
        for chunk in (raw[:mid], raw[mid:]):
            if chunk:
                events.append({"type": "tool_call_delta", "id": call_id, "delta": chunk})
        events.append({"type": "tool_call_end", "id": call_id})
    events.append({"type": "done", "stop_reason": "tool_use"})
    return events


class ScriptedClient:
    """LLM client returning one scripted event list per request (blocking iterator).

    A script entry may be an exception instance, raised when the stream is opened.
    Once the scripts run out, ``fallback`` (a callable taking the call index)
    produces the response.
    """

    def __init__(self, scripts: Optional[List[Any]] = None, fallback=None):
        self.scripts = list(scripts or [])
        self.fallback = fallback
        self.requests: List[Any] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def stream(self, request):
        self.requests.append(request)
        if self.scripts:
            script = self.scripts.pop(0)
        elif self.fallback is not None:
            script = self.fallback(len(self.requests))
        else:
            script = text_response("Done.")
        if isinstance(script, Exception):
            raise script
        return iter(script)


class PacedClient:
    """Async-iterator client that sleeps ``delay`` seconds before each event."""

    def __init__(self, events: List[Dict[str, Any]], delay: float, initial_delay: Optional[float] = None):
        self.events = events
        self.delay = delay
        self.initial_delay = delay if initial_delay is None else initial_delay
        self.requests: List[Any] = []

    def stream(self, request):
        self.requests.append(request)
        return self._gen()

    async def _gen(self):
        for i, event in enumerate(self.events):
            await asyncio.sleep(self.initial_delay if i == 0 else self.delay)
            yield event


class EventLog:
    """Async event callback that records events and can answer approvals."""

    def __init__(self):
        self.events = []
        self.on_pending = None

    async def __call__(self, event):
        self.events.append(event)
        if event.type == "tool_pending" and self.on_pending is not None:
            self.on_pending(event)

    @property
    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def of_type(self, etype: str):
        return [e for e in self.events if e.type == etype]


# ============================================================
# Builders
# ============================================================

def thread_with_calls(calls: List[ToolCall], workspace: str = ".") -> ChatThread:
    """A thread whose last assistant message carries ``calls``, ready for the gate."""
    thread = ChatThread(workspace=workspace)
    thread.append(UserMessage(content="please do it"))
    thread.append(AssistantMessage(tool_calls=calls, finalized=True))
    thread.state.transition(ThreadPhase.SENDING)
    thread.state.transition(ThreadPhase.EXECUTING_TOOLS)
    return thread


def add_tool_turn(thread: ChatThread, user_text: str, call_id: str, name: str,
                  arguments: Dict[str, Any], result: str, reply: str = "") -> None:
    """Append a completed user -> assistant(tool call) -> result -> assistant turn."""
    thread.append(UserMessage(content=user_text))
    call = ToolCall(id=call_id, name=name, arguments=arguments, status=ToolCallStatus.SUCCESS)
    thread.append(AssistantMessage(text=f"Calling {name}.", tool_calls=[call], finalized=True))
    thread.append(ToolResultMessage(tool_call_id=call_id, tool_name=name, content=result))
    if reply:
        thread.append(AssistantMessage(text=reply, finalized=True))


def build_loop(workspace, client, policy: Optional[ApprovalPolicy] = None, on_event=None,
               thread: Optional[ChatThread] = None, **kwargs) -> AgentLoop:
    backend = LocalBackend(str(workspace))
    checkpoints = CheckpointManager(backend, max_checkpoints=kwargs.pop("max_checkpoints", 50))
    executor_factory = kwargs.pop("executor_factory", None)
    gate = ToolExecutionGate(
        executor_factory(backend, checkpoints) if executor_factory else WorkspaceExecutor(backend),
        checkpoints,
        policy=policy or ApprovalPolicy(),
        tool_timeout=kwargs.pop("tool_timeout", 10),
    )
    coordinator = StreamCoordinator(client, activity_timeout=kwargs.pop("activity_timeout", 5))
    return AgentLoop(
        thread=thread or ChatThread(workspace=str(workspace)),
        coordinator=coordinator,
        gate=gate,
        compressor=kwargs.pop("compressor", None) or ContextCompressor(),
        checkpoints=checkpoints,
        workspace_root=str(workspace),
        system_prompt="You are a test agent.",
        tools=kwargs.pop("tools", None),
        on_event=on_event,
        **kwargs,
    )


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture
def backend(workspace):
    return LocalBackend(str(workspace))


@pytest.fixture
def checkpoints(backend):
    return CheckpointManager(backend, max_checkpoints=50)


@pytest.fixture
def event_log():
    return EventLog()
