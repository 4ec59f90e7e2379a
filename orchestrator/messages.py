"""
Conversation data model: messages, tool calls and the chat thread.

Messages are an explicit sum type. Every consumer dispatches with an
isinstance chain that ends in a TypeError for an unknown variant.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import InvalidTransitionError

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


# ============================================================
# Tool calls
# ============================================================

class ToolCallStatus(str, Enum):
    PENDING = "pending"
    TOOL_REQUEST = "tool_request"
    AWAITING_USER = "awaiting_user"
    RUNNING_NOW = "running_now"
    SUCCESS = "success"
    TOOL_ERROR = "tool_error"
    REJECTED = "rejected"


_TOOL_CALL_TRANSITIONS = {
    ToolCallStatus.PENDING: {
        ToolCallStatus.TOOL_REQUEST,
        ToolCallStatus.RUNNING_NOW,
        ToolCallStatus.TOOL_ERROR,   # unparseable arguments
        ToolCallStatus.REJECTED,     # interrupted before it started
    },
    ToolCallStatus.TOOL_REQUEST: {ToolCallStatus.AWAITING_USER},
    ToolCallStatus.AWAITING_USER: {ToolCallStatus.REJECTED, ToolCallStatus.RUNNING_NOW},
    ToolCallStatus.RUNNING_NOW: {
        ToolCallStatus.SUCCESS,
        ToolCallStatus.TOOL_ERROR,
        ToolCallStatus.REJECTED,     # abort observed mid-flight
    },
    ToolCallStatus.SUCCESS: set(),
    ToolCallStatus.TOOL_ERROR: set(),
    ToolCallStatus.REJECTED: set(),
}

TERMINAL_TOOL_STATUSES = frozenset({
    ToolCallStatus.SUCCESS, ToolCallStatus.TOOL_ERROR, ToolCallStatus.REJECTED,
})

REASON_USER = "user"
REASON_INTERRUPTED = "interrupted"


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    raw_arguments: str = ""
    parse_error: Optional[str] = None
    result: Optional[str] = None
    # Why a call ended rejected: REASON_USER or REASON_INTERRUPTED
    reason: Optional[str] = None

    def transition(self, target: ToolCallStatus) -> None:
        if target not in _TOOL_CALL_TRANSITIONS[self.status]:
            raise InvalidTransitionError("ToolCall", self.status.value, target.value, detail=self.id)
        logger.debug(f"tool call {self.id} ({self.name}): {self.status.value} -> {target.value}")
        self.status = target

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TOOL_STATUSES

    @property
    def interrupted(self) -> bool:
        return self.status == ToolCallStatus.REJECTED and self.reason == REASON_INTERRUPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "status": self.status.value,
            "raw_arguments": self.raw_arguments,
            "parse_error": self.parse_error,
            "result": self.result,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            arguments=data.get("arguments") or {},
            status=ToolCallStatus(data.get("status", ToolCallStatus.PENDING.value)),
            raw_arguments=data.get("raw_arguments", ""),
            parse_error=data.get("parse_error"),
            result=data.get("result"),
            reason=data.get("reason"),
        )


# ============================================================
# Messages
# ============================================================

@dataclass
class UserMessage:
    content: Union[str, List[Dict[str, Any]]] = ""
    id: str = field(default_factory=_new_id)
    seq: int = 0
    created_at: float = field(default_factory=time.time)
    kind: str = field(default="user", init=False)

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.get("text", "") for b in self.content if isinstance(b, dict) and b.get("type") == "text")


@dataclass
class AssistantMessage:
    """Model output. Mutable only while streaming; finalize() seals it."""
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finalized: bool = False
    # Error and notice messages are shown to the user but never sent to the model
    is_error: bool = False
    is_notice: bool = False
    stop_reason: Optional[str] = None
    id: str = field(default_factory=_new_id)
    seq: int = 0
    created_at: float = field(default_factory=time.time)
    kind: str = field(default="assistant", init=False)

    def append_text(self, delta: str) -> None:
        if self.finalized:
            raise InvalidTransitionError("AssistantMessage", "finalized", "append_text", detail=self.id)
        self.text += delta

    def finalize(self, text: Optional[str] = None, tool_calls: Optional[List[ToolCall]] = None,
                 stop_reason: Optional[str] = None) -> None:
        if self.finalized:
            raise InvalidTransitionError("AssistantMessage", "finalized", "finalize", detail=self.id)
        if text is not None:
            self.text = text
        if tool_calls:
            self.tool_calls = list(tool_calls)
        self.stop_reason = stop_reason
        self.finalized = True

    @property
    def has_pending_tool_call(self) -> bool:
        return any(not tc.is_terminal for tc in self.tool_calls)


@dataclass
class ToolResultMessage:
    tool_call_id: str = ""
    tool_name: str = ""
    content: str = ""
    status: ToolCallStatus = ToolCallStatus.SUCCESS
    id: str = field(default_factory=_new_id)
    seq: int = 0
    created_at: float = field(default_factory=time.time)
    kind: str = field(default="tool_result", init=False)

    @property
    def is_error(self) -> bool:
        return self.status != ToolCallStatus.SUCCESS


@dataclass
class CheckpointMessage:
    checkpoint_id: str = ""
    checkpoint_kind: str = ""
    description: str = ""
    id: str = field(default_factory=_new_id)
    seq: int = 0
    created_at: float = field(default_factory=time.time)
    kind: str = field(default="checkpoint", init=False)


@dataclass
class InterruptedToolMessage:
    tool_call_id: str = ""
    tool_name: str = ""
    content: str = "Tool call interrupted by the user before it completed."
    id: str = field(default_factory=_new_id)
    seq: int = 0
    created_at: float = field(default_factory=time.time)
    kind: str = field(default="interrupted_tool", init=False)


Message = Union[UserMessage, AssistantMessage, ToolResultMessage, CheckpointMessage, InterruptedToolMessage]


def message_to_dict(msg: Message) -> Dict[str, Any]:
    base = {"id": msg.id, "seq": msg.seq, "created_at": msg.created_at, "kind": msg.kind}
    if isinstance(msg, UserMessage):
        base["content"] = msg.content
    elif isinstance(msg, AssistantMessage):
        base.update({
            "text": msg.text,
            "tool_calls": [tc.to_dict() for tc in msg.tool_calls],
            "finalized": msg.finalized,
            "is_error": msg.is_error,
            "is_notice": msg.is_notice,
            "stop_reason": msg.stop_reason,
        })
    elif isinstance(msg, ToolResultMessage):
        base.update({
            "tool_call_id": msg.tool_call_id,
            "tool_name": msg.tool_name,
            "content": msg.content,
            "status": msg.status.value,
        })
    elif isinstance(msg, CheckpointMessage):
        base.update({
            "checkpoint_id": msg.checkpoint_id,
            "checkpoint_kind": msg.checkpoint_kind,
            "description": msg.description,
        })
    elif isinstance(msg, InterruptedToolMessage):
        base.update({
            "tool_call_id": msg.tool_call_id,
            "tool_name": msg.tool_name,
            "content": msg.content,
        })
    else:
        raise TypeError(f"Unknown message type: {type(msg).__name__}")
    return base


def message_from_dict(data: Dict[str, Any]) -> Message:
    kind = data.get("kind")
    common = {
        "id": data.get("id") or _new_id(),
        "seq": data.get("seq", 0),
        "created_at": data.get("created_at", time.time()),
    }
    if kind == "user":
        return UserMessage(content=data.get("content", ""), **common)
    if kind == "assistant":
        return AssistantMessage(
            text=data.get("text", ""),
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls", [])],
            finalized=data.get("finalized", True),
            is_error=data.get("is_error", False),
            is_notice=data.get("is_notice", False),
            stop_reason=data.get("stop_reason"),
            **common,
        )
    if kind == "tool_result":
        return ToolResultMessage(
            tool_call_id=data.get("tool_call_id", ""),
            tool_name=data.get("tool_name", ""),
            content=data.get("content", ""),
            status=ToolCallStatus(data.get("status", ToolCallStatus.SUCCESS.value)),
            **common,
        )
    if kind == "checkpoint":
        return CheckpointMessage(
            checkpoint_id=data.get("checkpoint_id", ""),
            checkpoint_kind=data.get("checkpoint_kind", ""),
            description=data.get("description", ""),
            **common,
        )
    if kind == "interrupted_tool":
        return InterruptedToolMessage(
            tool_call_id=data.get("tool_call_id", ""),
            tool_name=data.get("tool_name", ""),
            content=data.get("content", ""),
            **common,
        )
    raise TypeError(f"Unknown message kind: {kind!r}")


# ============================================================
# Thread phase machine
# ============================================================

class ThreadPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_APPROVAL = "awaiting_approval"
    ERROR = "error"
    DONE = "done"


_PHASE_TRANSITIONS = {
    ThreadPhase.IDLE: {ThreadPhase.SENDING},
    ThreadPhase.SENDING: {ThreadPhase.EXECUTING_TOOLS, ThreadPhase.ERROR, ThreadPhase.DONE},
    ThreadPhase.EXECUTING_TOOLS: {
        ThreadPhase.AWAITING_APPROVAL, ThreadPhase.SENDING, ThreadPhase.DONE, ThreadPhase.ERROR,
    },
    ThreadPhase.AWAITING_APPROVAL: {ThreadPhase.EXECUTING_TOOLS},
    ThreadPhase.ERROR: {ThreadPhase.SENDING, ThreadPhase.IDLE},
    ThreadPhase.DONE: {ThreadPhase.SENDING, ThreadPhase.IDLE},
}

# Phases in which a loop is running; persisted threads found in one were cut off
ACTIVE_PHASES = frozenset({
    ThreadPhase.SENDING, ThreadPhase.EXECUTING_TOOLS, ThreadPhase.AWAITING_APPROVAL,
})


@dataclass
class StreamState:
    phase: ThreadPhase = ThreadPhase.IDLE
    error: Optional[str] = None

    def transition(self, target: ThreadPhase, error: Optional[str] = None) -> None:
        if target not in _PHASE_TRANSITIONS[self.phase]:
            raise InvalidTransitionError("StreamState", self.phase.value, target.value)
        logger.debug(f"thread phase: {self.phase.value} -> {target.value}")
        self.phase = target
        self.error = error if target == ThreadPhase.ERROR else None

    @property
    def active(self) -> bool:
        return self.phase in ACTIVE_PHASES


# ============================================================
# Chat thread
# ============================================================

class ChatThread:
    """One conversation: ordered messages, a tool-call slot, compression stats
    and the phase machine. Mutated only by the loop and what it calls."""

    def __init__(self, thread_id: Optional[str] = None, workspace: str = "."):
        self.id = thread_id or _new_id()
        self.workspace = workspace
        self.messages: List[Message] = []
        self.state = StreamState()
        self.active_tool_call_id: Optional[str] = None
        self.compression_stats = None   # CompressionStats, set by the loop
        self.frozen = False
        self.handoff = None             # HandoffDocument once level 4 is reached
        self.objective: Optional[str] = None  # carried over when seeded from a handoff
        self._next_seq = 1

    # --- messages ---------------------------------------------------

    @property
    def streaming_message(self) -> Optional[AssistantMessage]:
        if self.messages:
            last = self.messages[-1]
            if isinstance(last, AssistantMessage) and not last.finalized:
                return last
        return None

    def append(self, msg: Message) -> Message:
        """Append a message, assigning its sequence number."""
        if self.streaming_message is not None:
            raise ValueError("Cannot append while an assistant message is still streaming")
        if isinstance(msg, (ToolResultMessage, InterruptedToolMessage)):
            if self.find_tool_call(msg.tool_call_id) is None:
                raise ValueError(f"{msg.kind} references unknown tool call {msg.tool_call_id!r}")
        elif not isinstance(msg, (UserMessage, AssistantMessage, CheckpointMessage)):
            raise TypeError(f"Unknown message type: {type(msg).__name__}")
        msg.seq = self._next_seq
        self._next_seq += 1
        self.messages.append(msg)
        return msg

    def begin_assistant(self) -> AssistantMessage:
        """Append an empty streaming assistant message and return it."""
        return self.append(AssistantMessage())

    def find_tool_call(self, tool_call_id: str) -> Optional[ToolCall]:
        for msg in reversed(self.messages):
            if isinstance(msg, AssistantMessage):
                for tc in msg.tool_calls:
                    if tc.id == tool_call_id:
                        return tc
        return None

    def tool_results(self) -> List[ToolResultMessage]:
        return [m for m in self.messages if isinstance(m, ToolResultMessage)]

    def last_assistant(self) -> Optional[AssistantMessage]:
        for msg in reversed(self.messages):
            if isinstance(msg, AssistantMessage) and not msg.is_error and not msg.is_notice:
                return msg
        return None

    # --- tool-call slot ---------------------------------------------

    def acquire_tool_slot(self, tool_call_id: str) -> None:
        if self.active_tool_call_id not in (None, tool_call_id):
            raise InvalidTransitionError(
                "ToolSlot", self.active_tool_call_id, tool_call_id, detail="another tool call is in flight",
            )
        self.active_tool_call_id = tool_call_id

    def release_tool_slot(self, tool_call_id: str) -> None:
        if self.active_tool_call_id == tool_call_id:
            self.active_tool_call_id = None

    @property
    def pending_approval(self) -> Optional[ToolCall]:
        if self.active_tool_call_id is None:
            return None
        tc = self.find_tool_call(self.active_tool_call_id)
        if tc is not None and tc.status == ToolCallStatus.AWAITING_USER:
            return tc
        return None

    # --- persistence ------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace": self.workspace,
            "messages": [message_to_dict(m) for m in self.messages],
            "phase": self.state.phase.value,
            "error": self.state.error,
            "compression_stats": self.compression_stats.to_dict() if self.compression_stats else None,
            "frozen": self.frozen,
            "handoff": self.handoff.to_dict() if self.handoff else None,
            "objective": self.objective,
            "next_seq": self._next_seq,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatThread":
        from .compression import CompressionStats, HandoffDocument

        thread = cls(thread_id=data.get("id"), workspace=data.get("workspace", "."))
        thread.messages = [message_from_dict(m) for m in data.get("messages", [])]
        for msg in thread.messages:
            if isinstance(msg, AssistantMessage) and not msg.finalized:
                msg.finalized = True
        phase = ThreadPhase(data.get("phase", ThreadPhase.IDLE.value))
        # A loop cannot survive a reload
        thread.state = StreamState(
            phase=ThreadPhase.IDLE if phase in ACTIVE_PHASES else phase,
            error=data.get("error"),
        )
        stats = data.get("compression_stats")
        thread.compression_stats = CompressionStats.from_dict(stats) if stats else None
        thread.frozen = bool(data.get("frozen", False))
        handoff = data.get("handoff")
        thread.handoff = HandoffDocument.from_dict(handoff) if handoff else None
        thread.objective = data.get("objective")
        seqs = [m.seq for m in thread.messages]
        thread._next_seq = max([data.get("next_seq", 1)] + [s + 1 for s in seqs])
        return thread
