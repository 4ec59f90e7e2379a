"""
Orchestration core for the Bedrock coding agent.

- messages: message sum type, tool-call and thread phase state machines, ChatThread
- stream: StreamCoordinator (one request in, one outcome out, activity timeout)
- gate: ToolExecutionGate, ApprovalChannel, ApprovalPolicy, WorkspaceExecutor
- checkpoints: CheckpointManager, immutable snapshots and rollback
- compression: ContextCompressor, token estimation and handoff
- history: outbound window and Anthropic message conversion
- loop: AgentLoop tying the above together
- errors: exception taxonomy
"""

from .errors import (
    AgentError,
    TransportError,
    StreamCancelledError,
    ToolError,
    ParseError,
    RejectionError,
    ToolInterruptedError,
    LimitExceededError,
    InvalidTransitionError,
    ThreadFrozenError,
    CheckpointNotFoundError,
    HandoffConsumedError,
)
from .events import AgentEvent, EventCallback
from .messages import (
    ToolCall,
    ToolCallStatus,
    UserMessage,
    AssistantMessage,
    ToolResultMessage,
    CheckpointMessage,
    InterruptedToolMessage,
    Message,
    ThreadPhase,
    StreamState,
    ChatThread,
)
from .stream import LLMClient, LLMRequest, LLMOutcome, TokenUsage, StreamCoordinator
from .checkpoints import (
    CHECKPOINT_USER_MESSAGE,
    CHECKPOINT_TOOL_EDIT,
    Checkpoint,
    FileSnapshot,
    RollbackReport,
    CheckpointManager,
)
from .compression import CompressionStats, ContextCompressor, HandoffDocument, TokenEstimator
from .gate import ApprovalChannel, ApprovalDecision, ApprovalPolicy, ToolExecutionGate, ToolOutcome, WorkspaceExecutor
from .loop import AgentLoop

__all__ = [
    # Errors
    "AgentError",
    "TransportError",
    "StreamCancelledError",
    "ToolError",
    "ParseError",
    "RejectionError",
    "ToolInterruptedError",
    "LimitExceededError",
    "InvalidTransitionError",
    "ThreadFrozenError",
    "CheckpointNotFoundError",
    "HandoffConsumedError",

    # Events
    "AgentEvent",
    "EventCallback",

    # Data model
    "ToolCall",
    "ToolCallStatus",
    "UserMessage",
    "AssistantMessage",
    "ToolResultMessage",
    "CheckpointMessage",
    "InterruptedToolMessage",
    "Message",
    "ThreadPhase",
    "StreamState",
    "ChatThread",

    # Streaming
    "LLMClient",
    "LLMRequest",
    "LLMOutcome",
    "TokenUsage",
    "StreamCoordinator",

    # Checkpoints
    "CHECKPOINT_USER_MESSAGE",
    "CHECKPOINT_TOOL_EDIT",
    "Checkpoint",
    "FileSnapshot",
    "RollbackReport",
    "CheckpointManager",

    # Compression
    "CompressionStats",
    "ContextCompressor",
    "HandoffDocument",
    "TokenEstimator",

    # Gate
    "ApprovalChannel",
    "ApprovalDecision",
    "ApprovalPolicy",
    "ToolExecutionGate",
    "ToolOutcome",
    "WorkspaceExecutor",

    # Loop
    "AgentLoop",
]
