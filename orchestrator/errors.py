"""
Error taxonomy for the orchestration core.

Tool, approval and parse failures are turned into tool-result messages by the
gate; only TransportError (and its cancellation flavour) ends a loop early.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for orchestrator errors"""


class TransportError(AgentError):
    """LLM exchange failed (network, timeout, throttling, API error).

    ``retryable`` is advisory: the core never retries, callers may.
    """

    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    THROTTLED = "THROTTLED"
    API = "API"
    CANCELLED = "CANCELLED"

    def __init__(self, message: str, code: str = "API", retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r}, retryable={self.retryable})"


class StreamCancelledError(TransportError):
    """The in-flight send was aborted by the caller. Never retry."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message, code=TransportError.CANCELLED, retryable=False)


class ToolError(AgentError):
    """A tool body reported failure."""


class ParseError(AgentError):
    """Tool-call arguments could not be parsed as a JSON object."""


class RejectionError(AgentError):
    """The user declined a gated tool call."""


class ToolInterruptedError(AgentError):
    """An abort was observed while a tool call was pending or running."""


class LimitExceededError(AgentError):
    """The loop ran out of iterations for one user message."""

    def __init__(self, max_loops: int):
        super().__init__(f"Reached the limit of {max_loops} iterations")
        self.max_loops = max_loops


class InvalidTransitionError(AgentError):
    """A state machine was asked to make a transition it does not allow."""

    def __init__(self, machine: str, current: str, target: str, detail: Optional[str] = None):
        msg = f"{machine}: invalid transition {current} -> {target}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.current = current
        self.target = target


class ThreadFrozenError(AgentError):
    """The thread was handed off and accepts no further sends."""


class CheckpointNotFoundError(AgentError):
    """No checkpoint with the given id."""


class HandoffConsumedError(AgentError):
    """A handoff document was already used to seed a thread."""
