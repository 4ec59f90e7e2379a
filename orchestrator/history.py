"""
Outbound history: which thread messages go to the model, and in what shape.

The window is the most recent N messages. Tool results whose id is malformed
or whose call is outside the window are dropped, as are tool calls left
without a result, so corrupted or legacy threads still produce a request the
API accepts.
"""

import dataclasses
import json
import logging
import re
from typing import Any, Dict, List, Optional

from .messages import (
    AssistantMessage,
    CheckpointMessage,
    InterruptedToolMessage,
    Message,
    ToolResultMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

# Anthropic tool_use ids: ^[a-zA-Z0-9_-]+$
_TOOL_CALL_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def is_valid_tool_call_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_TOOL_CALL_ID_RE.match(value))


def _sendable(msg: Message) -> bool:
    if isinstance(msg, AssistantMessage):
        return msg.finalized and not msg.is_error and not msg.is_notice
    return not isinstance(msg, CheckpointMessage)


def build_window(messages: List[Message], max_messages: int) -> List[Message]:
    """Select and sanitise the most recent ``max_messages`` sendable messages.

    The window always opens with a user message. When the last N messages
    hold none (a long tool loop), the latest user message is put in front.
    """
    sendable = [m for m in messages if _sendable(m)]
    tail = sendable[-max_messages:] if max_messages > 0 else []
    start = next((i for i, m in enumerate(tail) if isinstance(m, UserMessage)), None)
    if start is not None:
        window = tail[start:]
    else:
        last_user = next((m for m in reversed(sendable) if isinstance(m, UserMessage)), None)
        first_assistant = next((i for i, m in enumerate(tail) if isinstance(m, AssistantMessage)), len(tail))
        window = ([last_user] if last_user else []) + tail[first_assistant:]

    call_ids = set()
    for msg in window:
        if isinstance(msg, AssistantMessage):
            call_ids.update(tc.id for tc in msg.tool_calls if is_valid_tool_call_id(tc.id))

    answered = set()
    kept: List[Message] = []
    for msg in window:
        if isinstance(msg, (ToolResultMessage, InterruptedToolMessage)):
            if not is_valid_tool_call_id(msg.tool_call_id) or msg.tool_call_id not in call_ids:
                logger.warning(f"Dropping {msg.kind} with unmatched tool_call_id {msg.tool_call_id!r}")
                continue
            answered.add(msg.tool_call_id)
        kept.append(msg)

    out: List[Message] = []
    for msg in kept:
        if isinstance(msg, AssistantMessage) and msg.tool_calls:
            calls = [tc for tc in msg.tool_calls if tc.id in answered]
            if len(calls) != len(msg.tool_calls):
                logger.warning(f"Dropping {len(msg.tool_calls) - len(calls)} unanswered tool call(s) from message {msg.id}")
                msg = dataclasses.replace(msg, tool_calls=calls)
        out.append(msg)
    return out


def to_api_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert to Anthropic Messages API format.

    Consecutive same-role messages are merged, which also folds consecutive
    tool results into a single user message.
    """
    out: List[Dict[str, Any]] = []

    def _push(role: str, blocks: List[Dict[str, Any]]) -> None:
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": list(blocks)})

    for msg in messages:
        if isinstance(msg, UserMessage):
            if isinstance(msg.content, str):
                _push("user", [{"type": "text", "text": msg.content}])
            else:
                _push("user", list(msg.content))
        elif isinstance(msg, AssistantMessage):
            blocks: List[Dict[str, Any]] = []
            if msg.text.strip():
                blocks.append({"type": "text", "text": msg.text})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments or {}})
            if blocks:
                _push("assistant", blocks)
        elif isinstance(msg, ToolResultMessage):
            _push("user", [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content or "(no output)",
                "is_error": msg.is_error,
            }])
        elif isinstance(msg, InterruptedToolMessage):
            _push("user", [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
                "is_error": True,
            }])
        elif isinstance(msg, CheckpointMessage):
            continue
        else:
            raise TypeError(f"Unknown message type: {type(msg).__name__}")

    # The API requires the conversation to open with a user turn
    while out and out[0]["role"] != "user":
        out.pop(0)
    return out


def request_overhead_text(system_prompt: Optional[str], tools: Optional[List[Dict[str, Any]]]) -> str:
    """Text of the fixed request parts, for token estimation."""
    return (system_prompt or "") + (json.dumps(tools) if tools else "")
