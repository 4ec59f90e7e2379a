"""
Context window management: token estimation, compression levels and handoff.

Levels (by ratio = input tokens / context limit):
    0  full history
    1  truncate large tool results outside the recent turns
    2  replace old tool results with a short marker
    3  summarise old turns, keep only the last one or two verbatim
    4  handoff: even level 3 does not fit, a new thread must take over

The reported level never goes down within a thread until reset().
"""

import dataclasses
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from config import agent_config

from .errors import HandoffConsumedError
from .messages import (
    AssistantMessage,
    ChatThread,
    CheckpointMessage,
    InterruptedToolMessage,
    Message,
    ToolCall,
    ToolCallStatus,
    ToolResultMessage,
    UserMessage,
)

logger = logging.getLogger(__name__)

LEVEL_FULL = 0
LEVEL_TRUNCATE = 1
LEVEL_SLIDING_WINDOW = 2
LEVEL_DEEP = 3
LEVEL_HANDOFF = 4

LEVEL_NAMES = {
    LEVEL_FULL: "full",
    LEVEL_TRUNCATE: "truncate",
    LEVEL_SLIDING_WINDOW: "sliding window",
    LEVEL_DEEP: "deep compression",
    LEVEL_HANDOFF: "handoff",
}

_WRITE_TOOLS = {"write_file": "create", "edit_file": "edit", "delete_file": "delete"}
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+)$", re.MULTILINE)
_FIRST_SENTENCE_RE = re.compile(r"^[^.!?\n]+[.!?]?")


class TokenEstimator:
    """Character-based estimate, ~3.5 chars per token for mixed English/code.

    Any replacement only has to grow with the size of the conversation.
    """

    chars_per_token = 3.5

    def estimate_text(self, text: str) -> int:
        if not text:
            return 0
        return max(1, int(len(text) / self.chars_per_token))

    def estimate_message(self, msg: Message) -> int:
        if isinstance(msg, UserMessage):
            content = msg.content if isinstance(msg.content, str) else json.dumps(msg.content)
            return self.estimate_text(content) + 5
        elif isinstance(msg, AssistantMessage):
            total = self.estimate_text(msg.text) + 5
            for tc in msg.tool_calls:
                total += 10 + self.estimate_text(tc.raw_arguments or json.dumps(tc.arguments))
            return total
        elif isinstance(msg, (ToolResultMessage, InterruptedToolMessage)):
            return self.estimate_text(msg.content) + 10
        elif isinstance(msg, CheckpointMessage):
            return 0
        raise TypeError(f"Unknown message type: {type(msg).__name__}")

    def estimate_messages(self, messages: List[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


@dataclass
class CompressionStats:
    level: int = LEVEL_FULL
    ratio: float = 0.0
    input_tokens: int = 0
    context_limit: int = 0
    saved_percent: float = 0.0
    kept_turns: int = 0
    compacted_turns: int = 0

    @property
    def needs_handoff(self) -> bool:
        return self.level >= LEVEL_HANDOFF

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompressionStats":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class HandoffDocument:
    """Seed for the thread that replaces a handed-off one. Consumed once."""
    objective: str
    pending_steps: List[str] = field(default_factory=list)
    file_changes: List[Dict[str, str]] = field(default_factory=list)
    completed_steps: List[str] = field(default_factory=list)
    last_user_request: str = ""
    suggested_next_steps: List[str] = field(default_factory=list)
    from_thread_id: str = ""
    workspace_root: str = ""
    created_at: float = field(default_factory=time.time)
    consumed: bool = False

    def consume(self) -> "HandoffDocument":
        if self.consumed:
            raise HandoffConsumedError(f"Handoff from thread {self.from_thread_id} was already used")
        self.consumed = True
        return self

    def to_prompt(self) -> str:
        changes = "\n".join(f"- [{c['action'].upper()}] {c['path']}" for c in self.file_changes)
        completed = "\n".join(f"- done: {s}" for s in self.completed_steps)
        pending = "\n".join(f"- todo: {s}" for s in self.pending_steps)
        suggested = "\n".join(f"- {s}" for s in self.suggested_next_steps)
        return (
            "## Session Handoff Context\n\n"
            f"### Objective\n{self.objective}\n\n"
            f"### Completed Steps\n{completed or 'None'}\n\n"
            f"### Pending Steps\n{pending or 'None'}\n\n"
            f"### File Changes\n{changes or 'None'}\n\n"
            f"### Last User Request\n\"{self.last_user_request}\"\n\n"
            f"### Suggested Next Steps\n{suggested or 'None'}\n\n"
            "---\nContinue from where we left off."
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandoffDocument":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


# ------------------------------------------------------------------
# Summary heuristics
# ------------------------------------------------------------------

def extract_objective(text: str) -> str:
    text = (text or "").strip()
    m = _FIRST_SENTENCE_RE.match(text)
    if m and len(m.group(0)) > 20:
        return m.group(0)[:200]
    return text[:200]


def _describe_step(tc: ToolCall) -> Optional[str]:
    args = tc.arguments or {}
    if tc.name == "write_file":
        return f"Created file: {args.get('path')}"
    if tc.name == "edit_file":
        return f"Modified file: {args.get('path')}"
    if tc.name == "delete_file":
        return f"Deleted file: {args.get('path')}"
    if tc.name == "run_command":
        return f"Executed: {str(args.get('command', ''))[:50]}"
    return None


def _successful_calls(messages: List[Message]) -> List[ToolCall]:
    calls = []
    for msg in messages:
        if isinstance(msg, AssistantMessage):
            calls.extend(tc for tc in msg.tool_calls if tc.status == ToolCallStatus.SUCCESS)
    return calls


def extract_completed_steps(messages: List[Message]) -> List[str]:
    steps = [s for s in (_describe_step(tc) for tc in _successful_calls(messages)) if s]
    return list(dict.fromkeys(steps))[-20:]


def extract_file_changes(messages: List[Message]) -> List[Dict[str, str]]:
    changes: Dict[Tuple[str, str], Dict[str, str]] = {}
    for tc in _successful_calls(messages):
        action = _WRITE_TOOLS.get(tc.name)
        path = (tc.arguments or {}).get("path")
        if action and path:
            changes[(path, action)] = {"path": path, "action": action}
    return list(changes.values())


def extract_pending_steps(last_assistant_text: str) -> List[str]:
    items = [m.strip() for m in _LIST_ITEM_RE.findall(last_assistant_text or "")]
    return [i for i in items if 10 < len(i) < 200][:5]


def _split_turns(messages: List[Message]) -> List[List[Message]]:
    """Group messages into turns; each UserMessage opens a new one."""
    turns: List[List[Message]] = []
    for msg in messages:
        if isinstance(msg, UserMessage) or not turns:
            turns.append([msg])
        else:
            turns[-1].append(msg)
    return turns


class ContextCompressor:
    """Classifies context pressure and builds compressed outbound views."""

    def __init__(
        self,
        estimator: Optional[TokenEstimator] = None,
        truncate_at: Optional[float] = None,
        window_at: Optional[float] = None,
        deep_at: Optional[float] = None,
        handoff_at: Optional[float] = None,
        keep_recent_turns: Optional[int] = None,
        deep_keep_turns: Optional[int] = None,
        truncate_chars: Optional[int] = None,
    ):
        self.estimator = estimator or TokenEstimator()
        self.truncate_at = truncate_at if truncate_at is not None else agent_config.compress_truncate_at
        self.window_at = window_at if window_at is not None else agent_config.compress_window_at
        self.deep_at = deep_at if deep_at is not None else agent_config.compress_deep_at
        self.handoff_at = handoff_at if handoff_at is not None else agent_config.handoff_at
        self.keep_recent_turns = keep_recent_turns or agent_config.keep_recent_turns
        self.deep_keep_turns = deep_keep_turns or agent_config.deep_keep_turns
        self.truncate_chars = truncate_chars or agent_config.truncate_chars
        self._reported_level = LEVEL_FULL

    @property
    def reported_level(self) -> int:
        return self._reported_level

    def level_for_ratio(self, ratio: float) -> int:
        if ratio < self.truncate_at:
            return LEVEL_FULL
        if ratio < self.window_at:
            return LEVEL_TRUNCATE
        if ratio < self.deep_at:
            return LEVEL_SLIDING_WINDOW
        if ratio < self.handoff_at:
            return LEVEL_DEEP
        return LEVEL_HANDOFF

    def evaluate(self, input_tokens: int, context_limit: int, message_count: int = 0,
                 applied_level: int = LEVEL_FULL) -> CompressionStats:
        """Classify the current token estimate. The reported level is monotone.

        ``applied_level`` is the compression already used to reach
        ``input_tokens``; the report never falls below it.
        """
        raw_ratio = input_tokens / context_limit if context_limit > 0 else 1.0
        fresh = max(self.level_for_ratio(raw_ratio), applied_level)
        if fresh > self._reported_level:
            logger.info(f"Compression level {self._reported_level} -> {fresh} ({LEVEL_NAMES[fresh]}), "
                        f"ratio {raw_ratio:.2f}, {message_count} messages")
            self._reported_level = fresh
        return CompressionStats(
            level=self._reported_level,
            ratio=min(max(raw_ratio, 0.0), 1.0),
            input_tokens=input_tokens,
            context_limit=context_limit,
        )

    def reset(self) -> None:
        """Explicit reset (user action or fresh session)."""
        logger.info(f"Compression level reset from {self._reported_level}")
        self._reported_level = LEVEL_FULL

    def restore(self, stats: Optional[CompressionStats]) -> None:
        """Resume the reported level of a rehydrated thread."""
        if stats is not None:
            self._reported_level = max(self._reported_level, stats.level)

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def _truncate(self, text: str) -> str:
        limit = self.truncate_chars
        if len(text) <= limit:
            return text
        head = text[: limit * 2 // 3]
        tail = text[-(limit // 3):]
        return f"{head}\n\n... [{len(text) - len(head) - len(tail)} chars truncated] ...\n\n{tail}"

    def _summary_message(self, old_messages: List[Message], n_turns: int) -> UserMessage:
        first_user = next((m for m in old_messages if isinstance(m, UserMessage)), None)
        objective = extract_objective(first_user.text) if first_user else "Unknown objective"
        steps = extract_completed_steps(old_messages)
        lines = [f"[Summary of {n_turns} earlier turns]", f"Objective: {objective}"]
        if steps:
            lines.append("Completed steps:")
            lines.extend(f"- {s}" for s in steps)
        else:
            lines.append("Completed steps: none")
        return UserMessage(content="\n".join(lines))

    def compress(self, messages: List[Message], level: int) -> Tuple[List[Message], int, int]:
        """Build the outbound view for ``level`` without touching ``messages``.

        Returns (view, kept_turns, compacted_turns).
        """
        turns = _split_turns(messages)
        if level <= LEVEL_FULL or len(turns) <= 1:
            return list(messages), len(turns), 0

        if level >= LEVEL_DEEP:
            keep = max(1, self.deep_keep_turns)
            if len(turns) <= keep:
                return list(messages), len(turns), 0
            old = [m for turn in turns[:-keep] for m in turn]
            view: List[Message] = [self._summary_message(old, len(turns) - keep)]
            for turn in turns[-keep:]:
                view.extend(turn)
            return view, keep, len(turns) - keep

        keep = max(1, self.keep_recent_turns)
        if len(turns) <= keep:
            return list(messages), len(turns), 0
        view = []
        compacted = 0
        for turn in turns[:-keep]:
            changed = False
            for msg in turn:
                if isinstance(msg, ToolResultMessage):
                    if level >= LEVEL_SLIDING_WINDOW:
                        content = f"[{msg.tool_name} result omitted to save context: {len(msg.content)} chars]"
                    else:
                        content = self._truncate(msg.content)
                    if content != msg.content:
                        msg = dataclasses.replace(msg, content=content)
                        changed = True
                view.append(msg)
            compacted += 1 if changed else 0
        for turn in turns[-keep:]:
            view.extend(turn)
        return view, len(turns) - compacted, compacted

    def prepare(
        self,
        messages: List[Message],
        context_limit: int,
        overhead_tokens: int = 0,
    ) -> Tuple[List[Message], CompressionStats]:
        """Compress ``messages`` as far as needed and classify the result.

        Escalates one level at a time up to deep compression; level 4 is
        reported only when the deep view still does not fit.
        """
        full_tokens = overhead_tokens + self.estimator.estimate_messages(messages)
        applied = min(self._reported_level, LEVEL_DEEP)
        while True:
            view, kept, compacted = self.compress(messages, applied)
            tokens = overhead_tokens + self.estimator.estimate_messages(view)
            fresh = self.level_for_ratio(tokens / context_limit if context_limit > 0 else 1.0)
            if fresh <= applied or applied >= LEVEL_DEEP:
                break
            applied = min(fresh, LEVEL_DEEP)

        stats = self.evaluate(tokens, context_limit, len(messages), applied_level=applied)
        stats.kept_turns = kept
        stats.compacted_turns = compacted
        if full_tokens > 0:
            stats.saved_percent = round(max(0.0, (full_tokens - tokens) / full_tokens * 100), 1)
        return view, stats

    # ------------------------------------------------------------------
    # Handoff
    # ------------------------------------------------------------------

    def build_handoff(self, thread: ChatThread, workspace_root: str) -> HandoffDocument:
        messages = thread.messages
        users = [m for m in messages if isinstance(m, UserMessage)]
        if thread.objective:
            # Seeded from an earlier handoff: users[0] is that handoff prompt
            objective = thread.objective
            requests = users[1:]
        else:
            objective = extract_objective(users[0].text) if users else "Unknown objective"
            requests = users
        last_request = requests[-1].text if requests else ""
        last_assistant = thread.last_assistant()

        pending = extract_pending_steps(last_assistant.text if last_assistant else "")
        recent_success = any(
            isinstance(m, AssistantMessage) and any(tc.status == ToolCallStatus.SUCCESS for tc in m.tool_calls)
            for m in messages[-5:]
        )
        if last_request and not recent_success:
            pending.insert(0, f"Continue: {last_request[:100]}{'...' if len(last_request) > 100 else ''}")

        suggested = pending[:3] or ["Review changes made so far", "Continue with next logical step"]
        doc = HandoffDocument(
            objective=objective,
            pending_steps=pending,
            file_changes=extract_file_changes(messages),
            completed_steps=extract_completed_steps(messages),
            last_user_request=last_request[:500],
            suggested_next_steps=suggested,
            from_thread_id=thread.id,
            workspace_root=workspace_root,
        )
        logger.info(f"Built handoff for thread {thread.id}: {len(doc.pending_steps)} pending, "
                    f"{len(doc.file_changes)} file changes")
        return doc
