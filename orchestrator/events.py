"""
Agent event data types.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable, Awaitable


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # text, tool_pending, tool_running, tool_result, tool_rejected, checkpoint_created, compression, handoff, error, limit_reached, done
    content: str = ""
    data: Optional[Dict[str, Any]] = None


EventCallback = Callable[[AgentEvent], Awaitable[None]]


async def _noop_event(event: AgentEvent) -> None:
    return None
