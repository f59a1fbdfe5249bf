"""
Agent event data type.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable, Awaitable


@dataclass
class AgentEvent:
    """Event emitted during agent execution"""
    type: str  # turn_start, text, thinking, tool_call, tool_result, permission_prompt, compaction, error, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.data or {})
        if self.content:
            payload.setdefault("content", self.content)
        return payload


EventCallback = Callable[[AgentEvent], Awaitable[None]]


async def _discard_event(event: AgentEvent) -> None:
    return None
