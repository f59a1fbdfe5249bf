"""
Conversation data types shared by the engine, the compactor, subagents and providers.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL_RESULT = "tool_result"

# Turn-level stop reasons (from the provider)
STOP_END_TURN = "end_turn"
STOP_TOOL_USE = "tool_use"
STOP_MAX_TOKENS = "max_tokens"
STOP_ERROR = "error"

# Run-level stop reasons (from the loop)
STOP_MAX_TURNS = "max_turns"
STOP_CANCELLED = "cancelled"


@dataclass
class Usage:
    """Token usage for one turn or accumulated across a run"""
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class ToolCall:
    """A tool invocation requested by the model. `input` is the raw JSON text."""
    id: str
    name: str
    input: str = "{}"

    def arguments(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.input or "{}")
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


@dataclass
class ToolCallResult:
    """Result of one ToolCall, carried back to the model"""
    tool_call_id: str
    content: str
    is_error: bool = False


@dataclass
class Message:
    """One entry of a conversation"""
    role: str
    content: str = ""
    images: List[Dict[str, Any]] = field(default_factory=list)
    thinking: str = ""
    tool_calls: Optional[List[ToolCall]] = None
    tool_result: Optional[ToolCallResult] = None
    is_summary: bool = False

    def __post_init__(self):
        if self.tool_calls is not None and not self.tool_calls:
            self.tool_calls = None
        if self.role == ROLE_TOOL_RESULT and self.tool_result is None:
            raise ValueError("tool_result message requires a ToolCallResult")


def user_message(text: str, images: Optional[List[Dict[str, Any]]] = None) -> Message:
    return Message(role=ROLE_USER, content=text, images=list(images or []))


def assistant_message(text: str, tool_calls: Optional[List[ToolCall]] = None,
                      thinking: str = "") -> Message:
    return Message(role=ROLE_ASSISTANT, content=text, tool_calls=tool_calls, thinking=thinking)


def tool_result_message(tool_call_id: str, content: str, is_error: bool = False) -> Message:
    return Message(
        role=ROLE_TOOL_RESULT,
        tool_result=ToolCallResult(tool_call_id=tool_call_id, content=content, is_error=is_error),
    )


def summary_message(text: str) -> Message:
    return Message(role=ROLE_USER, content=text, is_summary=True)


@dataclass
class TurnResult:
    """Everything one provider turn produced"""
    content: str = ""
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    stop_reason: str = STOP_END_TURN
    usage: Usage = field(default_factory=Usage)
    error: Optional[str] = None


@dataclass
class RunResult:
    """Outcome of TurnExecutor.run. Callers inspect stop_reason, never catch."""
    content: str = ""
    stop_reason: str = STOP_END_TURN
    turns: int = 0
    tokens: Usage = field(default_factory=Usage)
    messages: List[Message] = field(default_factory=list)
    error: Optional[str] = None
    last_turn_stop_reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.stop_reason == STOP_END_TURN


@dataclass
class AgentRequest:
    """Request to run a named subagent"""
    agent_name: str
    prompt: str
    description: str = ""
    max_turns: Optional[int] = None
    model_override: Optional[str] = None


@dataclass
class AgentResult:
    """Outcome of a subagent run, folded back into the parent as one tool result"""
    agent_name: str
    success: bool
    content: str = ""
    error: Optional[str] = None
    turns: int = 0
    tokens: Usage = field(default_factory=Usage)

    def to_tool_output(self) -> str:
        if self.success:
            return self.content or "(subagent returned no text)"
        text = f"Subagent '{self.agent_name}' failed: {self.error}"
        if self.content:
            text += f"\n\nPartial output:\n{self.content}"
        return text
