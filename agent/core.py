"""
TurnExecutor: drives one conversation through the provider/tool loop.
Inherits tool dispatch from ExecutionMixin and context management from HistoryMixin.
"""

import logging
import os
from typing import List, Optional

from backend import Backend, LocalBackend
from conversation import (
    Message, RunResult, Usage, assistant_message,
    ROLE_ASSISTANT, STOP_CANCELLED, STOP_END_TURN, STOP_ERROR,
    STOP_MAX_TOKENS, STOP_MAX_TURNS, STOP_TOOL_USE,
)
from providers import ProviderAdapter
from tools import ToolRegistry

from .cancel import CancelSignal, RunCancelled
from .events import AgentEvent, EventCallback, _discard_event
from .execution import ExecutionMixin, OnToolDone, PreToolFilter
from .history import HistoryMixin
from .permissions import PermissionGate
from .prompts import compose_system_prompt

logger = logging.getLogger(__name__)


class TurnExecutor(ExecutionMixin, HistoryMixin):
    """
    Runs the provider/tool loop over one conversation.

    Flow per iteration:
    1. Check cancellation and the turn limit
    2. Prune or summarize history if the input budget is nearly spent
    3. Stream one turn, forwarding text live
    4. If tool_use: authorize and run the calls, append results in order, loop
    5. Otherwise: return the final text

    An executor owns its conversation and counters. Build a new one per run
    or per subagent; only the RuntimeContext is shared.
    """

    def __init__(
        self,
        runtime,
        provider: ProviderAdapter,
        tools: Optional[ToolRegistry] = None,
        gate: Optional[PermissionGate] = None,
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        working_directory: Optional[str] = None,
        depth: int = 0,
        on_event: Optional[EventCallback] = None,
        config=None,
        backend: Optional[Backend] = None,
        pre_tool_filter: Optional[PreToolFilter] = None,
    ):
        self.runtime = runtime
        self.config = config or runtime.config
        self.model_config = runtime.model_config
        self.catalog = runtime.models
        self.provider = provider
        self.tools: ToolRegistry = tools if tools is not None else runtime.tools
        self.gate: PermissionGate = gate or runtime.create_gate()
        self.model_id = model_id or provider.model_id
        self.working_directory = os.path.abspath(working_directory or self.config.working_directory)
        self.backend: Backend = backend or LocalBackend(self.working_directory)
        if self.gate.backend is None:
            self.gate.backend = self.backend
        if system_prompt is None:
            system_prompt = compose_system_prompt(self.working_directory, self.tools.names())
        self.system_prompt = system_prompt
        self.depth = depth
        self.on_event: EventCallback = on_event or _discard_event
        self.pre_tool_filter = pre_tool_filter

        self.messages: List[Message] = []
        self.tokens = Usage()
        self.turns = 0
        self._cancel: Optional[CancelSignal] = None
        self._last_input_tokens = 0
        self._history_len_at_last_call = 0

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the current run and kill any running command."""
        if self._cancel is not None:
            self._cancel.set(reason)
        killed = self.backend.cancel_running_commands()
        if killed:
            logger.info(f"Killed {killed} running command(s)")

    async def _emit(self, event: AgentEvent) -> None:
        try:
            await self.on_event(event)
        except Exception:
            logger.exception(f"Event callback failed for {event.type}")

    def _last_assistant_text(self) -> str:
        for msg in reversed(self.messages):
            if msg.role == ROLE_ASSISTANT and msg.content:
                return msg.content
        return ""

    async def _finish(self, stop_reason: str, content: Optional[str] = None,
                      error: Optional[str] = None,
                      last_turn_stop_reason: Optional[str] = None) -> RunResult:
        result = RunResult(
            content=content if content is not None else self._last_assistant_text(),
            stop_reason=stop_reason,
            turns=self.turns,
            tokens=Usage(self.tokens.input_tokens, self.tokens.output_tokens),
            messages=self.messages,
            error=error,
            last_turn_stop_reason=last_turn_stop_reason,
        )
        logger.info(
            f"Run finished: stop={stop_reason} turns={self.turns} "
            f"tokens={self.tokens.input_tokens}/{self.tokens.output_tokens}"
        )
        if stop_reason == STOP_ERROR:
            await self._emit(AgentEvent(type="error", content=error or "", data={"turns": self.turns}))
        await self._emit(AgentEvent(
            type="done", content=result.content,
            data={"stop_reason": stop_reason, "turns": self.turns, "tokens": self.tokens.to_dict()},
        ))
        return result

    async def run(
        self,
        messages: List[Message],
        max_turns: Optional[int] = None,
        on_tool_done: Optional[OnToolDone] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> RunResult:
        """Run the loop to a terminal state. Never raises for run outcomes."""
        if not messages:
            raise ValueError("run() needs a conversation with at least one message")
        limit = max_turns if max_turns is not None else self.config.max_turns
        self.messages = messages
        self._cancel = cancel = cancel or CancelSignal()
        logger.info(f"Run started: model={self.model_id} depth={self.depth} max_turns={limit}")

        while True:
            if cancel.is_set():
                return await self._finish(STOP_CANCELLED, error=cancel.reason or None)
            if self.turns >= limit:
                return await self._finish(STOP_MAX_TURNS, error=f"reached maximum turns ({limit})")

            try:
                await self._manage_context(cancel)
            except RunCancelled:
                return await self._finish(STOP_CANCELLED, error=cancel.reason or None)
            self._repair_history()

            await self._emit(AgentEvent(type="turn_start", data={"turn": self.turns + 1}))
            request_len = len(self.messages)
            try:
                turn = await self._stream_turn(cancel)
            except RunCancelled:
                return await self._finish(STOP_CANCELLED, error=cancel.reason or None)
            except Exception as e:
                logger.exception("Provider stream raised")
                return await self._finish(STOP_ERROR, error=str(e))

            self.tokens.add(turn.usage)
            if turn.stop_reason == STOP_ERROR:
                logger.error(f"Provider error: {turn.error}")
                return await self._finish(STOP_ERROR, error=turn.error)

            self._history_len_at_last_call = request_len
            self._last_input_tokens = turn.usage.input_tokens
            self.turns += 1
            self.messages.append(assistant_message(turn.content, turn.tool_calls or None, turn.thinking))

            if turn.stop_reason == STOP_TOOL_USE and turn.tool_calls:
                if await self._dispatch_tool_calls(turn.tool_calls, cancel, on_tool_done):
                    return await self._finish(STOP_CANCELLED, error=cancel.reason or None)
                continue

            if turn.stop_reason == STOP_MAX_TOKENS:
                logger.warning(f"Turn {self.turns} hit max_tokens; response is truncated")
            return await self._finish(
                STOP_END_TURN, content=turn.content, last_turn_stop_reason=turn.stop_reason,
            )
