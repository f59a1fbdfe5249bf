"""
Execution engine for the turn executor.
Streams one provider turn and dispatches the tool calls it asks for.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from conversation import ToolCall, ToolCallResult, TurnResult, tool_result_message
from providers import (
    GenerationConfig, TurnCollector, StreamChunk, ChunkStream,
    CHUNK_TEXT, CHUNK_THINKING, CHUNK_TOOL_START,
)
from tools import Tool, ToolContext

from .cancel import CancelSignal, RunCancelled, race_cancel
from .events import AgentEvent
from .permissions import PermissionDecision

logger = logging.getLogger(__name__)

CANCELLED_BEFORE_EXECUTION = "Cancelled before execution"

OnToolDone = Callable[[ToolCall, ToolCallResult], Any]


@dataclass
class PreToolOutcome:
    """Verdict of a pre-dispatch filter for one call"""
    block: bool = False
    reason: str = ""
    updated_input: Optional[Dict[str, Any]] = None


# (tool_name, args, call_id) -> PreToolOutcome | None, sync or async
PreToolFilter = Callable[[str, Dict[str, Any], str], Any]


async def _next_chunk(stream: ChunkStream) -> Optional[StreamChunk]:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class ExecutionMixin:
    """Mixin providing turn streaming and ordered tool dispatch.

    Expects the host class to provide:
    - self.provider (ProviderAdapter)
    - self.tools (ToolRegistry)
    - self.gate (PermissionGate)
    - self.messages (list of Message)
    - self.system_prompt (str)
    - self.model_id (str)
    - self.model_config (ModelConfig)
    - self.catalog (ModelCatalog)
    - self.working_directory (str)
    - self.backend (Backend)
    - self.runtime (RuntimeContext)
    - self.depth (int)
    - self.pre_tool_filter (PreToolFilter or None)
    - self._emit(event) coroutine
    """

    def _generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            max_tokens=min(self.model_config.max_tokens, self.catalog.max_output_tokens(self.model_id)),
            temperature=self.model_config.temperature,
            throughput_mode=self.model_config.throughput_mode,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_turn(self, cancel: Optional[CancelSignal]) -> TurnResult:
        """Stream one turn, forwarding chunks live. Raises RunCancelled."""
        stream = self.provider.stream(
            self.messages,
            tools=self.tools.schemas(),
            system_prompt=self.system_prompt,
            model_id=self.model_id,
            config=self._generation_config(),
        )
        collector = TurnCollector()
        try:
            while not collector.finished:
                chunk = await race_cancel(_next_chunk(stream), cancel)
                if chunk is None:
                    break
                await self._forward_chunk(chunk)
                collector.feed(chunk)
        finally:
            stream.close()
        return collector.result()

    async def _forward_chunk(self, chunk: StreamChunk) -> None:
        if chunk.type == CHUNK_TEXT and chunk.text:
            await self._emit(AgentEvent(type="text", content=chunk.text))
        elif chunk.type == CHUNK_THINKING and chunk.text:
            await self._emit(AgentEvent(type="thinking", content=chunk.text))
        elif chunk.type == CHUNK_TOOL_START:
            logger.debug(f"Tool call streaming: {chunk.tool_name} ({chunk.tool_id})")

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    def _tool_context(self, cancel: Optional[CancelSignal]) -> ToolContext:
        return ToolContext(
            working_directory=self.working_directory,
            backend=self.backend,
            cancel=cancel,
            runtime=self.runtime,
            provider=self.provider,
            gate=self.gate,
            model_id=self.model_id,
            depth=self.depth,
        )

    async def _complete_call(self, call: ToolCall, result: ToolCallResult,
                             on_tool_done: Optional[OnToolDone]) -> ToolCallResult:
        await self._emit(AgentEvent(
            type="tool_result",
            content=result.content,
            data={"id": call.id, "name": call.name, "is_error": result.is_error},
        ))
        if on_tool_done is not None:
            try:
                ret = on_tool_done(call, result)
                if asyncio.iscoroutine(ret):
                    await ret
            except Exception:
                logger.exception(f"on_tool_done hook failed for {call.name}")
        return result

    async def _filter_call(self, call: ToolCall, args: Dict[str, Any]) -> Optional[str]:
        """Run the pre-dispatch filter. Returns a block reason, or None to proceed.

        An updated input from the filter replaces ``args`` in place and is
        written back to the call so the history matches what ran.
        """
        if self.pre_tool_filter is None:
            return None
        try:
            outcome = self.pre_tool_filter(call.name, args, call.id)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        except Exception as e:
            logger.exception(f"Pre-dispatch filter failed for {call.name}")
            return f"filter error: {e}"
        if outcome is None:
            return None
        if outcome.block:
            return outcome.reason or "no reason given"
        if outcome.updated_input is not None:
            args.clear()
            args.update(outcome.updated_input)
            call.input = json.dumps(outcome.updated_input)
        return None

    async def _execute_call(self, call: ToolCall, args: Dict[str, Any], ctx: ToolContext,
                            after: List["asyncio.Future"],
                            on_tool_done: Optional[OnToolDone]) -> Optional[ToolCallResult]:
        """Run one permitted call once its predecessors finished.

        Returns None when cancellation was observed before it started.
        """
        if after:
            await asyncio.wait(after)
        if ctx.cancel is not None and ctx.cancel.is_set():
            return None
        logger.info(f"Executing tool: {call.name}")
        result = await self.tools.aexecute(call.name, args, ctx)
        if not result.success:
            logger.info(f"Tool {call.name} failed: {result.error}")
        return await self._complete_call(
            call,
            ToolCallResult(tool_call_id=call.id, content=result.to_content(), is_error=not result.success),
            on_tool_done,
        )

    async def _dispatch_tool_calls(self, calls: List[ToolCall], cancel: Optional[CancelSignal],
                                   on_tool_done: Optional[OnToolDone] = None) -> bool:
        """Authorize and run the calls of one turn, appending results in call order.

        Concurrency-safe tools run alongside each other; any other tool waits
        for everything scheduled before it and runs alone. Permission is
        resolved one call at a time in emission order. Returns True when
        cancellation was observed; started calls are always drained first.
        """
        results: Dict[str, ToolCallResult] = {}
        running: Dict[str, "asyncio.Future"] = {}
        window: List["asyncio.Future"] = []
        barrier: Optional["asyncio.Future"] = None
        ctx = self._tool_context(cancel)
        cancelled = False

        for call in calls:
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            args = call.arguments()
            await self._emit(AgentEvent(
                type="tool_call", content=call.name,
                data={"id": call.id, "name": call.name, "input": args},
            ))

            tool: Optional[Tool] = self.tools.get(call.name)
            if tool is None:
                logger.warning(f"Model requested unknown tool: {call.name}")
                results[call.id] = await self._complete_call(
                    call, ToolCallResult(call.id, f"Unknown tool: {call.name}", is_error=True), on_tool_done,
                )
                continue

            blocked = await self._filter_call(call, args)
            if blocked is not None:
                logger.info(f"Tool call {call.name} blocked before dispatch: {blocked}")
                results[call.id] = await self._complete_call(
                    call, ToolCallResult(call.id, f"Blocked by hook: {blocked}", is_error=True), on_tool_done,
                )
                continue

            if self.gate.check(call.name, args) == PermissionDecision.PROMPT:
                await self._emit(AgentEvent(
                    type="permission_prompt", content=call.name,
                    data={"id": call.id, "name": call.name, "input": args},
                ))
            try:
                allowed, reason = await self.gate.authorize(call.name, args, cancel)
            except RunCancelled:
                cancelled = True
                break
            if not allowed:
                results[call.id] = await self._complete_call(
                    call, ToolCallResult(call.id, reason, is_error=True), on_tool_done,
                )
                continue

            if tool.concurrency_safe:
                after = [barrier] if barrier is not None else []
                task = asyncio.ensure_future(self._execute_call(call, args, ctx, after, on_tool_done))
                window.append(task)
            else:
                after = window + ([barrier] if barrier is not None else [])
                task = asyncio.ensure_future(self._execute_call(call, args, ctx, after, on_tool_done))
                barrier = task
                window = []
            running[call.id] = task

        if running:
            await asyncio.wait(list(running.values()))

        for call in calls:
            if call.id in results:
                result = results[call.id]
            elif call.id in running:
                task = running[call.id]
                if task.exception() is not None:
                    logger.error(f"Tool dispatch crashed for {call.name}: {task.exception()}")
                    result = ToolCallResult(call.id, f"Tool error: {task.exception()}", is_error=True)
                elif task.result() is None:
                    result = ToolCallResult(call.id, CANCELLED_BEFORE_EXECUTION, is_error=True)
                else:
                    result = task.result()
            else:
                result = ToolCallResult(call.id, CANCELLED_BEFORE_EXECUTION, is_error=True)
            self.messages.append(tool_result_message(result.tool_call_id, result.content, result.is_error))

        if cancel is not None and cancel.is_set():
            cancelled = True
        return cancelled
