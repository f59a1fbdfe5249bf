"""
Shared fixtures: a scripted provider, recording tools and an isolated runtime.
"""

import asyncio
import json
import threading
import time
from typing import Any, Dict, List, Optional

import pytest

from agent import RuntimeContext, TurnExecutor
from config import AppConfig, ModelConfig
from conversation import ToolCall, TurnResult, Usage, STOP_END_TURN, STOP_TOOL_USE
from providers import ProviderAdapter, StreamChunk, CHUNK_DONE, CHUNK_TEXT
from tools import Tool, ToolRegistry, ToolResult


class ScriptedProvider(ProviderAdapter):
    """Replays canned TurnResults (or raises canned exceptions) and records each request."""

    name = "scripted"

    def __init__(self, responses=None, default: Optional[TurnResult] = None,
                 model_id: str = "test-model", delay: float = 0.0):
        super().__init__(model_id)
        self.responses = list(responses or [])
        self.default = default
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def _iter_events(self, messages, tools, system_prompt, model_id, config):
        raise NotImplementedError

    def _iter_chunks(self, messages, tools, system_prompt, model_id, config):
        with self._lock:
            self.calls.append({
                "messages": list(messages),
                "tools": [t["name"] for t in tools],
                "system_prompt": system_prompt,
                "model_id": model_id,
                "max_tokens": config.max_tokens,
            })
            item = self.responses.pop(0) if self.responses else self.default
        if self.delay:
            time.sleep(self.delay)
        if item is None:
            raise AssertionError("ScriptedProvider ran out of responses")
        if isinstance(item, Exception):
            raise item
        if item.content:
            yield StreamChunk(type=CHUNK_TEXT, text=item.content)
        yield StreamChunk(type=CHUNK_DONE, stop_reason=item.stop_reason, usage=item.usage, response=item)


def end_turn(text: str = "", input_tokens: int = 0, output_tokens: int = 0,
             stop_reason: str = STOP_END_TURN) -> TurnResult:
    return TurnResult(content=text, stop_reason=stop_reason, usage=Usage(input_tokens, output_tokens))


_call_ids = iter(range(1, 1_000_000))


def tool_use(*calls, text: str = "", input_tokens: int = 0, output_tokens: int = 0) -> TurnResult:
    """tool_use(("Name", {args}), ...) -> a tool_use turn with fresh call ids."""
    tool_calls = [
        ToolCall(id=f"toolu_{next(_call_ids)}", name=name, input=json.dumps(args))
        for name, args in calls
    ]
    return TurnResult(
        content=text, tool_calls=tool_calls, stop_reason=STOP_TOOL_USE,
        usage=Usage(input_tokens, output_tokens),
    )


class RecordingTools:
    """Builds tools whose invocations are recorded in call order."""

    def __init__(self):
        self.calls: List[str] = []
        self.completed: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _enter(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _exit(self, name: str) -> None:
        with self._lock:
            self.active -= 1
            self.completed.append(name)

    def sync_tool(self, name: str, output: str = "ok", delay: float = 0.0,
                  safe: bool = False, fail: bool = False) -> Tool:
        def handler(**kw):
            self._enter(name)
            try:
                if delay:
                    time.sleep(delay)
                if fail:
                    return ToolResult(success=False, output="", error=f"{name} failed")
                return ToolResult(success=True, output=output)
            finally:
                self._exit(name)
        return Tool(name=name, description=name, input_schema={"type": "object", "properties": {}},
                    handler=handler, read_only=safe, concurrency_safe=safe)

    def async_tool(self, name: str, output: str = "ok", delay: float = 0.0, safe: bool = True,
                   on_start=None) -> Tool:
        async def handler(context=None, **kw):
            self._enter(name)
            try:
                if on_start is not None:
                    on_start(context)
                if delay:
                    await asyncio.sleep(delay)
                return ToolResult(success=True, output=output)
            finally:
                self._exit(name)
        return Tool(name=name, description=name, input_schema={"type": "object", "properties": {}},
                    handler=handler, read_only=safe, concurrency_safe=safe)


class CountingRegistry(ToolRegistry):
    """Counts every execution request that reaches the registry."""

    def __init__(self, tools=None):
        super().__init__(tools)
        self.executed: List[str] = []

    async def aexecute(self, name, args, ctx):
        self.executed.append(name)
        return await super().aexecute(name, args, ctx)


@pytest.fixture
def app_cfg(tmp_path):
    return AppConfig(
        working_directory=str(tmp_path),
        tasks_dir=str(tmp_path / "tasks"),
        settings_path="",
        permission_mode="default",
        default_permission="ask",
        permission_allow="",
        permission_deny="",
        max_turns=50,
        status_interval=0.05,
        log_file=str(tmp_path / "test.log"),
    )


@pytest.fixture
def runtime(app_cfg):
    rt = RuntimeContext.create(config=app_cfg, model_cfg=ModelConfig(provider="bedrock", max_tokens=4096))
    yield rt
    rt.shutdown()


@pytest.fixture
def recorder():
    return RecordingTools()


@pytest.fixture
def make_executor(runtime):
    def _make(provider, tools=None, mode="yolo", confirm=None, **kwargs) -> TurnExecutor:
        return TurnExecutor(
            runtime,
            provider=provider,
            tools=tools if tools is not None else ToolRegistry(),
            gate=runtime.create_gate(mode, confirm_callback=confirm),
            system_prompt="You are a test agent.",
            working_directory=runtime.config.working_directory,
            **kwargs,
        )
    return _make
