"""
Turn loop behaviour: termination, ordering, permissions and cancellation.
"""

import asyncio
import threading

import pytest

from agent import ApprovalAction, AgentEvent, CancelSignal, PreToolOutcome
from conftest import CountingRegistry, ScriptedProvider, end_turn, tool_use
from conversation import (
    ROLE_ASSISTANT, ROLE_TOOL_RESULT, ToolCall, assistant_message, user_message,
    STOP_CANCELLED, STOP_END_TURN, STOP_ERROR, STOP_MAX_TOKENS, STOP_MAX_TURNS,
)
from tools import Tool, ToolRegistry, ToolResult


def _results(messages):
    return [m.tool_result for m in messages if m.role == ROLE_TOOL_RESULT]


@pytest.mark.asyncio
async def test_single_turn_answer(make_executor):
    provider = ScriptedProvider([end_turn("Hello!", input_tokens=10, output_tokens=5)])
    executor = make_executor(provider)
    result = await executor.run([user_message("Say hello")])

    assert result.stop_reason == STOP_END_TURN
    assert result.content == "Hello!"
    assert result.turns == 1
    assert result.tokens.input_tokens == 10
    assert result.tokens.output_tokens == 5
    assert len(provider.calls) == 1
    assert result.messages[-1].role == ROLE_ASSISTANT


@pytest.mark.asyncio
async def test_tool_round_trip(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Lookup", output="42")])
    provider = ScriptedProvider([
        tool_use(("Lookup", {"q": "answer"}), input_tokens=20, output_tokens=8),
        end_turn("The answer is 42", input_tokens=40, output_tokens=6),
    ])
    result = await make_executor(provider, tools).run([user_message("What is the answer?")])

    assert result.stop_reason == STOP_END_TURN
    assert result.turns == 2
    assert result.content == "The answer is 42"
    assert result.tokens.input_tokens == 60
    assert recorder.calls == ["Lookup"]
    results = _results(result.messages)
    assert len(results) == 1
    assert results[0].content == "42"
    assert not results[0].is_error
    # The second request saw the tool result
    assert provider.calls[1]["messages"][-1].role == ROLE_TOOL_RESULT


@pytest.mark.asyncio
async def test_max_turns_one_makes_one_call(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Lookup")])
    provider = ScriptedProvider(default=tool_use(("Lookup", {})))
    result = await make_executor(provider, tools).run([user_message("loop")], max_turns=1)

    assert result.stop_reason == STOP_MAX_TURNS
    assert result.turns == 1
    assert len(provider.calls) == 1
    assert "maximum turns (1)" in result.error


@pytest.mark.asyncio
async def test_max_turns_stops_endless_tool_use(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Lookup")])
    provider = ScriptedProvider([tool_use(("Lookup", {})) for _ in range(10)])
    result = await make_executor(provider, tools).run([user_message("loop")], max_turns=3)

    assert result.stop_reason == STOP_MAX_TURNS
    assert result.turns == 3
    assert len(provider.calls) == 3
    assert len(provider.responses) == 7


@pytest.mark.asyncio
async def test_cancel_before_first_call(make_executor):
    provider = ScriptedProvider([end_turn("never")])
    cancel = CancelSignal()
    cancel.set("user pressed ctrl-c")
    result = await make_executor(provider).run([user_message("hi")], cancel=cancel)

    assert result.stop_reason == STOP_CANCELLED
    assert result.turns == 0
    assert result.tokens.total == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_results_follow_call_order_not_completion_order(make_executor, recorder):
    tools = ToolRegistry([
        recorder.async_tool("Slow", output="slow", delay=0.2),
        recorder.async_tool("Fast", output="fast", delay=0.0),
    ])
    first = tool_use(("Slow", {}), ("Fast", {}))
    provider = ScriptedProvider([first, end_turn("done")])
    result = await make_executor(provider, tools).run([user_message("go")])

    assert recorder.completed == ["Fast", "Slow"]
    results = _results(result.messages)
    assert [r.tool_call_id for r in results] == [c.id for c in first.tool_calls]
    assert [r.content for r in results] == ["slow", "fast"]


@pytest.mark.asyncio
async def test_safe_tools_overlap_and_exclusive_tools_run_alone(make_executor, recorder):
    tools = ToolRegistry([
        recorder.async_tool("Peek", delay=0.1, safe=True),
        recorder.sync_tool("Mutate", delay=0.05, safe=False),
    ])
    provider = ScriptedProvider([
        tool_use(("Peek", {}), ("Peek", {}), ("Mutate", {}), ("Mutate", {})),
        end_turn("done"),
    ])
    await make_executor(provider, tools).run([user_message("go")])

    assert recorder.completed[:2] == ["Peek", "Peek"]
    assert recorder.completed[2:] == ["Mutate", "Mutate"]
    assert recorder.max_active == 2


@pytest.mark.asyncio
async def test_serial_tools_never_overlap(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Mutate", delay=0.05)])
    provider = ScriptedProvider([
        tool_use(("Mutate", {}), ("Mutate", {}), ("Mutate", {})),
        end_turn("done"),
    ])
    await make_executor(provider, tools).run([user_message("go")])

    assert len(recorder.completed) == 3
    assert recorder.max_active == 1


@pytest.mark.asyncio
async def test_unknown_tool_never_reaches_the_registry(make_executor, recorder):
    tools = CountingRegistry([recorder.sync_tool("Known")])
    provider = ScriptedProvider([tool_use(("Nope", {})), end_turn("ok")])
    result = await make_executor(provider, tools).run([user_message("go")])

    assert tools.executed == []
    results = _results(result.messages)
    assert results[0].is_error
    assert results[0].content == "Unknown tool: Nope"
    assert result.stop_reason == STOP_END_TURN


@pytest.mark.asyncio
async def test_failed_tool_is_reported_to_the_model(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Broken", fail=True)])
    provider = ScriptedProvider([tool_use(("Broken", {})), end_turn("recovered")])
    result = await make_executor(provider, tools).run([user_message("go")])

    results = _results(result.messages)
    assert results[0].is_error
    assert "Broken failed" in results[0].content
    assert result.content == "recovered"


@pytest.mark.asyncio
async def test_provider_exception_ends_run_with_error(make_executor):
    provider = ScriptedProvider([RuntimeError("connection reset")])
    result = await make_executor(provider).run([user_message("hi")])

    assert result.stop_reason == STOP_ERROR
    assert "connection reset" in result.error
    assert result.turns == 0


@pytest.mark.asyncio
async def test_max_tokens_counts_as_completion(make_executor):
    provider = ScriptedProvider([end_turn("partial answ", stop_reason=STOP_MAX_TOKENS)])
    result = await make_executor(provider).run([user_message("hi")])

    assert result.stop_reason == STOP_END_TURN
    assert result.last_turn_stop_reason == STOP_MAX_TOKENS
    assert result.content == "partial answ"


@pytest.mark.asyncio
async def test_rejected_tool_gets_error_result_without_running(make_executor, recorder):
    tools = CountingRegistry([recorder.sync_tool("Mutate")])
    provider = ScriptedProvider([tool_use(("Mutate", {})), end_turn("ok")])
    result = await make_executor(provider, tools, mode="deny").run([user_message("go")])

    assert tools.executed == []
    results = _results(result.messages)
    assert results[0].is_error
    assert "Permission denied" in results[0].content


@pytest.mark.asyncio
async def test_prompt_without_callback_is_rejection(make_executor, recorder):
    tools = CountingRegistry([recorder.sync_tool("Mutate")])
    provider = ScriptedProvider([tool_use(("Mutate", {})), end_turn("ok")])
    result = await make_executor(provider, tools, mode="default").run([user_message("go")])

    assert tools.executed == []
    assert "requires approval" in _results(result.messages)[0].content


@pytest.mark.asyncio
async def test_allow_always_is_remembered_for_the_session(make_executor, recorder, runtime):
    asked = []

    def confirm(name, params, diff):
        asked.append(name)
        return ApprovalAction.ALLOW_ALWAYS

    tools = ToolRegistry([recorder.sync_tool("Mutate")])
    provider = ScriptedProvider([
        tool_use(("Mutate", {})),
        tool_use(("Mutate", {})),
        end_turn("ok"),
    ])
    result = await make_executor(provider, tools, mode="default", confirm=confirm).run([user_message("go")])

    assert result.stop_reason == STOP_END_TURN
    assert asked == ["Mutate"]
    assert recorder.calls == ["Mutate", "Mutate"]
    assert len(runtime.approvals) == 1


@pytest.mark.asyncio
async def test_user_deny_produces_error_result(make_executor, recorder):
    async def confirm(name, params, diff):
        return ApprovalAction.DENY

    tools = CountingRegistry([recorder.sync_tool("Mutate")])
    provider = ScriptedProvider([tool_use(("Mutate", {})), end_turn("ok")])
    result = await make_executor(provider, tools, mode="default", confirm=confirm).run([user_message("go")])

    assert tools.executed == []
    assert _results(result.messages)[0].content == "User denied Mutate"


@pytest.mark.asyncio
async def test_cancel_during_dispatch_marks_unstarted_calls(make_executor, recorder):
    cancel = CancelSignal()
    tools = ToolRegistry([
        recorder.sync_tool("Stop"),
        recorder.sync_tool("After"),
    ])
    # Cancel fires while the first (exclusive) tool runs; the second must not start
    stop = tools.get("Stop")
    inner = stop.handler

    def cancelling_handler(**kw):
        cancel.set("stop requested")
        return inner(**kw)

    stop.handler = cancelling_handler
    provider = ScriptedProvider([tool_use(("Stop", {}), ("After", {})), end_turn("never")])
    result = await make_executor(provider, tools).run([user_message("go")], cancel=cancel)

    assert result.stop_reason == STOP_CANCELLED
    assert recorder.calls == ["Stop"]
    results = _results(result.messages)
    assert len(results) == 2
    assert not results[0].is_error
    assert results[1].content == "Cancelled before execution"
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_cancel_while_streaming(make_executor):
    provider = ScriptedProvider([end_turn("slow")], delay=1.0)
    cancel = CancelSignal()
    executor = make_executor(provider)

    async def cancel_soon():
        await asyncio.sleep(0.1)
        cancel.set("interrupted")

    asyncio.ensure_future(cancel_soon())
    result = await executor.run([user_message("hi")], cancel=cancel)

    assert result.stop_reason == STOP_CANCELLED
    assert result.turns == 0


@pytest.mark.asyncio
async def test_on_tool_done_fires_per_call(make_executor, recorder):
    seen = []
    tools = ToolRegistry([recorder.sync_tool("A"), recorder.sync_tool("B")])
    provider = ScriptedProvider([tool_use(("A", {}), ("B", {}), ("Missing", {})), end_turn("ok")])
    await make_executor(provider, tools).run(
        [user_message("go")], on_tool_done=lambda call, result: seen.append((call.name, result.is_error)),
    )

    assert sorted(seen) == [("A", False), ("B", False), ("Missing", True)]


def _raising_hook(call, result):
    raise RuntimeError("hook boom")


@pytest.mark.asyncio
async def test_raising_tool_done_hook_on_unknown_tool_does_not_escape(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Known")])
    provider = ScriptedProvider([tool_use(("Nope", {})), end_turn("ok")])
    result = await make_executor(provider, tools).run([user_message("go")], on_tool_done=_raising_hook)

    assert result.stop_reason == STOP_END_TURN
    assert _results(result.messages)[0].content == "Unknown tool: Nope"


@pytest.mark.asyncio
async def test_raising_tool_done_hook_keeps_the_real_result(make_executor, recorder):
    tools = ToolRegistry([recorder.sync_tool("Lookup", output="42")])
    provider = ScriptedProvider([tool_use(("Lookup", {})), end_turn("ok")])
    result = await make_executor(provider, tools).run([user_message("go")], on_tool_done=_raising_hook)

    results = _results(result.messages)
    assert results[0].content == "42"
    assert not results[0].is_error
    assert result.stop_reason == STOP_END_TURN


@pytest.mark.asyncio
async def test_pre_tool_filter_blocks_and_rewrites_calls(make_executor, recorder):
    seen_args = []

    def handler(context=None, working_directory=".", backend=None, **kw):
        seen_args.append(kw)
        return ToolResult(success=True, output="ran")

    tools = ToolRegistry([
        Tool("Echo", "x", {"type": "object"}, handler),
        recorder.sync_tool("Drop"),
    ])

    async def pre_filter(name, args, call_id):
        if name == "Drop":
            return PreToolOutcome(block=True, reason="not today")
        return PreToolOutcome(updated_input={"text": "rewritten"})

    provider = ScriptedProvider([tool_use(("Drop", {}), ("Echo", {"text": "original"})), end_turn("ok")])
    result = await make_executor(provider, tools, pre_tool_filter=pre_filter).run([user_message("go")])

    results = _results(result.messages)
    assert results[0].is_error
    assert results[0].content == "Blocked by hook: not today"
    assert results[1].content == "ran"
    assert recorder.calls == []
    assert seen_args == [{"text": "rewritten"}]
    assistant = [m for m in result.messages if m.role == ROLE_ASSISTANT][0]
    assert assistant.tool_calls[1].arguments() == {"text": "rewritten"}


@pytest.mark.asyncio
async def test_raising_pre_tool_filter_blocks_the_call(make_executor, recorder):
    def pre_filter(name, args, call_id):
        raise ValueError("policy offline")

    tools = ToolRegistry([recorder.sync_tool("Lookup")])
    provider = ScriptedProvider([tool_use(("Lookup", {})), end_turn("ok")])
    result = await make_executor(provider, tools, pre_tool_filter=pre_filter).run([user_message("go")])

    assert recorder.calls == []
    assert _results(result.messages)[0].content == "Blocked by hook: filter error: policy offline"
    assert result.stop_reason == STOP_END_TURN


@pytest.mark.asyncio
async def test_empty_conversation_is_rejected(make_executor):
    with pytest.raises(ValueError):
        await make_executor(ScriptedProvider()).run([])


@pytest.mark.asyncio
async def test_events_are_emitted_in_order(make_executor, recorder):
    events = []

    async def on_event(event: AgentEvent):
        events.append(event.type)

    tools = ToolRegistry([recorder.sync_tool("Lookup")])
    provider = ScriptedProvider([tool_use(("Lookup", {}), text="checking"), end_turn("done")])
    await make_executor(provider, tools, on_event=on_event).run([user_message("go")])

    assert events == [
        "turn_start", "text", "tool_call", "tool_result",
        "turn_start", "text", "done",
    ]


@pytest.mark.asyncio
async def test_failing_event_callback_does_not_break_the_run(make_executor):
    async def on_event(event):
        raise RuntimeError("display crashed")

    provider = ScriptedProvider([end_turn("fine")])
    result = await make_executor(provider, on_event=on_event).run([user_message("hi")])
    assert result.content == "fine"


@pytest.mark.asyncio
async def test_orphaned_tool_calls_are_repaired_before_the_next_request(make_executor):
    history = [
        user_message("earlier"),
        assistant_message("", [ToolCall(id="toolu_orphan", name="Lookup", input="{}")]),
        user_message("continue"),
    ]
    provider = ScriptedProvider([end_turn("ok")])
    await make_executor(provider).run(history)

    sent = provider.calls[0]["messages"]
    assert sent[2].role == ROLE_TOOL_RESULT
    assert sent[2].tool_result.tool_call_id == "toolu_orphan"
    assert sent[2].tool_result.is_error


@pytest.mark.asyncio
async def test_executor_cancel_method_from_another_thread(make_executor):
    provider = ScriptedProvider([end_turn("slow")], delay=1.0)
    executor = make_executor(provider)
    timer = threading.Timer(0.1, executor.cancel)
    timer.start()
    try:
        result = await executor.run([user_message("hi")])
    finally:
        timer.cancel()
    assert result.stop_reason == STOP_CANCELLED
