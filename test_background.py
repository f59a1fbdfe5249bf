"""
Background tasks: NDJSON logs, status files, limits, cancellation and replay.
"""

import json
import os
import time

import pytest

from agent import AgentTaskRequest, CommandTaskRequest, TaskLimitError, load_task_state
from agent.background import (
    CANCEL_MARKER, OUTPUT_LOG, STATUS_FILE, METADATA_FILE,
    TaskOutputLog, generate_task_id, is_valid_task_id, size_limit_message,
)
from conftest import ScriptedProvider, end_turn, tool_use
from conversation import AgentRequest


def _log_lines(task_dir):
    with open(os.path.join(task_dir, OUTPUT_LOG), encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def _status(task_dir):
    with open(os.path.join(task_dir, STATUS_FILE), encoding="utf-8") as f:
        return json.load(f)


def test_task_ids():
    task_id = generate_task_id("bash")
    assert task_id.startswith("bg-bash-")
    assert is_valid_task_id(task_id)
    assert not is_valid_task_id("../../etc")
    assert generate_task_id("agent") != generate_task_id("agent")


def test_size_limit_message():
    assert size_limit_message(10 * 1024 * 1024) == "Output size limit exceeded (10MB)"
    assert size_limit_message(500) == "Output size limit exceeded (500 bytes)"


def test_command_task_success(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(
        command="echo one; echo two", description="echo", working_directory=str(tmp_path),
    ))
    assert handle.wait(10)
    state = runtime.tasks.get_state(handle.id)

    assert state.status == "done"
    assert state.kind == "bash"
    assert state.output_text() == "one\ntwo\n"
    assert state.metadata["command"] == "echo one; echo two"
    assert state.completed_at
    status = _status(handle.task_dir)
    assert status["status"] == "done"
    assert "toolCount" not in status
    assert status["bytesWritten"] == os.path.getsize(os.path.join(handle.task_dir, OUTPUT_LOG))


def test_command_task_failure_and_stderr(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(
        command="echo oops >&2; exit 3", working_directory=str(tmp_path),
    ))
    assert handle.wait(10)
    state = handle.state()

    assert state.status == "failed"
    assert state.error == "exit code 3"
    assert "[stderr] oops\n" in state.output_text()


def test_every_log_line_is_an_event(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(
        command="for i in 1 2 3; do echo line $i; done", working_directory=str(tmp_path),
    ))
    handle.wait(10)
    for entry in _log_lines(handle.task_dir):
        assert set(entry) == {"timestamp", "type", "data"}
        assert entry["timestamp"].endswith("Z")


def test_output_cap_fails_task_with_one_error_line(runtime, tmp_path):
    runtime.config.max_task_output_bytes = 600
    handle = runtime.tasks.run_background(CommandTaskRequest(
        command="for i in $(seq 1 500); do echo line $i; done; sleep 5",
        working_directory=str(tmp_path),
    ))
    assert handle.wait(10)
    lines = _log_lines(handle.task_dir)
    errors = [e for e in lines if e["type"] == "error"]

    assert len(errors) == 1
    assert lines[-1] is errors[0]
    assert errors[0]["data"]["message"] == "Output size limit exceeded (600 bytes)"
    state = handle.state()
    assert state.status == "failed"
    assert state.error == "Output size limit exceeded (600 bytes)"


def test_output_log_ignores_writes_after_cap(tmp_path):
    log = TaskOutputLog(str(tmp_path / "out.log"), max_bytes=200)
    assert log.write("output", {"line": "a"})
    assert not log.write("output", {"line": "x" * 500})
    assert not log.write("output", {"line": "b"})
    assert log.closed and log.limit_exceeded
    with open(tmp_path / "out.log", encoding="utf-8") as f:
        types = [json.loads(line)["type"] for line in f]
    assert types == ["output", "error"]


def test_load_task_state_skips_malformed_lines(tmp_path):
    task_dir = tmp_path / "bg-bash-1-abcdef"
    task_dir.mkdir()
    (task_dir / STATUS_FILE).write_text(json.dumps({"status": "running", "bytesWritten": 10}))
    (task_dir / METADATA_FILE).write_text(json.dumps({"id": "bg-bash-1-abcdef", "kind": "bash"}))
    (task_dir / OUTPUT_LOG).write_text(
        '{"timestamp": "t", "type": "output", "data": {"line": "ok\\n"}}\n'
        "not json at all\n"
        "\n"
        '{"timestamp": "t", "type": "output", "data": {"line": "trunc'
    )
    state = load_task_state(str(task_dir))
    assert state.status == "running"
    assert len(state.events) == 1
    assert state.output_text() == "ok\n"
    assert not state.terminal


def test_load_task_state_for_missing_dir(tmp_path):
    assert load_task_state(str(tmp_path / "nothing")) is None


def test_concurrent_task_limit(runtime, tmp_path):
    runtime.config.max_concurrent_tasks = 2
    handles = [
        runtime.tasks.run_background(CommandTaskRequest(command="sleep 5", working_directory=str(tmp_path)))
        for _ in range(2)
    ]
    with pytest.raises(TaskLimitError, match="Maximum concurrent tasks"):
        runtime.tasks.run_background(CommandTaskRequest(command="true", working_directory=str(tmp_path)))
    for handle in handles:
        assert runtime.tasks.cancel(handle.id)
        assert handle.wait(10)
        assert handle.state().status == "cancelled"
    # Slots free up once tasks end
    extra = runtime.tasks.run_background(CommandTaskRequest(command="true", working_directory=str(tmp_path)))
    assert extra.wait(10)


def test_cancel_marker_from_another_process(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(
        command="sleep 10", working_directory=str(tmp_path),
    ))
    with open(os.path.join(handle.task_dir, CANCEL_MARKER), "w") as f:
        f.write("now")
    assert handle.wait(10)
    assert handle.state().status == "cancelled"


def test_cancel_finished_task_is_refused(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(command="true", working_directory=str(tmp_path)))
    handle.wait(10)
    assert not runtime.tasks.cancel(handle.id)
    assert not runtime.tasks.cancel("bg-bash-0-000000")


def test_list_and_cleanup(runtime, tmp_path):
    handle = runtime.tasks.run_background(CommandTaskRequest(command="true", working_directory=str(tmp_path)))
    handle.wait(10)
    assert [s.task_id for s in runtime.tasks.list_states()] == [handle.id]

    assert runtime.tasks.cleanup() == 0
    assert runtime.tasks.cleanup(retention_hours=0) == 1
    assert not os.path.exists(handle.task_dir)
    assert runtime.tasks.list_states() == []


def test_background_agent_task(runtime, tmp_path):
    (tmp_path / "notes.txt").write_text("remember the milk\n")
    provider = ScriptedProvider([
        tool_use(("Read", {"file_path": "notes.txt"}), text="Reading. "),
        end_turn("The note says: remember the milk"),
    ])
    handle = runtime.tasks.run_background(AgentTaskRequest(
        request=AgentRequest(agent_name="Explore", prompt="what does the note say?", description="read note"),
        provider=provider,
        working_directory=str(tmp_path),
    ))
    assert handle.wait(15)
    state = runtime.tasks.get_state(handle.id)

    assert state.status == "done"
    assert state.kind == "agent"
    assert state.tool_count == 1
    assert state.metadata["agentName"] == "Explore"
    assert state.result_text() == "The note says: remember the milk"
    types = [e["type"] for e in state.events]
    assert "tool_call" in types and "tool_result" in types
    assert types[-1] == "done"
    assert _status(handle.task_dir)["toolCount"] == 1


def test_background_agent_cannot_prompt(runtime, tmp_path):
    asked = []
    runtime.confirm_callback = lambda *a: asked.append(a) or "allow_once"
    provider = ScriptedProvider([
        tool_use(("Bash", {"command": "touch created.txt"})),
        end_turn("done"),
    ])
    handle = runtime.tasks.run_background(AgentTaskRequest(
        request=AgentRequest(agent_name="Bash", prompt="make a file"),
        provider=provider,
        working_directory=str(tmp_path),
    ))
    assert handle.wait(15)
    assert asked == []
    assert not (tmp_path / "created.txt").exists()


def test_wait_polls_tasks_from_other_processes(runtime, tmp_path):
    task_id = "bg-bash-1-00aa11"
    task_dir = os.path.join(runtime.tasks.tasks_dir, task_id)
    os.makedirs(task_dir)
    with open(os.path.join(task_dir, STATUS_FILE), "w") as f:
        json.dump({"status": "done", "bytesWritten": 0}, f)
    start = time.monotonic()
    state = runtime.tasks.wait(task_id, timeout=5)
    assert state.status == "done"
    assert time.monotonic() - start < 5
