"""
Background tasks: detached subagents and shell commands whose progress is persisted.

Each task owns a directory under the tasks dir:

    <tasks_dir>/<task_id>/output.log      NDJSON events {timestamp, type, data}
    <tasks_dir>/<task_id>/status.json     {status, toolCount?, error?, bytesWritten}
    <tasks_dir>/<task_id>/metadata.json   {id, kind, description, agentName|command, startedAt, ...}

The files are the source of truth. Status queries, listings and crash
recovery all replay them through load_task_state(); a TaskHandle only
caches what this process started.
"""

import asyncio
import json
import logging
import os
import re
import secrets
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from backend import LocalBackend
from conversation import AgentRequest

from .cancel import CancelSignal
from .events import AgentEvent

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_FAILED, STATUS_CANCELLED})

OUTPUT_LOG = "output.log"
STATUS_FILE = "status.json"
METADATA_FILE = "metadata.json"
CANCEL_MARKER = "cancel"

RESULT_TEXT_CHARS = 2000

# Events from a background agent that are worth persisting
_LOGGED_AGENT_EVENTS = frozenset({"text", "tool_call", "tool_result", "compaction", "error", "done"})

_TASK_ID_RE = re.compile(r"^bg-[a-z]+-\d+-[0-9a-f]{6}$")


class TaskLimitError(Exception):
    """Too many background tasks are already running."""
    pass


@dataclass
class CommandTaskRequest:
    """A shell command to run detached"""
    command: str
    description: str = ""
    working_directory: str = "."
    kind = "bash"


@dataclass
class AgentTaskRequest:
    """A subagent to run detached"""
    request: AgentRequest
    provider: Any = None
    parent_model: Optional[str] = None
    working_directory: Optional[str] = None
    depth: int = 0
    kind = "agent"


TaskRequest = Union[CommandTaskRequest, AgentTaskRequest]


def generate_task_id(kind: str) -> str:
    return f"bg-{kind}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def is_valid_task_id(task_id: str) -> bool:
    return bool(_TASK_ID_RE.match(task_id or ""))


def _now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2025-01-31T12:00:00.123Z"""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _parse_iso(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc).timestamp()
    except ValueError:
        return None


def size_limit_message(max_bytes: int) -> str:
    mb = 1024 * 1024
    if max_bytes >= mb and max_bytes % mb == 0:
        return f"Output size limit exceeded ({max_bytes // mb}MB)"
    return f"Output size limit exceeded ({max_bytes} bytes)"


def write_json_atomic(path: str, data: Dict[str, Any]) -> None:
    """Write JSON via a temp file and os.replace so readers never see a partial file."""
    tmp_path = path + ".tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _read_json(path: str) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


# ------------------------------------------------------------------
# Event log
# ------------------------------------------------------------------

class TaskOutputLog:
    """Append-only NDJSON log with a hard size cap.

    The first write that would cross the cap is replaced by a single error
    event and the log closes; every later write is ignored.
    """

    def __init__(self, path: str, max_bytes: int):
        self.path = path
        self.max_bytes = max_bytes
        self.bytes_written = 0
        self.closed = False
        self.limit_exceeded = False
        self._lock = threading.Lock()
        self._fh = None

    def write(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Append one event. Returns False if it was not written."""
        line = self._encode(event_type, data or {})
        with self._lock:
            if self.closed:
                return False
            if self.bytes_written + len(line) > self.max_bytes:
                self.limit_exceeded = True
                self._append(self._encode("error", {"message": size_limit_message(self.max_bytes)}))
                self._close_locked()
                logger.warning(f"Task log {self.path} hit the {self.max_bytes}-byte cap")
                return False
            self._append(line)
            return True

    @staticmethod
    def _encode(event_type: str, data: Dict[str, Any]) -> bytes:
        entry = {"timestamp": _now_iso(), "type": event_type, "data": data}
        return (json.dumps(entry, ensure_ascii=False, default=str) + "\n").encode("utf-8")

    def _append(self, line: bytes) -> None:
        if self._fh is None:
            self._fh = open(self.path, "ab")
        self._fh.write(line)
        self._fh.flush()
        self.bytes_written += len(line)

    def _close_locked(self) -> None:
        self.closed = True
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def close(self) -> None:
        with self._lock:
            self._close_locked()


# ------------------------------------------------------------------
# Replayed state
# ------------------------------------------------------------------

@dataclass
class TaskState:
    """A task as reconstructed from its directory."""
    task_id: str
    status: str
    kind: str = ""
    description: str = ""
    error: Optional[str] = None
    tool_count: int = 0
    bytes_written: int = 0
    started_at: str = ""
    completed_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def output_text(self) -> str:
        """Agent text, or command output lines, in log order."""
        parts = []
        for event in self.events:
            data = event.get("data") or {}
            if event.get("type") == "text":
                parts.append(str(data.get("content", "")))
            elif event.get("type") == "output":
                parts.append(str(data.get("line", "")))
        return "".join(parts)

    def result_text(self, max_chars: int = RESULT_TEXT_CHARS) -> str:
        text = ""
        for event in reversed(self.events):
            if event.get("type") == "done":
                text = str((event.get("data") or {}).get("content", ""))
                break
        if not text:
            text = self.output_text()
        return text[:max_chars]

    def summary(self, max_chars: int = RESULT_TEXT_CHARS) -> str:
        lines = [f"Task {self.task_id} [{self.status}] {self.description}".rstrip()]
        if self.tool_count:
            lines.append(f"Tool calls: {self.tool_count}")
        if self.error:
            lines.append(f"Error: {self.error}")
        result = self.result_text(max_chars)
        if result:
            lines.append("")
            lines.append(result)
        elif not self.terminal:
            lines.append("(no output yet)")
        return "\n".join(lines)


def read_events(log_path: str) -> List[Dict[str, Any]]:
    """Replay an NDJSON log from offset 0, skipping blank and malformed lines."""
    events: List[Dict[str, Any]] = []
    try:
        with open(log_path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict) and "type" in entry:
                    events.append(entry)
    except FileNotFoundError:
        pass
    return events


def load_task_state(task_dir: str) -> Optional[TaskState]:
    """Rebuild a task's state from its status, metadata and event log."""
    status = _read_json(os.path.join(task_dir, STATUS_FILE))
    metadata = _read_json(os.path.join(task_dir, METADATA_FILE)) or {}
    if status is None and not metadata:
        return None
    status = status or {}
    log_path = os.path.join(task_dir, OUTPUT_LOG)
    bytes_written = status.get("bytesWritten")
    if bytes_written is None:
        bytes_written = os.path.getsize(log_path) if os.path.exists(log_path) else 0
    return TaskState(
        task_id=metadata.get("id") or os.path.basename(os.path.normpath(task_dir)),
        status=status.get("status", STATUS_RUNNING),
        kind=metadata.get("kind", ""),
        description=metadata.get("description", ""),
        error=status.get("error"),
        tool_count=status.get("toolCount", 0),
        bytes_written=bytes_written,
        started_at=metadata.get("startedAt", ""),
        completed_at=metadata.get("completedAt"),
        metadata=metadata,
        events=read_events(log_path),
    )


# ------------------------------------------------------------------
# Live side
# ------------------------------------------------------------------

class TaskHandle:
    """In-process handle for a task this manager started. A cache, not the truth."""

    def __init__(self, task_id: str, task_dir: str, kind: str, description: str):
        self.id = task_id
        self.task_dir = task_dir
        self.kind = kind
        self.description = description
        self.cancel_signal = CancelSignal()
        self.status = STATUS_RUNNING
        self.error: Optional[str] = None
        self.thread: Optional[threading.Thread] = None
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task finishes. Returns False on timeout."""
        return self._done.wait(timeout)

    def cancel(self, reason: str = "cancelled") -> bool:
        if self.done:
            return False
        self.cancel_signal.set(reason)
        return True

    def state(self) -> Optional[TaskState]:
        return load_task_state(self.task_dir)

    def result_text(self, max_chars: int = RESULT_TEXT_CHARS) -> str:
        state = self.state()
        return state.result_text(max_chars) if state else ""


class TaskRecorder:
    """Writes one task's log, status and metadata. Used only by that task's worker."""

    def __init__(self, handle: TaskHandle, log: TaskOutputLog, metadata: Dict[str, Any],
                 status_interval: float):
        self.handle = handle
        self.log = log
        self.metadata = metadata
        self.status_interval = status_interval
        self.tool_count = 0
        self._lock = threading.Lock()
        self._last_status_write = 0.0
        self._final = False

    @property
    def _status_path(self) -> str:
        return os.path.join(self.handle.task_dir, STATUS_FILE)

    def start(self) -> None:
        write_json_atomic(os.path.join(self.handle.task_dir, METADATA_FILE), self.metadata)
        self.write_status()

    def write_status(self) -> None:
        with self._lock:
            self._write_status_locked()

    def _write_status_locked(self) -> None:
        data: Dict[str, Any] = {"status": self.handle.status}
        if self.handle.kind == AgentTaskRequest.kind:
            data["toolCount"] = self.tool_count
        if self.handle.error:
            data["error"] = self.handle.error
        data["bytesWritten"] = self.log.bytes_written
        write_json_atomic(self._status_path, data)
        self._last_status_write = time.monotonic()

    def event(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Append an event; trips cancellation once the size cap is hit."""
        with self._lock:
            if self._final:
                return
            self.log.write(event_type, data)
            if self.log.limit_exceeded and not self.handle.cancel_signal.is_set():
                self.handle.cancel_signal.set(size_limit_message(self.log.max_bytes))
            if time.monotonic() - self._last_status_write >= self.status_interval:
                self._write_status_locked()

    def tool_done(self) -> None:
        with self._lock:
            self.tool_count += 1
            if not self._final:
                self._write_status_locked()

    def finish(self, status: str, error: Optional[str] = None, **extra: Any) -> None:
        """Terminal transition. Only the first call has any effect."""
        with self._lock:
            if self._final:
                return
            self._final = True
            if self.log.limit_exceeded:
                status, error = STATUS_FAILED, size_limit_message(self.log.max_bytes)
            self.handle.status = status
            self.handle.error = error
            self.log.close()
            self.metadata["completedAt"] = _now_iso()
            self.metadata.update({k: v for k, v in extra.items() if v is not None})
            write_json_atomic(os.path.join(self.handle.task_dir, METADATA_FILE), self.metadata)
            self._write_status_locked()
        logger.info(f"Background task {self.handle.id} finished: {status}" + (f" ({error})" if error else ""))


class BackgroundTaskManager:
    """Starts detached tasks on daemon threads and answers queries from disk."""

    def __init__(self, config, runtime=None):
        self.config = config
        self.runtime = runtime
        self.tasks_dir = os.path.expanduser(config.tasks_dir)
        self._lock = threading.Lock()
        self._handles: Dict[str, TaskHandle] = {}

    def task_dir(self, task_id: str) -> str:
        return os.path.join(self.tasks_dir, task_id)

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for h in self._handles.values() if not h.done)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def run_background(self, request: TaskRequest) -> TaskHandle:
        """Start a task and return immediately. Raises TaskLimitError at the cap."""
        kind = request.kind
        if isinstance(request, AgentTaskRequest):
            description = request.request.description or request.request.prompt[:60]
        else:
            description = request.description or request.command[:60]

        with self._lock:
            running = sum(1 for h in self._handles.values() if not h.done)
            if running >= self.config.max_concurrent_tasks:
                raise TaskLimitError(f"Maximum concurrent tasks ({self.config.max_concurrent_tasks}) reached")
            task_id = generate_task_id(kind)
            handle = TaskHandle(task_id, self.task_dir(task_id), kind, description)
            self._handles[task_id] = handle

        os.makedirs(handle.task_dir, exist_ok=True)
        metadata: Dict[str, Any] = {
            "id": task_id,
            "kind": kind,
            "description": description,
            "startedAt": _now_iso(),
        }
        if isinstance(request, AgentTaskRequest):
            metadata["agentName"] = request.request.agent_name
        else:
            metadata["command"] = request.command
        log = TaskOutputLog(os.path.join(handle.task_dir, OUTPUT_LOG), self.config.max_task_output_bytes)
        recorder = TaskRecorder(handle, log, metadata, self.config.status_interval)
        recorder.start()

        handle.thread = threading.Thread(
            target=self._worker, args=(handle, request, recorder),
            name=f"task-{task_id}", daemon=True,
        )
        handle.thread.start()
        threading.Thread(target=self._watch_cancel_marker, args=(handle,), daemon=True).start()
        logger.info(f"Background task {task_id} started: {description}")
        return handle

    def _watch_cancel_marker(self, handle: TaskHandle) -> None:
        """Honour cancel requests written by other processes."""
        marker = os.path.join(handle.task_dir, CANCEL_MARKER)
        interval = max(self.config.status_interval, 0.1)
        while not handle._done.wait(interval):
            if os.path.exists(marker):
                logger.info(f"Cancel marker found for {handle.id}")
                handle.cancel("cancelled via marker")
                return

    def _worker(self, handle: TaskHandle, request: TaskRequest, recorder: TaskRecorder) -> None:
        try:
            if isinstance(request, AgentTaskRequest):
                self._run_agent(handle, request, recorder)
            else:
                self._run_command(handle, request, recorder)
        except Exception as e:
            logger.exception(f"Background task {handle.id} crashed")
            recorder.event("error", {"message": str(e)})
            recorder.finish(STATUS_FAILED, error=str(e))
        finally:
            recorder.finish(STATUS_FAILED, error="task ended without a result")
            handle._done.set()

    def _run_command(self, handle: TaskHandle, request: CommandTaskRequest, recorder: TaskRecorder) -> None:
        backend = LocalBackend(request.working_directory)

        def on_output(line: str, is_stderr: bool) -> None:
            text = line.rstrip("\n")
            recorder.event("output", {"line": ("[stderr] " if is_stderr else "") + text + "\n"})

        _, _, rc = backend.run_command_stream(
            request.command, timeout=0, on_output=on_output, cancel=handle.cancel_signal,
        )
        if handle.cancel_signal.is_set():
            recorder.finish(STATUS_CANCELLED, error=handle.cancel_signal.reason or None, exitCode=rc)
        elif rc == 0:
            recorder.event("done", {"exitCode": rc})
            recorder.finish(STATUS_DONE, exitCode=rc)
        else:
            recorder.event("done", {"exitCode": rc})
            recorder.finish(STATUS_FAILED, error=f"exit code {rc}", exitCode=rc)

    def _run_agent(self, handle: TaskHandle, request: AgentTaskRequest, recorder: TaskRecorder) -> None:
        from .subagent import SubagentExecutor

        async def on_event(event: AgentEvent) -> None:
            if event.type in _LOGGED_AGENT_EVENTS:
                recorder.event(event.type, event.to_dict())

        def on_tool_done(call, result) -> None:
            recorder.tool_done()

        executor = SubagentExecutor(
            self.runtime,
            provider=request.provider,
            parent_model=request.parent_model,
            working_directory=request.working_directory,
            parent_depth=request.depth,
            on_event=on_event,
            interactive=False,
        )
        result = asyncio.run(executor.run(
            request.request, cancel=handle.cancel_signal, on_tool_done=on_tool_done,
        ))
        extra = {"turns": result.turns, "tokens": result.tokens.to_dict()}
        if result.success:
            recorder.finish(STATUS_DONE, **extra)
        elif handle.cancel_signal.is_set():
            recorder.finish(STATUS_CANCELLED, error=result.error, **extra)
        else:
            recorder.finish(STATUS_FAILED, error=result.error, **extra)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_handle(self, task_id: str) -> Optional[TaskHandle]:
        with self._lock:
            return self._handles.get(task_id)

    def get_state(self, task_id: str) -> Optional[TaskState]:
        if not is_valid_task_id(task_id):
            return None
        return load_task_state(self.task_dir(task_id))

    def list_states(self) -> List[TaskState]:
        if not os.path.isdir(self.tasks_dir):
            return []
        states = []
        for name in os.listdir(self.tasks_dir):
            if not is_valid_task_id(name):
                continue
            state = load_task_state(self.task_dir(name))
            if state is not None:
                states.append(state)
        states.sort(key=lambda s: s.started_at)
        return states

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[TaskState]:
        """Wait for a task to finish; tasks from other processes are polled on disk."""
        handle = self.get_handle(task_id)
        if handle is not None:
            handle.wait(timeout)
            return self.get_state(task_id)
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            state = self.get_state(task_id)
            if state is None or state.terminal:
                return state
            if deadline is not None and time.monotonic() >= deadline:
                return state
            time.sleep(max(self.config.status_interval, 0.1))

    def cancel(self, task_id: str) -> bool:
        """Cancel a running task. Tasks owned by another process get a cancel marker."""
        handle = self.get_handle(task_id)
        if handle is not None:
            return handle.cancel("cancelled by request")
        state = self.get_state(task_id)
        if state is None or state.terminal:
            return False
        with open(os.path.join(self.task_dir(task_id), CANCEL_MARKER), "w", encoding="utf-8") as f:
            f.write(_now_iso())
        logger.info(f"Wrote cancel marker for {task_id}")
        return True

    def cleanup(self, retention_hours: Optional[float] = None) -> int:
        """Delete finished task directories older than the retention period."""
        hours = self.config.task_retention_hours if retention_hours is None else retention_hours
        cutoff = time.time() - hours * 3600
        removed = 0
        for state in self.list_states():
            if not state.terminal:
                continue
            finished = _parse_iso(state.completed_at or "") or _parse_iso(state.started_at)
            if finished is None or finished > cutoff:
                continue
            shutil.rmtree(self.task_dir(state.task_id), ignore_errors=True)
            with self._lock:
                self._handles.pop(state.task_id, None)
            removed += 1
        if removed:
            logger.info(f"Cleaned up {removed} old background task(s)")
        return removed

    def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel everything still running and wait briefly for the workers."""
        with self._lock:
            handles = [h for h in self._handles.values() if not h.done]
        for handle in handles:
            handle.cancel("runtime shutting down")
        for handle in handles:
            handle.wait(timeout)
