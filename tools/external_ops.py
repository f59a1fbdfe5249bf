"""Shell tool: Bash."""

import logging
from typing import Any, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult, ToolContext

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 600


def _truncate_output(output: str) -> str:
    if len(output) <= 20000:
        return output
    lines_out = output.split("\n")
    if len(lines_out) > 200:
        return ("\n".join(lines_out[:100]) + f"\n\n... [{len(lines_out) - 150} lines truncated] ...\n\n"
                + "\n".join(lines_out[-50:]))
    return output[:10000] + "\n\n... [truncated] ...\n\n" + output[-5000:]


def run_command(command: str = "", timeout: Optional[int] = None, description: str = "",
                run_in_background: bool = False,
                backend: Optional[Backend] = None, working_directory: str = ".",
                context: Optional[ToolContext] = None, **kw: Any) -> ToolResult:
    """Execute a shell command. A timeout is reported as a failed result."""
    if not (command or "").strip():
        return ToolResult(success=False, output="", error="command is required")

    runtime = context.runtime if context else None
    if timeout is None:
        timeout = runtime.config.bash_timeout if runtime else DEFAULT_TIMEOUT
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))

    if run_in_background:
        if runtime is None:
            return ToolResult(success=False, output="", error="Background commands are not available here")
        from agent.background import CommandTaskRequest, TaskLimitError
        try:
            handle = runtime.tasks.run_background(CommandTaskRequest(
                command=command,
                description=description or command[:60],
                working_directory=working_directory,
            ))
        except TaskLimitError as e:
            return ToolResult(success=False, output="", error=str(e))
        return ToolResult(
            success=True,
            output=(f"Started background command {handle.id}. "
                    f"Use TaskOutput with task_id={handle.id} to check on it."),
            metadata={"task_id": handle.id},
        )

    try:
        b = backend or LocalBackend(working_directory)
        cancel = context.cancel if context else None
        stdout, stderr, rc = b.run_command_stream(command, cwd=".", timeout=timeout, cancel=cancel)

        parts = []
        if stdout:
            parts.append(stdout)
        if stderr:
            parts.append(f"[stderr]\n{stderr}")
        output = "\n".join(parts) if parts else "(no output)"
        if rc == -1:
            return ToolResult(success=False, output=_truncate_output(output),
                              error=f"Command timed out after {timeout}s", metadata={"exit_code": rc})
        if rc == -2:
            return ToolResult(success=False, output=_truncate_output(output),
                              error="Command cancelled", metadata={"exit_code": rc})
        if rc != 0:
            output = f"[exit code: {rc}]\n{output}"

        return ToolResult(
            success=rc == 0, output=_truncate_output(output),
            error=None if rc == 0 else f"Command exited with code {rc}",
            metadata={"exit_code": rc},
        )
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))
