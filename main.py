"""
Codex Runtime - a coding agent engine for Amazon Bedrock and the Anthropic API.
Command-line front end built with argparse + Rich.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import time
from typing import Any, Dict

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from agent import (
    AgentEvent, AgentTaskRequest, ApprovalAction, CancelSignal, RuntimeContext,
    SubagentExecutor, TaskLimitError, load_task_state,
)
from agent.background import read_events
from config import app_config, model_config, get_credentials_info
from conversation import AgentRequest, user_message

# Configure logging to file so it doesn't interfere with terminal output
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

console = Console(highlight=False)


# ============================================================
# Constants
# ============================================================

TOOL_ICONS = {
    "Read":       "\U0001f4c4 ",
    "Write":      "✏️ ",
    "Edit":       "\U0001f527 ",
    "Bash":       "▶ ",
    "Grep":       "\U0001f50d ",
    "Glob":       "\U0001f50e ",
    "Task":       "\U0001f916 ",
    "TaskOutput": "\U0001f4cb ",
}

TOOL_DANGER = {"Write", "Edit", "Bash"}

STATUS_STYLES = {
    "running": "#d29922",
    "done": "#3fb950",
    "failed": "#f85149",
    "cancelled": "#6e7681",
}

# Lines of a tool result to show before collapsing
RESULT_PREVIEW_LINES = 8


# ============================================================
# Rendering
# ============================================================

def _tool_summary(name: str, params: Dict[str, Any]) -> str:
    if name == "Bash":
        return params.get("command", "")
    if name in ("Read", "Write", "Edit"):
        return params.get("file_path", "")
    if name in ("Grep", "Glob"):
        return params.get("pattern", "")
    if name == "Task":
        return f"{params.get('subagent_type', '')}: {params.get('description') or params.get('prompt', '')[:60]}"
    return json.dumps(params, default=str)[:120]


def _colored_diff(diff: str) -> Text:
    text = Text()
    for line in diff.splitlines():
        if line.startswith("+++") or line.startswith("---"):
            text.append(line + "\n", style="bold #8b949e")
        elif line.startswith("@@"):
            text.append(line + "\n", style="#79c0ff")
        elif line.startswith("+"):
            text.append(line + "\n", style="#3fb950")
        elif line.startswith("-"):
            text.append(line + "\n", style="#f85149")
        else:
            text.append(line + "\n", style="#6e7681")
    return text


class EventPrinter:
    """Renders AgentEvents to the console as they stream in."""

    def __init__(self, show_thinking: bool = False):
        self.show_thinking = show_thinking
        self._mid_line = False

    def _break_line(self) -> None:
        if self._mid_line:
            console.print()
            self._mid_line = False

    async def __call__(self, event: AgentEvent) -> None:
        data = event.data or {}
        if event.type == "text":
            console.print(event.content, end="", markup=False)
            self._mid_line = not event.content.endswith("\n")
        elif event.type == "thinking":
            if self.show_thinking:
                console.print(Text(event.content, style="italic #6e7681"), end="")
                self._mid_line = True
        elif event.type == "tool_call":
            self._break_line()
            name = data.get("name", event.content)
            style = "bold #d29922" if name in TOOL_DANGER else "bold #79c0ff"
            line = Text("   ")
            line.append(TOOL_ICONS.get(name, "• ") + name, style=style)
            line.append("  " + _tool_summary(name, data.get("input") or {}), style="#8b949e")
            console.print(line)
        elif event.type == "tool_result":
            self._render_result(event.content, data.get("is_error", False))
        elif event.type == "compaction":
            self._break_line()
            console.print(Text(f"   ↻ context {event.content}", style="italic #d2a8ff"))
        elif event.type == "compaction_failed":
            self._break_line()
            console.print(Text(f"   ⚠ compaction failed: {event.content}", style="#e3b341"))
        elif event.type == "error":
            self._break_line()
            console.print(Text(f"   ✗ {event.content}", style="bold #f85149"))
        elif event.type == "done":
            self._break_line()

    def _render_result(self, content: str, is_error: bool) -> None:
        lines = content.splitlines() or [""]
        shown = lines[:RESULT_PREVIEW_LINES]
        style = "#f85149" if is_error else "#6e7681"
        for line in shown:
            console.print(Text(f"     {line}", style=style))
        if len(lines) > RESULT_PREVIEW_LINES:
            console.print(Text(f"     ... {len(lines) - RESULT_PREVIEW_LINES} more lines", style="#484f58"))


def confirm_tool(tool_name: str, params: Dict[str, Any], diff: str) -> ApprovalAction:
    """Interactive approval: y = once, a = always this session, n = deny."""
    console.print()
    console.print(Text.from_markup(f"   [bold #d29922]Allow {tool_name}?[/]"))
    if tool_name in ("Write", "Edit"):
        console.print(_colored_diff(diff))
    else:
        console.print(Text(f"   {diff}", style="#8b949e"))
    answer = Prompt.ask("   [y] once  [a] always  [n] deny", choices=["y", "a", "n"], default="y")
    if answer == "a":
        return ApprovalAction.ALLOW_ALWAYS
    if answer == "y":
        return ApprovalAction.ALLOW_ONCE
    return ApprovalAction.DENY


def _install_sigint(cancel: CancelSignal) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set, "interrupted by user")
    except (NotImplementedError, RuntimeError):
        signal.signal(signal.SIGINT, lambda *_: cancel.set("interrupted by user"))


# ============================================================
# Commands
# ============================================================

async def _run_foreground(runtime: RuntimeContext, args: argparse.Namespace) -> int:
    printer = EventPrinter(show_thinking=args.show_thinking)
    provider = runtime.create_provider(args.provider, args.model)
    cancel = CancelSignal()
    _install_sigint(cancel)

    if args.agent:
        executor = SubagentExecutor(
            runtime, provider=provider, parent_model=provider.model_id,
            working_directory=runtime.config.working_directory, parent_depth=0,
            gate=runtime.create_gate(args.mode), on_event=printer,
        )
        result = await executor.run(
            AgentRequest(agent_name=args.agent, prompt=args.prompt, max_turns=args.max_turns),
            cancel=cancel,
        )
        console.print()
        if not result.success:
            console.print(Text(f"   ✗ {result.error}", style="bold #f85149"))
        _print_usage(result.turns, result.tokens.input_tokens, result.tokens.output_tokens)
        return 0 if result.success else 1

    executor = runtime.create_executor(provider=provider, on_event=printer, mode=args.mode)
    result = await executor.run([user_message(args.prompt)], max_turns=args.max_turns, cancel=cancel)
    console.print()
    if result.stop_reason != "end_turn":
        style = "#6e7681" if result.stop_reason == "cancelled" else "bold #f85149"
        detail = f": {result.error}" if result.error else ""
        console.print(Text(f"   stopped ({result.stop_reason}){detail}", style=style))
    _print_usage(result.turns, result.tokens.input_tokens, result.tokens.output_tokens)
    return 0 if result.success else 1


def _print_usage(turns: int, input_tokens: int, output_tokens: int) -> None:
    console.print(Text(
        f"   {turns} turn(s) · {input_tokens:,} in / {output_tokens:,} out",
        style="#484f58",
    ))


def _run_background(runtime: RuntimeContext, args: argparse.Namespace) -> int:
    provider = runtime.create_provider(args.provider, args.model)
    request = AgentRequest(
        agent_name=args.agent or "general-purpose",
        prompt=args.prompt,
        description=args.prompt[:60],
        max_turns=args.max_turns,
    )
    try:
        handle = runtime.tasks.run_background(AgentTaskRequest(
            request=request,
            provider=provider,
            parent_model=provider.model_id,
            working_directory=runtime.config.working_directory,
        ))
    except TaskLimitError as e:
        console.print(Text(f"   ✗ {e}", style="bold #f85149"))
        return 1

    console.print(Text.from_markup(f"   [bold #79c0ff]{handle.id}[/] started"))
    console.print(Text(f"   follow from another terminal: main.py tasks {handle.id}", style="#6e7681"))
    try:
        while not handle.wait(timeout=0.5):
            pass
    except KeyboardInterrupt:
        handle.cancel("interrupted by user")
        handle.wait(timeout=10)
    state = handle.state()
    if state is not None:
        _print_task(state, tail=0)
    return 0 if state is not None and state.status == "done" else 1


def cmd_run(args: argparse.Namespace) -> int:
    working_dir = os.path.abspath(args.directory)
    if not os.path.isdir(working_dir):
        console.print(f"Error: {working_dir} is not a directory")
        return 1
    runtime = RuntimeContext.create(working_directory=working_dir, confirm_callback=confirm_tool)
    logger.info(f"CLI run in {working_dir} ({get_credentials_info()})")
    try:
        if args.background:
            return _run_background(runtime, args)
        return asyncio.run(_run_foreground(runtime, args))
    finally:
        runtime.shutdown()


def _print_task(state, tail: int) -> None:
    style = STATUS_STYLES.get(state.status, "")
    line = Text("   ")
    line.append(state.task_id, style="bold")
    line.append("  ")
    line.append(state.status, style=style)
    line.append(f"  {state.description}")
    console.print(line)
    if state.error:
        console.print(Text(f"   error: {state.error}", style="#f85149"))
    console.print(Text(
        f"   started {state.started_at}  tools {state.tool_count}  log {state.bytes_written:,} bytes",
        style="#6e7681",
    ))
    if tail:
        for event in state.events[-tail:]:
            data = json.dumps(event.get("data", {}), ensure_ascii=False)[:160]
            console.print(Text(f"   {event.get('timestamp', '')}  {event.get('type', ''):<12} {data}", style="#8b949e"))
    else:
        result = state.result_text()
        if result:
            console.print()
            console.print(result, markup=False)


def cmd_tasks(args: argparse.Namespace) -> int:
    runtime = RuntimeContext.create()
    tasks = runtime.tasks
    if args.cleanup:
        removed = tasks.cleanup()
        console.print(Text(f"   removed {removed} finished task(s)", style="#6e7681"))
        return 0

    if args.task_id:
        state = tasks.get_state(args.task_id)
        if state is None:
            console.print(Text(f"   Task not found: {args.task_id}", style="#f85149"))
            return 1
        if not args.follow:
            _print_task(state, args.tail)
            return 0
        # Follow: replay the log as it grows until the task is terminal
        log_path = os.path.join(tasks.task_dir(args.task_id), "output.log")
        seen = 0
        try:
            while True:
                events = read_events(log_path)
                for event in events[seen:]:
                    data = event.get("data") or {}
                    if event.get("type") in ("text", "output"):
                        console.print(data.get("content", data.get("line", "")), end="", markup=False)
                    elif event.get("type") == "tool_call":
                        console.print(Text(f"\n   {TOOL_ICONS.get(data.get('name'), '')}{data.get('name')}", style="#79c0ff"))
                seen = len(events)
                state = load_task_state(tasks.task_dir(args.task_id))
                if state is None or state.terminal:
                    break
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        console.print()
        if state is not None:
            _print_task(state, tail=0)
        return 0

    states = tasks.list_states()
    if not states:
        console.print(Text("   No background tasks.", style="#8b949e"))
        return 0
    tbl = Table(padding=(0, 1), expand=False, box=None, show_header=True, header_style="bold #8b949e")
    tbl.add_column("ID")
    tbl.add_column("Status")
    tbl.add_column("Tools", justify="right")
    tbl.add_column("Started")
    tbl.add_column("Description")
    for s in states:
        tbl.add_row(s.task_id, Text(s.status, style=STATUS_STYLES.get(s.status, "")),
                    str(s.tool_count), s.started_at, s.description)
    console.print(tbl)
    return 0


def cmd_cancel(args: argparse.Namespace) -> int:
    runtime = RuntimeContext.create()
    if runtime.tasks.cancel(args.task_id):
        console.print(Text(f"   cancellation requested for {args.task_id}", style="#3fb950"))
        return 0
    console.print(Text(f"   {args.task_id} is not running", style="#e3b341"))
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Codex Runtime - Coding Agent Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py run "fix the failing test"          Run in current directory
  python main.py run -d ~/my-project --mode plan "…"   Read-only run in a project
  python main.py run --agent Explore "where is auth?"  Run one subagent directly
  python main.py tasks                                 List background tasks
  python main.py cancel bg-agent-1700000000000-a1b2c3  Cancel a background task
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the agent on a prompt")
    run.add_argument("prompt", help="Task for the agent")
    run.add_argument("-d", "--directory", default=".",
                     help="Working directory for the agent (default: current directory)")
    run.add_argument("--model", default=None, help=f"Model id (default: {model_config.model_id})")
    run.add_argument("--provider", default=None, choices=["bedrock", "anthropic"],
                     help=f"Provider (default: {model_config.provider})")
    run.add_argument("--max-turns", type=int, default=None,
                     help=f"Turn limit (default: {app_config.max_turns})")
    run.add_argument("--mode", default=None, choices=["default", "plan", "yolo", "deny"],
                     help=f"Permission mode (default: {app_config.permission_mode})")
    run.add_argument("--agent", default=None, help="Run a named subagent (e.g. Explore, Plan)")
    run.add_argument("--background", action="store_true", help="Run as a background task")
    run.add_argument("--show-thinking", action="store_true", help="Print extended thinking")
    run.set_defaults(func=cmd_run)

    tasks = sub.add_parser("tasks", help="List or inspect background tasks")
    tasks.add_argument("task_id", nargs="?", help="Task to inspect")
    tasks.add_argument("--tail", type=int, default=0, help="Show the last N log events")
    tasks.add_argument("-f", "--follow", action="store_true", help="Stream the task log until it finishes")
    tasks.add_argument("--cleanup", action="store_true", help="Delete finished tasks past retention")
    tasks.set_defaults(func=cmd_tasks)

    cancel = sub.add_parser("cancel", help="Cancel a running background task")
    cancel.add_argument("task_id")
    cancel.set_defaults(func=cmd_cancel)
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
