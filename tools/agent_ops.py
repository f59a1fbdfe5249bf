"""Agent composition tools: Task (run a subagent) and TaskOutput (inspect background tasks)."""

import asyncio
import logging
from typing import Any, Optional

from conversation import AgentRequest
from tools._common import ToolResult, ToolContext

logger = logging.getLogger(__name__)

TASK_OUTPUT_ACTIONS = ("status", "wait", "cancel", "list")


async def run_task(subagent_type: str = "general-purpose", prompt: str = "", description: str = "",
                   model: Optional[str] = None, max_turns: Optional[int] = None,
                   run_in_background: bool = False,
                   context: Optional[ToolContext] = None, **kw: Any) -> ToolResult:
    """Run a subagent to completion (or detach it) and return its final text."""
    if context is None or context.runtime is None:
        return ToolResult(success=False, output="", error="Task tool requires an agent runtime")
    if not prompt.strip():
        return ToolResult(success=False, output="", error="prompt is required")

    request = AgentRequest(
        agent_name=subagent_type,
        prompt=prompt,
        description=description,
        max_turns=max_turns,
        model_override=model,
    )

    if run_in_background:
        from agent.background import AgentTaskRequest, TaskLimitError
        try:
            handle = context.runtime.tasks.run_background(AgentTaskRequest(
                request=request,
                provider=context.provider,
                parent_model=context.model_id,
                working_directory=context.working_directory,
                depth=context.depth,
            ))
        except TaskLimitError as e:
            return ToolResult(success=False, output="", error=str(e))
        return ToolResult(
            success=True,
            output=(f"Started background agent {handle.id} ({subagent_type}). "
                    f"Use TaskOutput with task_id={handle.id} to check on it."),
            metadata={"task_id": handle.id},
        )

    from agent.subagent import SubagentExecutor
    executor = SubagentExecutor(
        context.runtime,
        provider=context.provider,
        parent_model=context.model_id,
        working_directory=context.working_directory,
        parent_depth=context.depth,
        gate=context.gate,
    )
    result = await executor.run(request, cancel=context.cancel)
    return ToolResult(
        success=result.success,
        output=result.content,
        error=result.error,
        metadata={
            "agent": result.agent_name,
            "turns": result.turns,
            "tokens": result.tokens.to_dict(),
        },
    )


async def task_output(action: str = "status", task_id: str = "", timeout: float = 30,
                      context: Optional[ToolContext] = None, **kw: Any) -> ToolResult:
    """Query, wait for, cancel or list background tasks."""
    if context is None or context.runtime is None:
        return ToolResult(success=False, output="", error="TaskOutput requires an agent runtime")
    if action not in TASK_OUTPUT_ACTIONS:
        return ToolResult(success=False, output="",
                          error=f"Unknown action: {action} (expected one of {', '.join(TASK_OUTPUT_ACTIONS)})")
    tasks = context.runtime.tasks

    if action == "list":
        states = tasks.list_states()
        if not states:
            return ToolResult(success=True, output="No background tasks.")
        lines = [f"{s.task_id}  {s.status:<9}  {s.description}" for s in states]
        return ToolResult(success=True, output="\n".join(lines), metadata={"count": len(states)})

    if not task_id:
        return ToolResult(success=False, output="", error="task_id is required")

    if action == "cancel":
        if not tasks.cancel(task_id):
            return ToolResult(success=False, output="", error=f"Task {task_id} is not running")
        return ToolResult(success=True, output=f"Cancellation requested for {task_id}")

    if action == "wait":
        await asyncio.to_thread(tasks.wait, task_id, timeout)

    state = tasks.get_state(task_id)
    if state is None:
        return ToolResult(success=False, output="", error=f"Task not found: {task_id}")
    return ToolResult(
        success=True,
        output=state.summary(),
        metadata={"status": state.status, "bytes_written": state.bytes_written},
    )
