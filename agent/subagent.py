"""
Subagents: named agent definitions and the executor that runs one as a nested TurnExecutor.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from conversation import (
    AgentRequest, AgentResult, user_message,
    STOP_CANCELLED, STOP_END_TURN, STOP_MAX_TURNS,
)
from providers import ProviderAdapter
from tools import READ_ONLY_TOOL_NAMES, TASK_TOOL_NAME

from .cancel import CancelSignal
from .core import TurnExecutor
from .events import EventCallback
from .execution import OnToolDone
from .permissions import PermissionGate, checker_for_mode
from .prompts import compose_system_prompt

logger = logging.getLogger(__name__)


@dataclass
class AgentDefinition:
    """A named subagent: its role prompt, tool subset, turn limit and permission mode."""
    name: str
    description: str
    system_prompt: str
    tools: Optional[List[str]] = None  # None: every registered tool
    disallowed_tools: List[str] = field(default_factory=list)
    max_turns: int = 50
    permission_mode: str = "default"


BUILTIN_AGENTS: List[AgentDefinition] = [
    AgentDefinition(
        name="general-purpose",
        description="General agent for multi-step research and implementation tasks.",
        system_prompt=(
            "You are a general-purpose coding agent. Complete the task fully: search, read, "
            "edit and run commands as needed, then report what you did."
        ),
        max_turns=100,
    ),
    AgentDefinition(
        name="Explore",
        description="Fast read-only codebase exploration: find files, search code, answer questions.",
        system_prompt=(
            "You are a codebase exploration agent. Locate the relevant files and code paths "
            "quickly and report concrete findings with file paths and line numbers. "
            "You cannot modify anything."
        ),
        tools=["Read", "Glob", "Grep", "WebFetch", "WebSearch"],
        max_turns=30,
        permission_mode="plan",
    ),
    AgentDefinition(
        name="Plan",
        description="Read-only planning: investigates and returns a step-by-step implementation plan.",
        system_prompt=(
            "You are a software architect. Investigate the codebase and produce a concrete, "
            "ordered implementation plan naming the files to change. Do not make changes."
        ),
        tools=sorted(READ_ONLY_TOOL_NAMES - {"TaskOutput"}),
        max_turns=50,
        permission_mode="plan",
    ),
    AgentDefinition(
        name="Bash",
        description="Command execution specialist for builds, tests, git and other terminal work.",
        system_prompt=(
            "You are a command execution agent. Run the commands the task needs, inspect their "
            "output and report results and failures precisely."
        ),
        tools=["Bash", "Read", "Glob", "Grep"],
        max_turns=30,
    ),
    AgentDefinition(
        name="Review",
        description="Code review: reads changes, runs checks and reports issues by severity.",
        system_prompt=(
            "You are a code reviewer. Examine the relevant code and changes, run available "
            "checks, and report concrete issues ordered by severity with file and line."
        ),
        tools=["Read", "Glob", "Grep", "Bash"],
        max_turns=50,
    ),
]


class AgentRegistry:
    """Agent definitions by name. Starts with the built-ins; register() adds or replaces."""

    def __init__(self, agents: Optional[List[AgentDefinition]] = None):
        self._lock = threading.Lock()
        self._agents: Dict[str, AgentDefinition] = {}
        for agent in (BUILTIN_AGENTS if agents is None else agents):
            self._agents[agent.name] = agent

    def register(self, agent: AgentDefinition) -> None:
        with self._lock:
            self._agents[agent.name] = agent

    def get(self, name: str) -> Optional[AgentDefinition]:
        with self._lock:
            return self._agents.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._agents)


class SubagentExecutor:
    """Runs an AgentRequest in an isolated TurnExecutor one level below its parent.

    The child gets a fresh conversation, its own restricted tool registry and
    permission checker, and shares only the RuntimeContext (approvals, model
    catalog, task manager) with the parent.
    """

    def __init__(
        self,
        runtime,
        provider: Optional[ProviderAdapter] = None,
        parent_model: Optional[str] = None,
        working_directory: Optional[str] = None,
        parent_depth: int = 0,
        gate: Optional[PermissionGate] = None,
        on_event: Optional[EventCallback] = None,
        interactive: bool = True,
    ):
        self.runtime = runtime
        self.provider = provider
        self.parent_model = parent_model
        self.working_directory = working_directory or runtime.config.working_directory
        self.depth = parent_depth + 1
        self.gate = gate
        self.on_event = on_event
        self.interactive = interactive

    def resolve_model(self, request: AgentRequest) -> str:
        return request.model_override or self.parent_model or self.runtime.config.default_model

    def _child_gate(self, agent: AgentDefinition) -> PermissionGate:
        if self.gate is None:
            return self.runtime.create_gate(mode=agent.permission_mode, interactive=self.interactive)
        if agent.permission_mode == "default":
            return self.gate
        return self.gate.with_checker(checker_for_mode(
            agent.permission_mode,
            rules=self.runtime.rules,
            default_mode=self.runtime.default_mode,
            approvals=self.gate.approvals,
        ))

    def build_executor(self, agent: AgentDefinition, request: AgentRequest) -> TurnExecutor:
        denied = list(agent.disallowed_tools)
        if self.depth >= self.runtime.config.max_agent_depth:
            denied.append(TASK_TOOL_NAME)
        tools = self.runtime.tools.restricted(allowed=agent.tools, denied=denied)
        return TurnExecutor(
            self.runtime,
            provider=self.provider or self.runtime.create_provider(),
            tools=tools,
            gate=self._child_gate(agent),
            system_prompt=compose_system_prompt(
                self.working_directory, tools.names(), agent_prompt=agent.system_prompt,
            ),
            model_id=self.resolve_model(request),
            working_directory=self.working_directory,
            depth=self.depth,
            on_event=self.on_event,
        )

    async def run(self, request: AgentRequest, cancel: Optional[CancelSignal] = None,
                  on_tool_done: Optional[OnToolDone] = None) -> AgentResult:
        agent = self.runtime.agents.get(request.agent_name)
        if agent is None:
            return AgentResult(
                agent_name=request.agent_name, success=False,
                error=f"unknown agent type: {request.agent_name}",
            )
        max_depth = self.runtime.config.max_agent_depth
        if self.depth > max_depth:
            return AgentResult(
                agent_name=agent.name, success=False,
                error=f"maximum agent depth ({max_depth}) exceeded",
            )

        max_turns = request.max_turns or agent.max_turns
        executor = self.build_executor(agent, request)
        logger.info(
            f"Subagent {agent.name} started: depth={self.depth} model={executor.model_id} "
            f"max_turns={max_turns} ({request.description or request.prompt[:60]})"
        )
        child_cancel = cancel.child() if cancel is not None else CancelSignal()
        result = await executor.run(
            [user_message(request.prompt)],
            max_turns=max_turns,
            on_tool_done=on_tool_done,
            cancel=child_cancel,
        )

        outcome = AgentResult(
            agent_name=agent.name,
            success=result.stop_reason == STOP_END_TURN,
            content=result.content,
            turns=result.turns,
            tokens=result.tokens,
        )
        if result.stop_reason == STOP_MAX_TURNS:
            outcome.error = f"reached maximum turns ({max_turns})"
        elif result.stop_reason == STOP_CANCELLED:
            outcome.error = "agent cancelled"
        elif not outcome.success:
            outcome.error = result.error or "agent failed"
        logger.info(f"Subagent {agent.name} finished: stop={result.stop_reason} turns={result.turns}")
        return outcome
