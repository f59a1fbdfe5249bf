"""
Agent package - the execution engine.

This package contains the turn loop and everything it composes:
- cancel: CancelSignal shared by a run, its stream, its tools and its subagents
- events: AgentEvent data type
- permissions: Permission checkers, rules, session approvals and the gate
- history: Token estimation, pruning, summarization and history repair
- execution: Turn streaming and ordered tool dispatch
- core: TurnExecutor orchestrator (slim)
- subagent: Agent definitions and the nested-run executor
- background: Detached tasks persisted as NDJSON logs plus status files
- runtime: RuntimeContext, the shared state passed to constructors
- prompts: System prompt composition
"""

# Core classes and data types
from .core import TurnExecutor
from .events import AgentEvent
from .cancel import CancelSignal, RunCancelled

# Mixins
from .execution import ExecutionMixin, PreToolOutcome
from .history import HistoryMixin

# Permission gate
from .permissions import (
    PermissionDecision, ApprovalAction, PermissionRule, PermissionChecker,
    PermitAll, DenyAll, ReadOnly, RuleBased, PermissionGate, SessionApprovals,
    parse_rule, load_rules, checker_for_mode,
)

# Token budget and compaction
from .history import CompactionError, needs_compaction, compact, prune_tool_outputs

# Composition
from .subagent import AgentDefinition, AgentRegistry, SubagentExecutor, BUILTIN_AGENTS
from .background import (
    BackgroundTaskManager, TaskHandle, TaskState, TaskLimitError,
    CommandTaskRequest, AgentTaskRequest, load_task_state,
)
from .runtime import RuntimeContext

# Prompt system
from .prompts import compose_system_prompt

__all__ = [
    "TurnExecutor", "AgentEvent", "CancelSignal", "RunCancelled",
    "ExecutionMixin", "PreToolOutcome", "HistoryMixin",
    "PermissionDecision", "ApprovalAction", "PermissionRule", "PermissionChecker",
    "PermitAll", "DenyAll", "ReadOnly", "RuleBased", "PermissionGate", "SessionApprovals",
    "parse_rule", "load_rules", "checker_for_mode",
    "CompactionError", "needs_compaction", "compact", "prune_tool_outputs",
    "AgentDefinition", "AgentRegistry", "SubagentExecutor", "BUILTIN_AGENTS",
    "BackgroundTaskManager", "TaskHandle", "TaskState", "TaskLimitError",
    "CommandTaskRequest", "AgentTaskRequest", "load_task_state",
    "RuntimeContext",
    "compose_system_prompt",
]
