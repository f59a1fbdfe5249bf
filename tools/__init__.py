"""
Tool definitions and implementations for the agent runtime.
Each tool has an Anthropic-compatible schema and an implementation function.
Tools use a Backend abstraction for file/command operations.
"""

from tools._common import ToolResult, ToolContext, Tool  # noqa: F401
from tools.file_ops import read_file, write_file, edit_file, compact_diff, preview_change  # noqa: F401
from tools.search_ops import grep, glob_find, invalidate_ignore_cache  # noqa: F401
from tools.external_ops import run_command  # noqa: F401
from tools.agent_ops import run_task, task_output  # noqa: F401
from tools.schemas import builtin_tools, READ_ONLY_TOOL_NAMES, TASK_TOOL_NAME  # noqa: F401
from tools.dispatch import ToolRegistry, build_default_registry  # noqa: F401
