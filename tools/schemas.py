"""Tool schema definitions (Anthropic Messages API) and the built-in tool table."""

from typing import List

from tools._common import Tool
from tools.file_ops import read_file, write_file, edit_file
from tools.search_ops import grep, glob_find
from tools.external_ops import run_command
from tools.agent_ops import run_task, task_output, TASK_OUTPUT_ACTIONS


READ_ONLY_TOOL_NAMES = frozenset({"Read", "Glob", "Grep", "WebFetch", "WebSearch", "LSP", "TaskOutput"})
TASK_TOOL_NAME = "Task"


def builtin_tools() -> List[Tool]:
    """Fresh Tool objects for every built-in tool."""
    return [
        Tool(
            name="Read",
            description=(
                "Read a file from the working directory. Returns line-numbered content. "
                "Use offset/limit to page through large files."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "File path (relative to working directory)"},
                    "offset": {"type": "integer", "description": "1-based line to start reading from"},
                    "limit": {"type": "integer", "description": "Number of lines to read"},
                },
                "required": ["file_path"],
            },
            handler=read_file,
            read_only=True,
            concurrency_safe=True,
        ),
        Tool(
            name="Write",
            description="Create a new file or completely overwrite an existing one.",
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "File path (relative to working directory)"},
                    "content": {"type": "string", "description": "Full file content"},
                },
                "required": ["file_path", "content"],
            },
            handler=write_file,
        ),
        Tool(
            name="Edit",
            description=(
                "Replace an exact string in a file. old_string must match exactly one location "
                "unless replace_all is true. Read the file first."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "file_path": {"type": "string", "description": "File path (relative to working directory)"},
                    "old_string": {"type": "string", "description": "Exact text to replace"},
                    "new_string": {"type": "string", "description": "Replacement text"},
                    "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
                },
                "required": ["file_path", "old_string", "new_string"],
            },
            handler=edit_file,
        ),
        Tool(
            name="Bash",
            description=(
                "Run a shell command in the working directory. Commands that exceed the timeout "
                "are killed. Set run_in_background for long-running commands."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Shell command to run"},
                    "timeout": {"type": "integer", "description": "Timeout in seconds (max 600)"},
                    "description": {"type": "string", "description": "Short description of what the command does"},
                    "run_in_background": {"type": "boolean", "description": "Run detached as a background task"},
                },
                "required": ["command"],
            },
            handler=run_command,
        ),
        Tool(
            name="Glob",
            description="Find files matching a glob pattern (e.g. '**/*.py'), respecting .gitignore.",
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Glob pattern"},
                    "path": {"type": "string", "description": "Directory to search from (default: working directory)"},
                },
                "required": ["pattern"],
            },
            handler=glob_find,
            read_only=True,
            concurrency_safe=True,
        ),
        Tool(
            name="Grep",
            description="Search file contents for a regex pattern. Returns path:line:text matches.",
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Regular expression"},
                    "path": {"type": "string", "description": "File or directory to search"},
                    "include": {"type": "string", "description": "Glob filter for file names, e.g. '*.py'"},
                },
                "required": ["pattern"],
            },
            handler=grep,
            read_only=True,
            concurrency_safe=True,
        ),
        Tool(
            name=TASK_TOOL_NAME,
            description=(
                "Launch a subagent with its own fresh context to handle a self-contained task. "
                "Available agent types: general-purpose, Explore, Plan, Bash, Review. "
                "Returns the subagent's final answer."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "subagent_type": {"type": "string", "description": "Agent type to run"},
                    "prompt": {"type": "string", "description": "Task for the subagent"},
                    "description": {"type": "string", "description": "Short (3-5 word) task description"},
                    "model": {"type": "string", "description": "Optional model override"},
                    "max_turns": {"type": "integer", "description": "Optional turn limit"},
                    "run_in_background": {"type": "boolean", "description": "Run detached as a background task"},
                },
                "required": ["subagent_type", "prompt"],
            },
            handler=run_task,
        ),
        Tool(
            name="TaskOutput",
            description="Inspect background tasks: status, wait for completion, cancel, or list all.",
            input_schema={
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": list(TASK_OUTPUT_ACTIONS)},
                    "task_id": {"type": "string", "description": "Background task id"},
                    "timeout": {"type": "number", "description": "Seconds to wait (action=wait)"},
                },
                "required": ["action"],
            },
            handler=task_output,
            read_only=True,
        ),
    ]
