"""
System prompt composition.
Small modular prompt fragments assembled per executor: the main session or a subagent role.
"""

import os
from typing import Iterable, Optional


# Fragments assembled by compose_system_prompt(). Subagents swap the
# identity fragment for their role prompt.

_MOD_IDENTITY = """You are a software engineer working inside a real codebase on the user's machine. You have direct access to files and a terminal through tools.

Investigate before acting, verify after changing, and never guess when you can check."""

_MOD_DOING_TASKS = """<doing_tasks>
- Read files before editing them. Understand existing code, then modify.
- Keep changes focused on what was asked. Don't refactor surrounding code.
- Don't introduce security vulnerabilities (command injection, path traversal, secrets in code).
</doing_tasks>"""

_MOD_TOOL_POLICY = """<tool_policy>
- Call independent read-only tools in one response. Read, Glob and Grep run in parallel.
- Use Read/Edit/Write for files and Glob/Grep for search. Reserve Bash for builds, tests, git and system commands.
- For long-running commands set run_in_background and check on them with TaskOutput.
- Delegate self-contained research to the Task tool. A subagent starts with a fresh context and returns only its final answer.
- A tool call may be denied by the user's permission settings. Do not retry a denied call unchanged.
</tool_policy>"""

_MOD_TONE_AND_STYLE = """<tone_and_style>
- Be concise and direct.
- When uncertain, investigate rather than guessing.
- End with a short summary of what changed and anything left to do.
</tone_and_style>"""

_MOD_SUBAGENT = """<subagent>
You were launched by another agent to handle one task. Your final message is returned to it verbatim as a tool result, so make it self-contained: state findings, file paths and conclusions. Do not ask questions; no one will answer.
</subagent>"""

_MOD_LANG_PYTHON = """<language_conventions lang="python">
- PEP 8 naming. Match the project's existing style for type hints, docstrings and data classes.
- Use context managers for resource cleanup.
</language_conventions>"""

_MOD_LANG_JAVASCRIPT = """<language_conventions lang="javascript/typescript">
- Prefer const over let. Use async/await over raw Promises.
- Match existing patterns for modules, components and error handling.
</language_conventions>"""

LANG_MODULES = {
    "python": _MOD_LANG_PYTHON,
    "javascript": _MOD_LANG_JAVASCRIPT,
    "typescript": _MOD_LANG_JAVASCRIPT,
}


# First manifest found wins
_MANIFESTS = (
    ("pyproject.toml", "python"),
    ("setup.py", "python"),
    ("requirements.txt", "python"),
    ("tsconfig.json", "typescript"),
    ("package.json", "javascript"),
)


def detect_project_language(working_directory: str) -> Optional[str]:
    return next(
        (lang for name, lang in _MANIFESTS if os.path.isfile(os.path.join(working_directory, name))),
        None,
    )


def compose_system_prompt(
    working_directory: str,
    tool_names: Iterable[str],
    agent_prompt: Optional[str] = None,
    language: Optional[str] = None,
) -> str:
    """Assemble the system prompt. `agent_prompt` marks a subagent and replaces the identity."""
    if agent_prompt:
        parts = [agent_prompt, _MOD_SUBAGENT, _MOD_TOOL_POLICY]
    else:
        parts = [_MOD_IDENTITY, _MOD_DOING_TASKS, _MOD_TOOL_POLICY, _MOD_TONE_AND_STYLE]

    if language is None:
        language = detect_project_language(working_directory)
    if language in LANG_MODULES:
        parts.append(LANG_MODULES[language])

    # Environment facts go last
    parts.append(f"<working_directory>{working_directory}</working_directory>")
    parts.append(f"<tools_available>{', '.join(tool_names)}</tools_available>")
    return "\n\n".join(parts)
