"""Search and discovery tools: Grep, Glob. Glob results honour the project's .gitignore."""

import functools
import logging
import os
from typing import Any, List, Optional

import pathspec

from backend import Backend, LocalBackend
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_GREP_LINES = 100
_MAX_GLOB_MATCHES = 200

# Never worth showing to the model, .gitignore or not
_NOISE_DIRS = frozenset({
    ".git", "node_modules", "__pycache__", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".codex", "dist", "build",
})
_NOISE_SUFFIXES = (".pyc", ".pyo", ".so", ".o", ".class", ".min.js", ".map")


@functools.lru_cache(maxsize=64)
def _ignore_spec(root: str) -> Optional[pathspec.PathSpec]:
    """Compiled .gitignore for a project root, or None."""
    path = os.path.join(root, ".gitignore")
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return pathspec.PathSpec.from_lines("gitwildmatch", f)
    except OSError as e:
        logger.debug(f"Unreadable .gitignore at {root}: {e}")
        return None


def invalidate_ignore_cache() -> None:
    _ignore_spec.cache_clear()


def _visible(rel_path: str, spec: Optional[pathspec.PathSpec]) -> bool:
    parts = rel_path.replace(os.sep, "/").split("/")
    if _NOISE_DIRS.intersection(parts[:-1]) or parts[-1].endswith(_NOISE_SUFFIXES):
        return False
    return spec is None or not spec.match_file("/".join(parts))


def grep(pattern: str = "", path: Optional[str] = None, include: Optional[str] = None,
         backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Regex search over file contents (ripgrep when available)."""
    if not pattern:
        return ToolResult(success=False, output="", error="pattern is required")
    b = backend or LocalBackend(working_directory)
    try:
        found = b.search(pattern, path or ".", include=include)
    except Exception as e:
        return ToolResult(success=False, output="", error=f"Search failed: {e}")

    lines = found.splitlines() if found else []
    if not lines:
        return ToolResult(success=True, output="No matches found.", metadata={"matches": 0})
    output = "\n".join(lines[:_MAX_GREP_LINES])
    if len(lines) > _MAX_GREP_LINES:
        output += f"\n\n... [{len(lines) - _MAX_GREP_LINES} more matches truncated]"
    return ToolResult(success=True, output=output, metadata={"matches": len(lines)})


def glob_find(pattern: str = "", path: Optional[str] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Files matching a glob pattern, minus ignored and generated files."""
    if not pattern:
        return ToolResult(success=False, output="", error="pattern is required")
    b = backend or LocalBackend(working_directory)
    try:
        spec = _ignore_spec(b.working_directory)
        matches: List[str] = [m for m in b.glob_find(pattern, path or ".") if _visible(m, spec)]
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))

    if not matches:
        return ToolResult(success=True, output="No files found matching pattern.", metadata={"matches": 0})
    shown = "\n".join(f"  {m}" for m in matches[:_MAX_GLOB_MATCHES])
    output = f"Found {len(matches)} match(es):\n{shown}"
    if len(matches) > _MAX_GLOB_MATCHES:
        output += f"\n  ... [{len(matches) - _MAX_GLOB_MATCHES} more]"
    return ToolResult(success=True, output=output, metadata={"matches": len(matches)})
