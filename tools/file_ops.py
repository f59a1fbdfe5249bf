"""File operation tools: Read, Write, Edit."""

import difflib
import logging
from typing import Any, List, Optional

from backend import Backend, LocalBackend
from tools._common import ToolResult

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 2000


def _extract_structure(lines: List[str]) -> str:
    """Extract a structural summary from source code: imports, classes, functions."""
    structure = []
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(("import ", "from ")) and i < 50:
            structure.append(f"{i+1:6}|{line.rstrip()}")
        elif stripped.startswith(("class ", "def ", "async def ", "func ", "function ")):
            structure.append(f"{i+1:6}|{line.rstrip()}")
    return "\n".join(structure)


def _require_path(path: str, name: str = "file_path") -> Optional[ToolResult]:
    """Return an error ToolResult if path is empty/whitespace; else None."""
    if not (path or "").strip():
        return ToolResult(success=False, output="", error=f"{name} is required")
    return None


def read_file(file_path: str = "", offset: Optional[int] = None, limit: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read the contents of a file. Returns line-numbered content."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(file_path):
            return ToolResult(success=False, output="", error=f"File not found: {file_path}")
        if b.is_dir(file_path):
            return ToolResult(success=False, output="", error=f"Is a directory: {file_path}")

        lines = b.read_file(file_path).splitlines(keepends=True)
        total_lines = len(lines)

        if offset is not None or limit is not None:
            start = max((offset or 1) - 1, 0)
            end = start + (limit or total_lines)
            selected = lines[start:end]
            numbered = [f"{start + 1 + i:6}|{line.rstrip()}" for i, line in enumerate(selected)]
            header = f"[{total_lines} lines total] (showing lines {start + 1}-{start + len(selected)})"
            return ToolResult(success=True, output=header + "\n" + "\n".join(numbered),
                              metadata={"lines": len(selected)})

        if total_lines <= _MAX_FULL_READ_LINES:
            numbered = [f"{i+1:6}|{line.rstrip()}" for i, line in enumerate(lines)]
            return ToolResult(success=True, output=f"[{total_lines} lines total]\n" + "\n".join(numbered),
                              metadata={"lines": total_lines})

        # Large file: structural overview + head
        head_n = 200
        head = [f"{i+1:6}|{lines[i].rstrip()}" for i in range(head_n)]
        parts = [
            f"[{total_lines} lines total, showing structure + first {head_n} lines]",
            "[Use offset/limit to read specific sections]", "",
            _extract_structure(lines), "",
            "\n".join(head),
        ]
        return ToolResult(success=True, output="\n".join(parts), metadata={"lines": head_n})
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for display."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def _apply_edit(content: str, old_string: str, new_string: str, replace_all: bool):
    """Return (new_content, replacements, error)."""
    count = content.count(old_string) if old_string else 0
    if count == 0:
        return None, 0, "old_string not found. Ensure it matches exactly, including whitespace and indentation."
    if count > 1 and not replace_all:
        return None, 0, (f"Found {count} occurrences of old_string. Add more surrounding context "
                         f"to make it unique, or set replace_all=true.")
    if replace_all:
        return content.replace(old_string, new_string), count, None
    return content.replace(old_string, new_string, 1), 1, None


def preview_change(tool_name: str, params: dict, backend: Backend) -> str:
    """Diff a Write/Edit call would produce, without touching the file."""
    path = params.get("file_path", "")
    if not path:
        return ""
    try:
        old = backend.read_file(path) if backend.file_exists(path) else ""
    except (OSError, ValueError):
        old = ""
    if tool_name == "Write":
        return compact_diff(old, params.get("content", ""), path)
    if tool_name == "Edit":
        new, _, err = _apply_edit(old, params.get("old_string", ""), params.get("new_string", ""),
                                  bool(params.get("replace_all")))
        return err or compact_diff(old, new, path)
    return ""


def write_file(file_path: str = "", content: str = "",
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        is_new = not b.file_exists(file_path)
        old_content = "" if is_new else b.read_file(file_path)
        b.write_file(file_path, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        summary = f"{'Created' if is_new else 'Wrote'} {line_count} lines to {file_path}"
        diff_text = compact_diff(old_content, content, file_path)
        output = f"{summary}\n{diff_text}" if diff_text else summary
        return ToolResult(success=True, output=output, metadata={"path": file_path, "created": is_new})
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))


def edit_file(file_path: str = "", old_string: str = "", new_string: str = "",
              replace_all: bool = False,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Replace an exact string in a file. By default must match exactly one location.
    With replace_all=True, replaces every occurrence (useful for renames)."""
    err = _require_path(file_path)
    if err:
        return err
    try:
        b = backend or LocalBackend(working_directory)
        if not b.file_exists(file_path):
            return ToolResult(success=False, output="", error=f"File not found: {file_path}")
        content = b.read_file(file_path)
        new_content, replaced, edit_err = _apply_edit(content, old_string, new_string, replace_all)
        if edit_err:
            return ToolResult(success=False, output="", error=f"{edit_err} ({file_path})")
        b.write_file(file_path, new_content)
        diff_text = compact_diff(content, new_content, file_path)
        summary = f"Applied edit to {file_path}" + (f" ({replaced} replacements)" if replaced > 1 else "")
        output = f"{summary}\n{diff_text}" if diff_text else summary
        return ToolResult(success=True, output=output, metadata={"path": file_path, "replacements": replaced})
    except Exception as e:
        return ToolResult(success=False, output="", error=str(e))
