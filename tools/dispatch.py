"""Tool registry and execution dispatch."""

import asyncio
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from backend import LocalBackend
from tools._common import Tool, ToolContext, ToolResult
from tools.schemas import builtin_tools

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Named tools, safe to execute from many threads at once.

    The table is read-mostly; register() takes a lock and readers work on
    the dict snapshot they fetched. Implementations keep no shared state
    beyond their Backend.
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._lock = threading.Lock()
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self._tools[tool.name] = tool

    def register(self, tool: Tool) -> None:
        with self._lock:
            tools = dict(self._tools)
            tools[tool.name] = tool
            self._tools = tools

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.schema() for tool in self._tools.values()]

    def restricted(self, allowed: Optional[Iterable[str]] = None,
                   denied: Iterable[str] = ()) -> "ToolRegistry":
        """A view holding only `allowed` (all when None) minus `denied`."""
        allowed_set = set(allowed) if allowed is not None else None
        denied_set = set(denied)
        return ToolRegistry(
            tool for name, tool in self._tools.items()
            if (allowed_set is None or name in allowed_set) and name not in denied_set
        )

    def _call_kwargs(self, args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
        return dict(
            args,
            working_directory=ctx.working_directory,
            backend=ctx.backend or LocalBackend(ctx.working_directory),
            context=ctx,
        )

    def execute(self, name: str, args: Dict[str, Any], cwd: str = ".",
                ctx: Optional[ToolContext] = None) -> ToolResult:
        """Execute a tool by name. Never raises; failures come back as ToolResult."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(success=False, output="", error=f"Unknown tool: {name}")
        ctx = ctx or ToolContext(working_directory=cwd)
        try:
            if tool.is_async:
                return asyncio.run(tool.handler(**self._call_kwargs(args, ctx)))
            return tool.handler(**self._call_kwargs(args, ctx))
        except TypeError as e:
            return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}")
        except Exception as e:
            logger.exception(f"Tool execution error: {name}")
            return ToolResult(success=False, output="", error=f"Tool error: {e}")

    async def aexecute(self, name: str, args: Dict[str, Any], ctx: ToolContext) -> ToolResult:
        """Execute from an event loop: sync tools run in the default executor."""
        tool = self.get(name)
        if tool is None:
            return ToolResult(success=False, output="", error=f"Unknown tool: {name}")
        if not tool.is_async:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self.execute, name, args, ctx.working_directory, ctx)
        try:
            return await tool.handler(**self._call_kwargs(args, ctx))
        except TypeError as e:
            return ToolResult(success=False, output="", error=f"Invalid arguments for {name}: {e}")
        except Exception as e:
            logger.exception(f"Tool execution error: {name}")
            return ToolResult(success=False, output="", error=f"Tool error: {e}")


def build_default_registry() -> ToolRegistry:
    """Registry with every built-in tool."""
    return ToolRegistry(builtin_tools())
