"""Shared types for the tools package."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_content(self) -> str:
        """Text handed back to the model."""
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


@dataclass
class ToolContext:
    """Per-call context handed to tool implementations.

    runtime/provider/gate/model_id/depth are only read by the agent tools
    (Task, TaskOutput) and by Bash when it starts background commands.
    """
    working_directory: str = "."
    backend: Any = None
    cancel: Any = None
    runtime: Any = None
    provider: Any = None
    gate: Any = None
    model_id: Optional[str] = None
    depth: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    """A registered tool: its model-facing schema and its implementation."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[..., Any]
    read_only: bool = False
    # Read-only tools may run alongside each other within one turn
    concurrency_safe: bool = False

    @property
    def is_async(self) -> bool:
        return asyncio.iscoroutinefunction(self.handler)

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }
