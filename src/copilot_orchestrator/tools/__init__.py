"""Tool registry and server-side execution tracking."""

from copilot_orchestrator.tools.pipeline import BoundTool, ToolCallContext, ToolExecutionPipeline
from copilot_orchestrator.tools.registry import (
    COLLECT_INPUTS_TOOL,
    StaticToolRegistry,
    ToolInvocation,
    ToolKind,
    ToolRegistry,
    ToolSpec,
    build_registry,
    list_tools,
)

__all__ = [
    "COLLECT_INPUTS_TOOL",
    "BoundTool",
    "StaticToolRegistry",
    "ToolCallContext",
    "ToolExecutionPipeline",
    "ToolInvocation",
    "ToolKind",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
    "list_tools",
]
