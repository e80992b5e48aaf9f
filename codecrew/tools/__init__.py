"""Tools package for codecrew."""

from codecrew.tools.registry import (
    Tool,
    ToolContext,
    ToolPolicy,
    ToolPolicyChain,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    set_tool_registry,
)
from codecrew.tools.files import ListFilesTool, ReadFileTool, SearchCodeTool, WriteFileTool
from codecrew.tools.shell import ShellTool


def register_default_tools(registry: ToolRegistry | None = None) -> ToolRegistry:
    """Register the built-in project tools and return the registry."""
    if registry is None:
        registry = get_tool_registry()
    for tool in (ReadFileTool(), WriteFileTool(), ListFilesTool(), SearchCodeTool(), ShellTool()):
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolContext",
    "ToolPolicy",
    "ToolPolicyChain",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "set_tool_registry",
    "register_default_tools",
    "ReadFileTool",
    "WriteFileTool",
    "ListFilesTool",
    "SearchCodeTool",
    "ShellTool",
]
