"""Tool registry and base tool class."""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from codecrew.exceptions import (
    ToolBlockedError,
    ToolExecutionError,
    ToolNotFoundError,
)
from codecrew.llm import ToolDefinition
from codecrew.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    """Normalize tool names for policy comparisons."""
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    output: str = ""
    error: str | None = None
    duration: float = 0.0

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class ToolContext(BaseModel):
    """Execution context handed to tools."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session_id: str = ""
    project_path: str = ""
    agent_id: str = ""


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and output
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=dict(self.parameters or {}),
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate required arguments against the schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = (self.parameters or {}).get("required", [])
        for field_name in required:
            if field_name not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field_name}",
                )


class ToolPolicy(BaseModel):
    """Policy rule set for filtering available tools."""

    allow: list[str] | None = None
    deny: list[str] = Field(default_factory=list)
    also_allow: list[str] = Field(default_factory=list)


class ToolPolicyChain:
    """Apply policies in cascade: global -> task."""

    def __init__(self, steps: list[tuple[str, ToolPolicy]] | None = None):
        self.steps: list[tuple[str, ToolPolicy]] = list(steps or [])

    @staticmethod
    def _normalize_name_set(items: list[str] | None) -> set[str] | None:
        if items is None:
            return None
        return {
            _normalize_tool_name(item)
            for item in items
            if _normalize_tool_name(item)
        }

    def _apply(
        self,
        current_names: set[str],
        all_names: set[str],
        policy: ToolPolicy,
    ) -> set[str]:
        """Apply one policy step against current allowed tool names."""
        next_names = set(current_names)
        allow_names = self._normalize_name_set(policy.allow)
        if allow_names is not None:
            next_names = {name for name in next_names if name in allow_names}

        deny_names = self._normalize_name_set(policy.deny) or set()
        next_names -= deny_names

        also_allow_names = self._normalize_name_set(policy.also_allow) or set()
        next_names |= also_allow_names & all_names
        return next_names

    def resolve(self, available_tools: list[Tool]) -> list[Tool]:
        """Resolve final tool list after applying the policy chain."""
        if not self.steps:
            return list(available_tools)

        all_names = {
            _normalize_tool_name(tool.name)
            for tool in available_tools
            if _normalize_tool_name(tool.name)
        }
        current_names = set(all_names)
        for _, policy in self.steps:
            current_names = self._apply(current_names, all_names, policy)

        return [
            tool
            for tool in available_tools
            if _normalize_tool_name(tool.name) in current_names
        ]


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._global_policy: ToolPolicy | None = None

    @staticmethod
    def _coerce_policy(policy: ToolPolicy | dict[str, Any] | None) -> ToolPolicy | None:
        if policy is None:
            return None
        if isinstance(policy, ToolPolicy):
            return policy
        if isinstance(policy, dict):
            return ToolPolicy(**policy)
        raise TypeError(f"Unsupported policy type: {type(policy)!r}")

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def set_global_policy(self, policy: ToolPolicy | dict[str, Any] | None) -> None:
        self._global_policy = self._coerce_policy(policy)

    def _resolve_tools(self, task_policy: ToolPolicy | dict[str, Any] | None = None) -> list[Tool]:
        steps: list[tuple[str, ToolPolicy]] = []
        if self._global_policy is not None:
            steps.append(("global", self._global_policy))
        effective_task_policy = self._coerce_policy(task_policy)
        if effective_task_policy is not None:
            steps.append(("task", effective_task_policy))
        return ToolPolicyChain(steps=steps).resolve(list(self._tools.values()))

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self, task_policy: ToolPolicy | dict[str, Any] | None = None) -> list[str]:
        """List tool names visible under the policy chain."""
        return [tool.name for tool in self._resolve_tools(task_policy)]

    def get_tool_definitions_for_llm(
        self,
        task_policy: ToolPolicy | dict[str, Any] | None = None,
    ) -> list[ToolDefinition]:
        """Get tool definitions to advertise to the LLM."""
        return [tool.get_definition() for tool in self._resolve_tools(task_policy)]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolContext | None = None,
        task_policy: ToolPolicy | dict[str, Any] | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        The returned result carries the wall-clock duration of the call.

        Raises:
            ToolNotFoundError if tool not found
            ToolBlockedError if the policy chain hides the tool
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)

        allowed_names = {_normalize_tool_name(item) for item in self.list_tools(task_policy)}
        if _normalize_tool_name(name) not in allowed_names:
            raise ToolBlockedError(name, "Blocked by tool policy chain")

        tool.validate_arguments(arguments)
        context = context or ToolContext()

        timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        started = time.monotonic()
        try:
            log.info("Executing tool", tool=name, session_id=context.session_id)
            result = await asyncio.wait_for(
                tool.execute(**arguments, _context=context),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        result.duration = time.monotonic() - started
        log.info("Tool executed", tool=name, success=result.success, duration=round(result.duration, 3))
        return result


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry | None) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
