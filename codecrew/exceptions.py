"""Custom exceptions for codecrew."""


class CodeCrewError(Exception):
    """Base exception for codecrew."""

    pass


class ConfigurationError(CodeCrewError):
    """Configuration-related errors."""

    pass


class LLMError(CodeCrewError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(CodeCrewError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class SessionError(CodeCrewError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class PlanningError(CodeCrewError):
    """Execution planning errors."""

    pass


class CircularDependencyError(PlanningError):
    """Task dependency graph contains a cycle."""

    def __init__(self, task_ids: list[str]):
        joined = ", ".join(task_ids)
        super().__init__(f"Circular dependency detected between tasks: {joined}")
        self.task_ids = list(task_ids)


class CheckpointError(CodeCrewError):
    """Checkpoint persistence errors."""

    pass
