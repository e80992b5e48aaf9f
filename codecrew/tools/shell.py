"""Shell tool for executing commands in the project directory."""

import asyncio
import os
from typing import Any

from codecrew.config import get_config
from codecrew.logging import get_logger
from codecrew.tools.files import project_root
from codecrew.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class ShellTool(Tool):
    """Execute shell commands."""

    name = "shell"
    description = "Execute a shell command in the project directory and return its output."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        # Leave the command its own timeout before the registry gives up.
        self.timeout_seconds = float(self.config.tools.shell_timeout) + 5.0

    async def execute(self, command: str, timeout: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override

        Returns:
            ToolResult with combined stdout/stderr; a non-zero exit is a failure
        """
        if not str(command or "").strip():
            return ToolResult(success=False, error="Command is empty")

        limit = self.config.tools.shell_timeout
        timeout = max(1, min(int(timeout or limit), limit))

        try:
            log.info("Executing shell command", command=command, timeout=timeout)
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(project_root(kwargs)),
                env=os.environ.copy(),
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return ToolResult(success=False, error=f"Command timed out after {timeout}s")
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                raise

            output = stdout.decode("utf-8", errors="replace").strip()
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            if stderr_text:
                output += f"\n[stderr] {stderr_text}"

            max_length = self.config.tools.max_output_chars
            if len(output) > max_length:
                output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

            if process.returncode != 0:
                return ToolResult(
                    success=False,
                    output=output,
                    error=f"Exit code {process.returncode}: {output or '[no output]'}",
                )
            return ToolResult(success=True, output=output or "[no output]")
        except Exception as e:
            log.error("Shell command failed", command=command, error=str(e))
            return ToolResult(success=False, error=str(e))
