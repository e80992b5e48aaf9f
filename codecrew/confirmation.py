"""Confirmation gate for destructive tool calls."""

import asyncio
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from rich.console import Console
from rich.prompt import Prompt

from codecrew.llm import ToolCall
from codecrew.logging import get_logger
from codecrew.trust import BASH_TOOLS

log = get_logger(__name__)


class ConfirmDecision(str, Enum):
    YES = "yes"
    NO = "no"
    ABORT = "abort"
    TRUST_SESSION = "trust_session"
    TRUST_PROJECT = "trust_project"
    TRUST_GLOBAL = "trust_global"


ALWAYS_CONFIRM_TOOLS = [
    "write_file",
    "edit_file",
    "delete_file",
    "copy_file",
    "move_file",
    "git_push",
    "git_pull",
    "install_deps",
    "make",
    "run_script",
    "http_fetch",
    "http_json",
    "get_env",
]

SAFE_BASH_COMMANDS = {
    "ls", "ll", "la", "dir", "find", "locate", "stat", "file", "du", "df", "tree",
    "cat", "head", "tail", "less", "more", "wc",
    "grep", "egrep", "fgrep", "rg", "ag", "ack",
    "ps", "top", "htop", "who", "whoami", "id", "uname", "hostname", "uptime", "date", "cal",
    "env", "printenv",
    "which", "whereis", "type",
    "echo", "printf", "pwd",
    "man", "help",
}

SAFE_GIT_PREFIXES = (
    "git status",
    "git log",
    "git diff",
    "git branch",
    "git show",
    "git blame",
    "git remote -v",
    "git tag",
    "git stash list",
)

DANGEROUS_BASH_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(curl|wget|ssh|scp|rsync|nc|netcat|telnet|ftp)\b",
        r"\b(rm|rmdir|mv|cp|dd|shred)\b",
        r"\b(chmod|chown|chgrp)\b",
        r"\bnpm\s+(install|i|add|ci)\b",
        r"\bpnpm\s+(install|i|add)\b",
        r"\byarn\s+(add|install)\b",
        r"\bpip\s+install\b",
        r"\bapt(-get)?\s+(install|remove|purge)\b",
        r"\bbrew\s+(install|uninstall|remove)\b",
        r"\bgit\s+(push|commit|merge|rebase|reset|checkout|pull|clone)\b",
        r"\b(kill|pkill|killall)\b",
        r"\b(sudo|su)\b",
        r"\b(eval|exec|source)\b",
        r"\b\.\s+/",
        r"\|\s*(ba)?sh\b",
        r"[>|]\s*/?\w",
        r"\btee\b",
        r"\bdocker\s+(run|exec|build|push|pull|rm|stop|kill)\b",
        r"\bdocker-compose\s+(up|down|build|pull|push)\b",
        r"\b(mysql|psql|mongo|redis-cli)\b",
    )
]


class ConfirmationPolicy(BaseModel):
    """Which tool calls need a confirmation prompt."""

    always_confirm: list[str] = Field(default_factory=lambda: list(ALWAYS_CONFIRM_TOOLS))
    confirm_unknown_bash: bool = True


def is_safe_bash_command(command: str) -> bool:
    """Return True for read-only shell commands."""
    trimmed = str(command or "").strip()
    if not trimmed:
        return False
    if any(pattern.search(trimmed) for pattern in DANGEROUS_BASH_PATTERNS):
        return False

    base = trimmed.split()[0].lower()
    if base in SAFE_BASH_COMMANDS:
        return True
    if trimmed.lower().startswith(SAFE_GIT_PREFIXES):
        return True
    return trimmed.endswith(("--help", " -h", "--version", " -v", " -V"))


def requires_confirmation(
    tool_name: str,
    arguments: dict[str, Any] | None = None,
    policy: ConfirmationPolicy | None = None,
) -> bool:
    """Decide whether a tool call must be confirmed before execution."""
    policy = policy or ConfirmationPolicy()
    if tool_name in policy.always_confirm:
        return True
    if tool_name in BASH_TOOLS:
        command = (arguments or {}).get("command")
        if not isinstance(command, str):
            return True
        return policy.confirm_unknown_bash and not is_safe_bash_command(command)
    return False


class ConfirmationService(ABC):
    """Asks the user whether a gated tool call may run."""

    def __init__(self, policy: ConfirmationPolicy | None = None):
        self.policy = policy or ConfirmationPolicy()

    def requires_confirmation(self, tool_name: str, arguments: dict[str, Any] | None = None) -> bool:
        return requires_confirmation(tool_name, arguments, self.policy)

    @abstractmethod
    async def confirm_tool_execution(self, tool_call: ToolCall) -> ConfirmDecision:
        pass


_CHOICE_MAP = {
    "y": ConfirmDecision.YES,
    "n": ConfirmDecision.NO,
    "a": ConfirmDecision.ABORT,
    "s": ConfirmDecision.TRUST_SESSION,
    "p": ConfirmDecision.TRUST_PROJECT,
    "g": ConfirmDecision.TRUST_GLOBAL,
}


class ConsoleConfirmationService(ConfirmationService):
    """Interactive terminal prompt."""

    def __init__(self, policy: ConfirmationPolicy | None = None, console: Console | None = None):
        super().__init__(policy)
        self.console = console or Console(stderr=True)

    def _ask(self, tool_call: ToolCall) -> str:
        self.console.print(f"[bold yellow]Tool call:[/bold yellow] {tool_call.name}")
        for key, value in tool_call.arguments.items():
            self.console.print(f"  [dim]{key}:[/dim] {value}")
        return Prompt.ask(
            "Run it? [y]es / [n]o / [a]bort turn / trust [s]ession / [p]roject / [g]lobal",
            choices=list(_CHOICE_MAP),
            default="n",
            console=self.console,
        )

    async def confirm_tool_execution(self, tool_call: ToolCall) -> ConfirmDecision:
        answer = await asyncio.to_thread(self._ask, tool_call)
        decision = _CHOICE_MAP.get(answer, ConfirmDecision.NO)
        log.debug("Confirmation answered", tool=tool_call.name, decision=decision.value)
        return decision
