"""Tool trust patterns and the persisted trust store.

A trust pattern is the key under which a tool call is approved once and
then executed without confirmation. Most tools use their name; shell
commands are narrowed to the command (and sub-command for tools that have
meaningful ones), so trusting ``git status`` does not trust ``git push``:

    "git commit -m 'x'" -> "bash:git:commit"
    "sudo git push"     -> "bash:sudo:git:push"
    "ls -la"            -> "bash:ls"
"""

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import Any

from codecrew.config import get_config
from codecrew.logging import get_logger
from codecrew.session import Session

log = get_logger(__name__)

BASH_TOOLS = {"bash_exec", "bash_background", "shell"}

SUBCOMMAND_TOOLS = {
    "git",
    "gh",
    "npm",
    "pnpm",
    "yarn",
    "pip",
    "uv",
    "poetry",
    "brew",
    "apt",
    "apt-get",
    "docker",
    "docker-compose",
    "cargo",
    "go",
    "kubectl",
    "aws",
}


class TrustScope(str, Enum):
    SESSION = "session"
    PROJECT = "project"
    GLOBAL = "global"


def extract_bash_pattern(command: str) -> str:
    """Extract a trust pattern such as ``bash:git:commit`` from a command."""
    tokens = str(command or "").split()
    if not tokens:
        return "bash:unknown"

    parts = ["bash"]
    idx = 0
    if tokens[0].lower() == "sudo":
        parts.append("sudo")
        idx = 1
        if idx >= len(tokens):
            return ":".join(parts)

    base = tokens[idx].lower()
    parts.append(base)
    idx += 1

    if base in SUBCOMMAND_TOOLS and idx < len(tokens):
        sub = tokens[idx]
        if not sub.startswith("-"):
            parts.append(sub.lower())
    return ":".join(parts)


def get_trust_pattern(tool_name: str, arguments: dict[str, Any] | None = None) -> str:
    """Return the trust pattern for a tool call."""
    command = (arguments or {}).get("command")
    if tool_name in BASH_TOOLS and isinstance(command, str):
        return extract_bash_pattern(command)
    return tool_name


class TrustStore:
    """Trusted tool patterns at session, project and global scope.

    Session scope lives on the ``Session`` object. Project and global
    scopes are persisted as JSON. Writes are serialized with a lock;
    inserting a pattern twice is a no-op.
    """

    def __init__(self, path: Path | str | None = None):
        if path is None:
            path = get_config().trust.path
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()
        self._global: set[str] = set()
        self._projects: dict[str, set[str]] = {}
        self._loaded = False

    def _read(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable trust store", path=str(self.path), error=str(e))
            return
        self._global = set(data.get("global", []))
        self._projects = {
            str(project): set(patterns)
            for project, patterns in (data.get("projects") or {}).items()
        }

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": 1,
            "global": sorted(self._global),
            "projects": {project: sorted(patterns) for project, patterns in sorted(self._projects.items())},
        }
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    async def load(self) -> None:
        async with self._lock:
            if not self._loaded:
                self._read()
                self._loaded = True

    async def is_trusted(self, pattern: str, session: Session | None = None) -> bool:
        """Check a pattern against every scope visible to the session."""
        await self.load()
        if session is not None and pattern in session.trusted_tools:
            return True
        if pattern in self._global:
            return True
        project = session.project_path if session is not None else ""
        return bool(project) and pattern in self._projects.get(project, set())

    async def trust(self, pattern: str, scope: TrustScope, session: Session | None = None) -> None:
        """Trust a pattern at the given scope.

        Trusting at project or global scope also trusts it for the session.
        """
        await self.load()
        if session is not None:
            session.trusted_tools.add(pattern)
        if scope == TrustScope.SESSION:
            return

        async with self._lock:
            if scope == TrustScope.GLOBAL:
                self._global.add(pattern)
            else:
                project = session.project_path if session is not None else ""
                if not project:
                    log.warning("Project trust requested without a project path", pattern=pattern)
                    return
                self._projects.setdefault(project, set()).add(pattern)
            self._write()
        log.info("Trusted tool pattern", pattern=pattern, scope=scope.value)

    async def revoke(self, pattern: str, scope: TrustScope, session: Session | None = None) -> None:
        await self.load()
        if scope == TrustScope.SESSION:
            if session is not None:
                session.trusted_tools.discard(pattern)
            return
        async with self._lock:
            if scope == TrustScope.GLOBAL:
                self._global.discard(pattern)
            elif session is not None and session.project_path:
                self._projects.get(session.project_path, set()).discard(pattern)
            self._write()

    def snapshot(self) -> dict[str, Any]:
        return {
            "global": sorted(self._global),
            "projects": {project: sorted(patterns) for project, patterns in self._projects.items()},
        }
