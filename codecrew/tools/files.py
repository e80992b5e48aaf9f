"""File tools scoped to the project directory."""

import asyncio
import re
from pathlib import Path
from typing import Any

from codecrew.config import get_config
from codecrew.logging import get_logger
from codecrew.tools.registry import Tool, ToolContext, ToolResult

log = get_logger(__name__)

SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}


def project_root(kwargs: dict[str, Any]) -> Path:
    """Root directory for a tool call: the context's project path, else cwd."""
    context = kwargs.get("_context")
    raw = context.project_path if isinstance(context, ToolContext) else ""
    return Path(raw or Path.cwd()).expanduser().resolve()


def resolve_in_project(path: str, root: Path) -> Path:
    """Resolve ``path`` against ``root``.

    Raises:
        ValueError if the resolved path leaves the project root
    """
    requested = Path(path).expanduser()
    candidate = (requested if requested.is_absolute() else root / requested).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise ValueError(f"Path is outside the project: {path}")
    return candidate


def _walk(root: Path, pattern: str) -> list[Path]:
    return sorted(
        item
        for item in root.glob(pattern)
        if item.is_file() and not any(part in SKIP_DIRS for part in item.relative_to(root).parts)
    )


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a file in the project."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the project root",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any) -> ToolResult:
        try:
            file_path = resolve_in_project(path, project_root(kwargs))
            if not file_path.exists():
                return ToolResult(success=False, error=f"File not found: {path}")
            if not file_path.is_file():
                return ToolResult(success=False, error=f"Not a file: {path}")

            max_size = get_config().tools.max_read_bytes
            file_size = file_path.stat().st_size
            if file_size > max_size:
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {max_size})",
                )

            lines = file_path.read_text(encoding="utf-8").splitlines()
            first = max(1, int(offset or 1))
            lines = lines[first - 1:]
            if limit:
                lines = lines[:int(limit)]
            content = "\n".join(lines)

            info = f"[{file_path} {len(content)} chars]"
            if offset or limit:
                info += f" [lines {first}-{first + len(lines) - 1}]"
            return ToolResult(success=True, output=f"{info}\n{content}")
        except Exception as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = "Create or overwrite a file in the project."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the project root",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        try:
            file_path = resolve_in_project(path, project_root(kwargs))
            file_path.parent.mkdir(parents=True, exist_ok=True)
            mode = "a" if append else "w"
            with open(file_path, mode, encoding="utf-8") as f:
                f.write(content)
            return ToolResult(success=True, output=f"Written {len(content)} chars to {file_path}")
        except Exception as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))


class ListFilesTool(Tool):
    """Find files by pattern."""

    name = "list_files"
    description = "List project files matching a glob pattern."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'src/**/*.ts'); default '**/*'",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of results",
            },
        },
        "required": [],
    }

    async def execute(self, pattern: str = "**/*", limit: int | None = None, **kwargs: Any) -> ToolResult:
        try:
            root = project_root(kwargs)
            matches = await asyncio.to_thread(_walk, root, pattern or "**/*")
            max_results = int(limit or get_config().tools.max_list_results)
            if not matches:
                return ToolResult(success=True, output=f"No files found matching: {pattern}")

            shown = matches[:max_results]
            output = f"Found {len(matches)} file(s):\n"
            output += "\n".join(f"  {item.relative_to(root)}" for item in shown)
            if len(matches) > len(shown):
                output += f"\n  ... {len(matches) - len(shown)} more"
            return ToolResult(success=True, output=output)
        except Exception as e:
            log.error("List failed", pattern=pattern, error=str(e))
            return ToolResult(success=False, error=str(e))


class SearchCodeTool(Tool):
    """Regex search over project files."""

    name = "search_code"
    description = "Search project files for a regular expression; returns path:line matches."
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Regular expression to search for",
            },
            "pattern": {
                "type": "string",
                "description": "Glob limiting which files are searched (default '**/*')",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of matching lines",
            },
        },
        "required": ["query"],
    }

    @staticmethod
    def _search(root: Path, regex: re.Pattern[str], pattern: str, limit: int) -> list[str]:
        hits: list[str] = []
        for file_path in _walk(root, pattern):
            try:
                text = file_path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hits.append(f"{file_path.relative_to(root)}:{line_no}: {line.strip()}")
                    if len(hits) >= limit:
                        return hits
        return hits

    async def execute(self, query: str, pattern: str = "**/*", limit: int | None = None, **kwargs: Any) -> ToolResult:
        try:
            regex = re.compile(query)
        except re.error as e:
            return ToolResult(success=False, error=f"Invalid pattern: {e}")
        try:
            root = project_root(kwargs)
            max_hits = int(limit or get_config().tools.max_list_results)
            hits = await asyncio.to_thread(self._search, root, regex, pattern or "**/*", max_hits)
            if not hits:
                return ToolResult(success=True, output=f"No matches for: {query}")
            return ToolResult(success=True, output="\n".join(hits))
        except Exception as e:
            log.error("Search failed", query=query, error=str(e))
            return ToolResult(success=False, error=str(e))
