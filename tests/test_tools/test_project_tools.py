import sys
from pathlib import Path

import pytest

from codecrew.agents import AGENT_ROLES, AgentRole
from codecrew.tools import (
    ListFilesTool,
    ReadFileTool,
    SearchCodeTool,
    ShellTool,
    ToolContext,
    ToolRegistry,
    WriteFileTool,
    register_default_tools,
)


def _ctx(root: Path) -> ToolContext:
    return ToolContext(session_id="s1", project_path=str(root))


@pytest.mark.asyncio
async def test_read_limit_without_offset_returns_first_lines(tmp_path: Path):
    (tmp_path / "sample.txt").write_text("line1\nline2\nline3\n", encoding="utf-8")

    result = await ReadFileTool().execute(path="sample.txt", limit=2, _context=_ctx(tmp_path))

    assert result.success is True
    assert "[lines 1-2]" in result.output
    assert "line1\nline2" in result.output
    assert "line3" not in result.output


@pytest.mark.asyncio
async def test_read_with_offset(tmp_path: Path):
    (tmp_path / "sample.txt").write_text("a\nb\nc\nd\n", encoding="utf-8")

    result = await ReadFileTool().execute(path="sample.txt", offset=2, limit=2, _context=_ctx(tmp_path))

    assert "[lines 2-3]" in result.output
    assert result.output.endswith("b\nc")


@pytest.mark.asyncio
async def test_read_missing_file_fails(tmp_path: Path):
    result = await ReadFileTool().execute(path="nope.txt", _context=_ctx(tmp_path))

    assert result.success is False
    assert "File not found" in result.error


@pytest.mark.asyncio
async def test_paths_outside_project_are_rejected(tmp_path: Path):
    project = tmp_path / "project"
    project.mkdir()
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")

    read = await ReadFileTool().execute(path="../secret.txt", _context=_ctx(project))
    write = await WriteFileTool().execute(path=str(tmp_path / "out.txt"), content="x", _context=_ctx(project))

    assert read.success is False and "outside the project" in read.error
    assert write.success is False
    assert not (tmp_path / "out.txt").exists()


@pytest.mark.asyncio
async def test_write_creates_parents_and_appends(tmp_path: Path):
    tool = WriteFileTool()

    first = await tool.execute(path="src/app.py", content="a = 1\n", _context=_ctx(tmp_path))
    await tool.execute(path="src/app.py", content="b = 2\n", append=True, _context=_ctx(tmp_path))

    assert first.success is True
    assert (tmp_path / "src" / "app.py").read_text(encoding="utf-8") == "a = 1\nb = 2\n"


@pytest.mark.asyncio
async def test_list_files_skips_vcs_dirs(tmp_path: Path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.py").write_text("", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("", encoding="utf-8")

    result = await ListFilesTool().execute(pattern="**/*", _context=_ctx(tmp_path))

    assert result.success is True
    assert "Found 1 file(s)" in result.output
    assert "main.py" in result.output
    assert "HEAD" not in result.output


@pytest.mark.asyncio
async def test_search_code_reports_path_and_line(tmp_path: Path):
    (tmp_path / "a.py").write_text("import os\n\ndef handler():\n    pass\n", encoding="utf-8")

    result = await SearchCodeTool().execute(query=r"def \w+", _context=_ctx(tmp_path))
    invalid = await SearchCodeTool().execute(query="(", _context=_ctx(tmp_path))

    assert result.output == "a.py:3: def handler():"
    assert invalid.success is False


@pytest.mark.asyncio
async def test_shell_runs_in_project_dir(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("", encoding="utf-8")

    result = await ShellTool().execute(command="ls", _context=_ctx(tmp_path))

    assert result.success is True
    assert "marker.txt" in result.output


@pytest.mark.asyncio
async def test_shell_nonzero_exit_is_failure(tmp_path: Path):
    result = await ShellTool().execute(
        command=f'{sys.executable} -c "import sys; sys.exit(3)"',
        _context=_ctx(tmp_path),
    )

    assert result.success is False
    assert "Exit code 3" in result.error


@pytest.mark.asyncio
async def test_shell_empty_command_fails():
    result = await ShellTool().execute(command="   ")

    assert result.success is False


def test_register_default_tools():
    registry = register_default_tools(ToolRegistry())

    assert registry.list_tools() == ["read_file", "write_file", "list_files", "search_code", "shell"]


@pytest.mark.parametrize("role", list(AgentRole))
def test_role_allowed_tools_are_registered(role: AgentRole):
    registered = set(register_default_tools(ToolRegistry()).list_tools())

    assert set(AGENT_ROLES[role].allowed_tools) <= registered


def test_hands_on_roles_can_use_shell():
    for role in (AgentRole.CODER, AgentRole.TESTER, AgentRole.OPTIMIZER):
        assert "shell" in AGENT_ROLES[role].allowed_tools
