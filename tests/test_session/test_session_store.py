import pytest

from codecrew.exceptions import SessionNotFoundError
from codecrew.llm import ToolCall
from codecrew.session import SessionManager, new_session


@pytest.mark.asyncio
async def test_session_manager_uses_db_path_override(tmp_path):
    db_path = tmp_path / "custom-sessions.db"
    manager = SessionManager(db_path=db_path)
    try:
        await manager.create_session(name="alpha")
        assert db_path.exists()
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        created = await manager.create_session(
            name="alpha",
            project_path="/work/app",
            metadata={"project": "codecrew"},
        )
        created.add_message("user", "hello")
        created.add_message("assistant", "", tool_calls=[ToolCall(id="c1", name="read_file", arguments={"path": "a"})])
        created.add_message("tool", "contents", tool_call_id="c1", tool_name="read_file")
        created.trusted_tools.add("bash:git:status")
        await manager.save_session(created)

        loaded = await manager.load_session(created.id)
        assert loaded is not None
        assert loaded.name == "alpha"
        assert loaded.project_path == "/work/app"
        assert loaded.metadata["project"] == "codecrew"
        assert loaded.trusted_tools == {"bash:git:status"}
        assert len(loaded.messages) == 3

        by_name = await manager.load_session_by_name("alpha")
        assert by_name is not None and by_name.id == created.id
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_list_sessions_orders_by_last_update(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = await manager.create_session(name="one")
        second = await manager.create_session(name="two")

        first.add_message("user", "most recent")
        await manager.save_session(first)

        sessions = await manager.list_sessions(limit=10)
        assert [session.id for session in sessions] == [first.id, second.id]
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_delete_session_returns_status(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        session = await manager.create_session(name="to-delete")
        assert await manager.delete_session(session.id) is True
        assert await manager.delete_session(session.id) is False
        assert await manager.load_session(session.id) is None
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_get_or_create_reuses_named_session(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = await manager.get_or_create_session("main")
        again = await manager.get_or_create_session("main")
        assert first.id == again.id
    finally:
        await manager.close()


def test_conversation_context_rebuilds_tool_history():
    session = new_session()
    session.add_message("user", "list files")
    session.add_message("assistant", "", tool_calls=[ToolCall(id="c1", name="shell", arguments={"command": "ls"})])
    session.add_message("tool", "Error: boom", tool_call_id="c1", tool_name="shell", is_error=True)

    context = session.get_conversation_context()

    assert [msg.role for msg in context] == ["user", "assistant", "tool"]
    assert context[1].tool_calls == [ToolCall(id="c1", name="shell", arguments={"command": "ls"})]
    assert context[2].tool_call_id == "c1"
    assert context[2].is_error is True


@pytest.mark.asyncio
async def test_require_session_raises_for_unknown_id(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        created = await manager.create_session(name="alpha")

        assert (await manager.require_session(created.id)).name == "alpha"
        with pytest.raises(SessionNotFoundError) as excinfo:
            await manager.require_session("missing-id")
        assert excinfo.value.session_id == "missing-id"
    finally:
        await manager.close()
