"""Session management with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from codecrew.config import get_config
from codecrew.exceptions import SessionNotFoundError
from codecrew.llm import Message, ToolCall
from codecrew.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


@dataclass
class Session:
    """A conversation session.

    Holds the conversation history plus the set of tool patterns trusted
    for the lifetime of the session.
    """

    id: str
    name: str
    project_path: str = ""
    messages: list[dict[str, Any]] = field(default_factory=list)
    trusted_tools: set[str] = field(default_factory=set)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_message(
        self,
        role: str,
        content: str,
        tool_call_id: str | None = None,
        tool_name: str | None = None,
        tool_calls: list[ToolCall] | None = None,
        is_error: bool = False,
    ) -> None:
        """Append a message to the conversation history."""
        self.messages.append({
            "role": role,
            "content": content,
            "tool_call_id": tool_call_id,
            "tool_name": tool_name,
            "tool_calls": [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in tool_calls or []
            ],
            "is_error": is_error,
            "timestamp": _utcnow_iso(),
        })
        self.updated_at = _utcnow_iso()

    def get_conversation_context(self) -> list[Message]:
        """Rebuild provider messages from stored history."""
        context: list[Message] = []
        for raw in self.messages:
            context.append(Message(
                role=str(raw.get("role", "user")),
                content=str(raw.get("content") or ""),
                tool_call_id=raw.get("tool_call_id"),
                tool_name=raw.get("tool_name"),
                tool_calls=[
                    ToolCall(
                        id=str(tc.get("id", "")),
                        name=str(tc.get("name", "")),
                        arguments=dict(tc.get("arguments") or {}),
                    )
                    for tc in raw.get("tool_calls") or []
                ],
                is_error=bool(raw.get("is_error", False)),
            ))
        return context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "project_path": self.project_path,
            "messages": self.messages,
            "trusted_tools": sorted(self.trusted_tools),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data["name"],
            project_path=data.get("project_path", ""),
            messages=data.get("messages", []),
            trusted_tools=set(data.get("trusted_tools", [])),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
            metadata=data.get("metadata", {}),
        )


def new_session(name: str = "default", project_path: str = "", **metadata: Any) -> Session:
    """Create an in-memory session with a fresh id."""
    return Session(
        id=str(uuid.uuid4()),
        name=name,
        project_path=project_path,
        metadata=dict(metadata),
    )


_SELECT_COLUMNS = "id, name, project_path, messages, trusted_tools, created_at, updated_at, metadata"


def _row_to_session(row: Any) -> Session:
    return Session.from_dict({
        "id": row[0],
        "name": row[1],
        "project_path": row[2],
        "messages": json.loads(row[3]),
        "trusted_tools": json.loads(row[4]),
        "created_at": row[5],
        "updated_at": row[6],
        "metadata": json.loads(row[7]),
    })


class SessionManager:
    """Manages conversation sessions with SQLite storage."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize session manager.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    project_path TEXT NOT NULL DEFAULT '',
                    messages TEXT NOT NULL DEFAULT '[]',
                    trusted_tools TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_name_updated_at ON sessions(name, updated_at DESC)"
            )
            await self._db.commit()

    async def create_session(
        self,
        name: str = "default",
        project_path: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create and persist a new session."""
        await self._ensure_db()

        session = new_session(name=name, project_path=project_path, **(metadata or {}))
        await self.save_session(session)
        log.info("Created new session", session_id=session.id, name=name)
        return session

    async def get_or_create_session(self, name: str = "default", project_path: str = "") -> Session:
        """Load the latest session with this name or create one."""
        session = await self.load_session_by_name(name)
        if session:
            return session
        return await self.create_session(name=name, project_path=project_path)

    async def load_session(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        await self._ensure_db()

        async with self._db.execute(
            f"SELECT {_SELECT_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_session(row)

    async def require_session(self, session_id: str) -> Session:
        """Get a session by ID.

        Raises:
            SessionNotFoundError if no session has this ID
        """
        session = await self.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def load_session_by_name(self, name: str) -> Session | None:
        """Load the most recently updated session by name."""
        await self._ensure_db()

        async with self._db.execute(
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM sessions
            WHERE name = ?
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (name,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_session(row)

    async def save_session(self, session: Session) -> None:
        """Save a session."""
        await self._ensure_db()

        session.updated_at = _utcnow_iso()

        await self._db.execute(f"""
            INSERT OR REPLACE INTO sessions ({_SELECT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id,
            session.name,
            session.project_path,
            json.dumps(session.messages),
            json.dumps(sorted(session.trusted_tools)),
            session.created_at,
            session.updated_at,
            json.dumps(session.metadata),
        ))
        await self._db.commit()

    async def list_sessions(self, limit: int = 10) -> list[Session]:
        """List recent sessions, most recently updated first."""
        await self._ensure_db()

        async with self._db.execute(f"""
            SELECT {_SELECT_COLUMNS}
            FROM sessions
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [_row_to_session(row) for row in rows]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns True if a row was removed."""
        await self._ensure_db()

        cursor = await self._db.execute(
            "DELETE FROM sessions WHERE id = ?",
            (session_id,),
        )
        await self._db.commit()

        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global session manager
_manager: SessionManager | None = None


def get_session_manager() -> SessionManager:
    """Get the global session manager."""
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager


def set_session_manager(manager: SessionManager | None) -> None:
    """Set the global session manager."""
    global _manager
    _manager = manager
