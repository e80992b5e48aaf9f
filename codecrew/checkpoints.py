"""Orchestration checkpoints with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from codecrew.config import get_config
from codecrew.exceptions import CheckpointError
from codecrew.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Checkpoint:
    """Snapshot of an orchestration run, enough to resume it."""

    session_id: str
    phase: str
    tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_tasks: list[str] = field(default_factory=list)
    agent_states: dict[str, Any] = field(default_factory=dict)
    generated_files: list[str] = field(default_factory=list)
    quality_history: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "phase": self.phase,
            "tasks": self.tasks,
            "completed_tasks": self.completed_tasks,
            "agent_states": self.agent_states,
            "generated_files": self.generated_files,
            "quality_history": self.quality_history,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            session_id=data["session_id"],
            phase=data.get("phase", ""),
            tasks=list(data.get("tasks") or []),
            completed_tasks=list(data.get("completed_tasks") or []),
            agent_states=dict(data.get("agent_states") or {}),
            generated_files=list(data.get("generated_files") or []),
            quality_history=list(data.get("quality_history") or []),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or _utcnow_iso(),
        )


def _row_to_checkpoint(row: Any) -> Checkpoint:
    try:
        state = json.loads(row[0])
    except json.JSONDecodeError as e:
        raise CheckpointError(f"Corrupt checkpoint payload: {e}")
    return Checkpoint.from_dict(state)


class CheckpointStore:
    """Keeps the newest ``max_versions`` checkpoints per session."""

    def __init__(self, db_path: Path | str | None = None, max_versions: int | None = None):
        config = get_config()
        if db_path is None:
            self.db_path = Path(config.checkpoints.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()
        self.max_versions = max(1, max_versions if max_versions is not None else config.checkpoints.max_versions)

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    session_id TEXT NOT NULL,
                    phase TEXT NOT NULL DEFAULT '',
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_session_seq ON checkpoints(session_id, seq DESC)"
            )
            await self._db.commit()

    async def save(self, checkpoint: Checkpoint) -> str:
        """Persist a checkpoint and prune older versions of the session."""
        await self._ensure_db()

        checkpoint.metadata["last_checkpoint"] = _utcnow_iso()
        await self._db.execute(
            """
            INSERT OR REPLACE INTO checkpoints (id, session_id, phase, state, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                checkpoint.id,
                checkpoint.session_id,
                checkpoint.phase,
                json.dumps(checkpoint.to_dict(), default=str),
                checkpoint.created_at,
            ),
        )
        await self._db.execute(
            """
            DELETE FROM checkpoints
            WHERE session_id = ?
              AND seq NOT IN (
                  SELECT seq FROM checkpoints WHERE session_id = ? ORDER BY seq DESC LIMIT ?
              )
            """,
            (checkpoint.session_id, checkpoint.session_id, self.max_versions),
        )
        await self._db.commit()
        log.debug("Checkpoint saved", session_id=checkpoint.session_id, phase=checkpoint.phase)
        return checkpoint.id

    async def load_latest(self, session_id: str) -> Checkpoint | None:
        """Most recent checkpoint for a session, or ``None`` for a fresh start."""
        await self._ensure_db()

        async with self._db.execute(
            "SELECT state FROM checkpoints WHERE session_id = ? ORDER BY seq DESC LIMIT 1",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            return None
        return _row_to_checkpoint(row)

    async def list_checkpoints(self, session_id: str | None = None, limit: int = 20) -> list[Checkpoint]:
        """List checkpoints, newest first."""
        await self._ensure_db()

        if session_id is None:
            query = "SELECT state FROM checkpoints ORDER BY seq DESC LIMIT ?"
            params: tuple[Any, ...] = (limit,)
        else:
            query = "SELECT state FROM checkpoints WHERE session_id = ? ORDER BY seq DESC LIMIT ?"
            params = (session_id, limit)

        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_checkpoint(row) for row in rows]

    async def delete(self, session_id: str) -> int:
        """Delete every checkpoint of a session. Returns the number removed."""
        await self._ensure_db()

        cursor = await self._db.execute("DELETE FROM checkpoints WHERE session_id = ?", (session_id,))
        await self._db.commit()
        return cursor.rowcount

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
