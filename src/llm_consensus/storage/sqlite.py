"""
SQLite session repository.

Sessions are stored as their pydantic JSON dump, next to a few indexed
columns used for listing. Blocking sqlite3 calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import builtins
import sqlite3
from pathlib import Path
from typing import ClassVar

from llm_consensus.exceptions import SessionNotFoundError
from llm_consensus.protocol.types import Session
from llm_consensus.storage.base import SessionRepository


class SQLiteSessionRepository(SessionRepository):
    """Session store backed by a single SQLite file."""

    DEFAULT_DB_PATH: ClassVar[Path] = (
        Path.home() / ".local" / "share" / "llm-consensus" / "sessions.db"
    )

    def __init__(self, db_path: Path | str | None = None) -> None:
        """Initialize the repository.

        Args:
            db_path: Path to the database file. Defaults to
                ~/.local/share/llm-consensus/sessions.db
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Create the sessions table if needed."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    question TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at)")
            conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    @staticmethod
    def _row(session: Session) -> tuple[str, str, str, str, str, str]:
        return (
            session.id,
            session.question,
            session.status.value,
            session.created_at.isoformat(),
            session.updated_at.isoformat(),
            session.model_dump_json(),
        )

    def _insert(self, session: Session) -> None:
        with self._get_conn() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO sessions (session_id, question, status, created_at,
                                          updated_at, payload)
                    VALUES (?, ?, ?, ?, ?, ?)
                """,
                    self._row(session),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"Session {session.id} already exists") from None
            conn.commit()

    def _update(self, session: Session) -> None:
        session_id, question, status, created_at, updated_at, payload = self._row(session)
        with self._get_conn() as conn:
            cursor = conn.execute(
                """
                UPDATE sessions SET question = ?, status = ?, created_at = ?,
                                    updated_at = ?, payload = ?
                WHERE session_id = ?
            """,
                (question, status, created_at, updated_at, payload, session_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise SessionNotFoundError(f"Session {session_id} not found")

    def _select(self, session_id: str) -> Session | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT payload FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return Session.model_validate_json(row[0]) if row else None

    def _select_all(self, limit: int | None) -> builtins.list[Session]:
        query = "SELECT payload FROM sessions ORDER BY updated_at DESC"
        params: tuple[int, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._get_conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Session.model_validate_json(row[0]) for row in rows]

    def _remove(self, session_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            conn.commit()
            return cursor.rowcount > 0

    async def create(self, session: Session) -> None:
        await asyncio.to_thread(self._insert, session)

    async def update(self, session: Session) -> None:
        await asyncio.to_thread(self._update, session)

    async def get(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._select, session_id)

    async def list(self, limit: int | None = None) -> builtins.list[Session]:
        return await asyncio.to_thread(self._select_all, limit)

    async def delete(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._remove, session_id)


__all__ = ["SQLiteSessionRepository"]
