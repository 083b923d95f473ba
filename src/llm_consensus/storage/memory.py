"""In-process session repository."""

from __future__ import annotations

import asyncio
import builtins

from llm_consensus.exceptions import SessionNotFoundError
from llm_consensus.protocol.types import Session
from llm_consensus.storage.base import SessionRepository


class InMemorySessionRepository(SessionRepository):
    """Keeps deep copies of sessions in a dict.

    Callers never share objects with the store, so mutating a running
    session does not change what was persisted until ``update`` is called.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: Session) -> None:
        async with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"Session {session.id} already exists")
            self._sessions[session.id] = session.model_copy(deep=True)

    async def update(self, session: Session) -> None:
        async with self._lock:
            if session.id not in self._sessions:
                raise SessionNotFoundError(f"Session {session.id} not found")
            self._sessions[session.id] = session.model_copy(deep=True)

    async def get(self, session_id: str) -> Session | None:
        stored = self._sessions.get(session_id)
        return stored.model_copy(deep=True) if stored else None

    async def list(self, limit: int | None = None) -> builtins.list[Session]:
        sessions = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
        if limit is not None:
            sessions = sessions[:limit]
        return [s.model_copy(deep=True) for s in sessions]

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["InMemorySessionRepository"]
