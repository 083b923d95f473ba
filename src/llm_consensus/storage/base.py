"""Session persistence contract."""

from __future__ import annotations

from abc import ABC, abstractmethod

from llm_consensus.protocol.types import Session


class SessionRepository(ABC):
    """Async store of sessions keyed by id.

    The pipeline calls :meth:`create` once when a session starts and
    :meth:`update` when it ends.
    """

    @abstractmethod
    async def create(self, session: Session) -> None:
        """Store a new session.

        Raises:
            ValueError: If a session with the same id already exists.
        """

    @abstractmethod
    async def update(self, session: Session) -> None:
        """Replace a stored session.

        Raises:
            SessionNotFoundError: If the id is unknown.
        """

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        """Return a copy of the stored session, or None."""

    @abstractmethod
    async def list(self, limit: int | None = None) -> list[Session]:
        """Return sessions, most recently updated first."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Delete a session; returns False when it did not exist."""


__all__ = ["SessionRepository"]
