"""Tests for session repositories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_member

from llm_consensus.exceptions import SessionNotFoundError
from llm_consensus.protocol.types import Session, SessionConfig, SessionStatus
from llm_consensus.storage import InMemorySessionRepository, SQLiteSessionRepository


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionRepository()
    return SQLiteSessionRepository(db_path=tmp_path / "db" / "sessions.db")


def _session(question: str = "Which cache?", minutes: int = 0) -> Session:
    session = Session(
        question=question,
        config=SessionConfig(),
        members=[make_member("m1"), make_member("m2")],
    )
    session.updated_at = datetime(2026, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    return session


class TestRepository:
    """Contract tests run against every repository."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, repository):
        session = _session()
        await repository.create(session)

        stored = await repository.get(session.id)

        assert stored is not None
        assert stored is not session
        assert stored.id == session.id
        assert stored.question == "Which cache?"
        assert [m.id for m in stored.members] == ["m1", "m2"]
        assert stored.status == SessionStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_unknown(self, repository):
        assert await repository.get("session-missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_create(self, repository):
        session = _session()
        await repository.create(session)

        with pytest.raises(ValueError):
            await repository.create(session)

    @pytest.mark.asyncio
    async def test_update(self, repository):
        session = _session()
        await repository.create(session)

        session.status = SessionStatus.COMPLETED
        session.final_answer = "Redis"
        session.final_confidence = 0.9
        await repository.update(session)

        stored = await repository.get(session.id)
        assert stored.status == SessionStatus.COMPLETED
        assert stored.final_answer == "Redis"
        assert stored.final_confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_update_unknown(self, repository):
        with pytest.raises(SessionNotFoundError):
            await repository.update(_session())

    @pytest.mark.asyncio
    async def test_stored_copy_is_isolated(self, repository):
        session = _session()
        await repository.create(session)

        session.final_answer = "changed after create"

        stored = await repository.get(session.id)
        assert stored.final_answer is None

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, repository):
        older = _session("older", minutes=1)
        newer = _session("newer", minutes=5)
        oldest = _session("oldest", minutes=0)
        for session in (older, newer, oldest):
            await repository.create(session)

        listed = await repository.list()
        assert [s.question for s in listed] == ["newer", "older", "oldest"]

        limited = await repository.list(limit=2)
        assert [s.question for s in limited] == ["newer", "older"]

    @pytest.mark.asyncio
    async def test_delete(self, repository):
        session = _session()
        await repository.create(session)

        assert await repository.delete(session.id) is True
        assert await repository.delete(session.id) is False
        assert await repository.get(session.id) is None


class TestSQLiteRepository:
    """SQLite-specific behaviour."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "sessions.db"
        session = _session()
        await SQLiteSessionRepository(path).create(session)

        stored = await SQLiteSessionRepository(path).get(session.id)

        assert stored is not None
        assert stored.config == session.config

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "sessions.db"
        SQLiteSessionRepository(path)
        assert path.exists()


def test_in_memory_len():
    repository = InMemorySessionRepository()
    assert len(repository) == 0
