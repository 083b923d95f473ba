"""
Session storage for llm-consensus.

In-memory and SQLite implementations of the SessionRepository contract.
"""

from llm_consensus.storage.base import SessionRepository
from llm_consensus.storage.memory import InMemorySessionRepository
from llm_consensus.storage.sqlite import SQLiteSessionRepository

__all__ = [
    "InMemorySessionRepository",
    "SQLiteSessionRepository",
    "SessionRepository",
]
