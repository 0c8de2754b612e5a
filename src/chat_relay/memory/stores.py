"""
Turn and memory stores.

The relay does not own conversation turns or memory rows; it reads them
through these small contracts. Each contract has a PostgreSQL implementation
(psycopg connection, same tables the chat app writes) and an in-process one
used when no DATABASE_URL is configured.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant", "system")


@dataclass(frozen=True)
class ConversationTurn:
    """One immutable message of a conversation, in store order."""

    id: str
    role: str
    content: str
    order: int
    speaker: Optional[str] = None


@dataclass
class StoredMemory:
    id: str
    content: str
    status: str = "pending"
    is_deleted: bool = False


def _col(row, name: str, index: int):
    return row[name] if isinstance(row, dict) else row[index]


class TurnStore:
    """fetch_ordered_turns(conversation_id) -> list[ConversationTurn], ascending."""

    def fetch_ordered_turns(self, conversation_id: str) -> list[ConversationTurn]:
        raise NotImplementedError


class MemoryStore:
    def fetch_active_contents(self, user_id: str, limit: int = 200) -> list[str]:
        """Non-deleted pending + confirmed contents, most recently updated first."""
        raise NotImplementedError

    def fetch_confirmed_contents(self, user_id: str, limit: int = 50) -> list[str]:
        raise NotImplementedError

    def insert_pending(self, user_id: str, contents: list[str]) -> None:
        raise NotImplementedError

    def enforce_pending_cap(self, user_id: str, cap: int) -> int:
        """Soft-delete pending rows beyond the `cap` most recent; returns count."""
        raise NotImplementedError


class PostgresTurnStore(TurnStore):
    def __init__(self, pg_conn):
        self._pg_conn = pg_conn

    def fetch_ordered_turns(self, conversation_id: str) -> list[ConversationTurn]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, role, content, speaker
                FROM chat_messages
                WHERE session_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            )
            rows = cur.fetchall()
        return [
            ConversationTurn(
                id=str(_col(row, "id", 0)),
                role=_col(row, "role", 1),
                content=_col(row, "content", 2) or "",
                order=index,
                speaker=_col(row, "speaker", 3),
            )
            for index, row in enumerate(rows)
        ]


class PostgresMemoryStore(MemoryStore):
    def __init__(self, pg_conn):
        self._pg_conn = pg_conn

    def _fetch_contents(self, user_id: str, statuses: list[str], limit: int) -> list[str]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT content FROM memory_entries
                WHERE user_id = %s
                  AND is_deleted = false
                  AND status = ANY(%s)
                ORDER BY updated_at DESC
                LIMIT %s
                """,
                (user_id, statuses, limit),
            )
            rows = cur.fetchall()
        contents = [_col(row, "content", 0) for row in rows]
        return [c for c in contents if isinstance(c, str)]

    def fetch_active_contents(self, user_id: str, limit: int = 200) -> list[str]:
        return self._fetch_contents(user_id, ["pending", "confirmed"], limit)

    def fetch_confirmed_contents(self, user_id: str, limit: int = 50) -> list[str]:
        return self._fetch_contents(user_id, ["confirmed"], limit)

    def insert_pending(self, user_id: str, contents: list[str]) -> None:
        if not contents:
            return
        with self._pg_conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO memory_entries (user_id, content, source, status)
                VALUES (%s, %s, 'ai_suggested', 'pending')
                """,
                [(user_id, content) for content in contents],
            )

    def enforce_pending_cap(self, user_id: str, cap: int) -> int:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                UPDATE memory_entries SET is_deleted = true
                WHERE id IN (
                    SELECT id FROM memory_entries
                    WHERE user_id = %s AND status = 'pending' AND is_deleted = false
                    ORDER BY updated_at DESC NULLS LAST, created_at DESC
                    OFFSET %s
                )
                """,
                (user_id, cap),
            )
            return cur.rowcount or 0


class InMemoryTurnStore(TurnStore):
    """Append-only turn log keyed by conversation id."""

    def __init__(self):
        self._turns: dict[str, list[ConversationTurn]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def append(
        self,
        conversation_id: str,
        role: str,
        content: str,
        speaker: Optional[str] = None,
    ) -> ConversationTurn:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        with self._lock:
            turns = self._turns.setdefault(conversation_id, [])
            turn = ConversationTurn(
                id=f"turn-{next(self._ids)}",
                role=role,
                content=content,
                order=len(turns),
                speaker=speaker,
            )
            turns.append(turn)
        return turn

    def prune(self, conversation_id: str, keep_last: int) -> None:
        """Drop all but the newest `keep_last` turns (history pruning)."""
        with self._lock:
            turns = self._turns.get(conversation_id, [])
            self._turns[conversation_id] = turns[-keep_last:] if keep_last else []

    def fetch_ordered_turns(self, conversation_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(conversation_id, []))


class InMemoryMemoryStore(MemoryStore):
    def __init__(self):
        self._rows: dict[str, list[StoredMemory]] = {}
        self._ids = itertools.count(1)

    def add(self, user_id: str, content: str, status: str = "confirmed") -> StoredMemory:
        memory = StoredMemory(id=f"mem-{next(self._ids)}", content=content, status=status)
        # newest first, matching ORDER BY updated_at DESC
        self._rows.setdefault(user_id, []).insert(0, memory)
        return memory

    def rows(self, user_id: str) -> list[StoredMemory]:
        return list(self._rows.get(user_id, []))

    def _contents(self, user_id: str, statuses: tuple, limit: int) -> list[str]:
        return [
            m.content
            for m in self._rows.get(user_id, [])
            if not m.is_deleted and m.status in statuses
        ][:limit]

    def fetch_active_contents(self, user_id: str, limit: int = 200) -> list[str]:
        return self._contents(user_id, ("pending", "confirmed"), limit)

    def fetch_confirmed_contents(self, user_id: str, limit: int = 50) -> list[str]:
        return self._contents(user_id, ("confirmed",), limit)

    def insert_pending(self, user_id: str, contents: list[str]) -> None:
        for content in contents:
            self.add(user_id, content, status="pending")

    def enforce_pending_cap(self, user_id: str, cap: int) -> int:
        pending = [
            m for m in self._rows.get(user_id, [])
            if m.status == "pending" and not m.is_deleted
        ]
        overflow = pending[cap:]
        for memory in overflow:
            memory.is_deleted = True
        return len(overflow)
