"""
Compression cache: one rolling summary per (module, conversation).

An entry records the id of the last turn folded into its summary. The
orchestrator re-validates that id against live history before every use,
so the cache is never trusted on its own.

Concurrent requests on the same conversation may both refresh the entry;
the last upsert wins. Both summaries are valid distillations of a prefix of
the same history, so no locking is done.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompressionCacheEntry:
    conversation_id: str
    compressed_up_to_turn_id: Optional[str]
    summary_text: str
    updated_at: Optional[datetime] = None
    module: str = "chitchat"


class CompressionCache:
    def get(self, module: str, conversation_id: str) -> Optional[CompressionCacheEntry]:
        raise NotImplementedError

    def upsert(
        self,
        module: str,
        conversation_id: str,
        compressed_up_to_turn_id: Optional[str],
        summary_text: str,
    ) -> None:
        raise NotImplementedError


class PostgresCompressionCache(CompressionCache):
    """compression_cache table, unique on (module, conversation_id)."""

    def __init__(self, pg_conn):
        self._pg_conn = pg_conn
        self._setup_table()

    def _setup_table(self):
        """Create compression_cache table if missing."""
        try:
            with self._pg_conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS compression_cache (
                        module TEXT NOT NULL,
                        conversation_id TEXT NOT NULL,
                        compressed_up_to_message_id TEXT,
                        summary_text TEXT NOT NULL DEFAULT '',
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        CONSTRAINT compression_cache_module_conv_key
                            UNIQUE (module, conversation_id)
                    )
                """)
        except Exception as e:
            logger.warning("Failed to create compression_cache table: %s", e)

    def get(self, module: str, conversation_id: str) -> Optional[CompressionCacheEntry]:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                SELECT compressed_up_to_message_id, summary_text, updated_at
                FROM compression_cache
                WHERE module = %s AND conversation_id = %s
                """,
                (module, conversation_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        if isinstance(row, dict):
            turn_id, summary, updated_at = (
                row["compressed_up_to_message_id"],
                row["summary_text"],
                row["updated_at"],
            )
        else:
            turn_id, summary, updated_at = row[0], row[1], row[2]
        return CompressionCacheEntry(
            conversation_id=conversation_id,
            compressed_up_to_turn_id=turn_id,
            summary_text=summary or "",
            updated_at=updated_at,
            module=module,
        )

    def upsert(
        self,
        module: str,
        conversation_id: str,
        compressed_up_to_turn_id: Optional[str],
        summary_text: str,
    ) -> None:
        with self._pg_conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO compression_cache
                    (module, conversation_id, compressed_up_to_message_id, summary_text, updated_at)
                VALUES (%s, %s, %s, %s, now())
                ON CONFLICT (module, conversation_id) DO UPDATE SET
                    compressed_up_to_message_id = EXCLUDED.compressed_up_to_message_id,
                    summary_text = EXCLUDED.summary_text,
                    updated_at = now()
                """,
                (module, conversation_id, compressed_up_to_turn_id, summary_text),
            )


class InMemoryCompressionCache(CompressionCache):
    def __init__(self):
        self._entries: dict[tuple[str, str], CompressionCacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, module: str, conversation_id: str) -> Optional[CompressionCacheEntry]:
        return self._entries.get((module, conversation_id))

    def upsert(
        self,
        module: str,
        conversation_id: str,
        compressed_up_to_turn_id: Optional[str],
        summary_text: str,
    ) -> None:
        with self._lock:
            self._entries[(module, conversation_id)] = CompressionCacheEntry(
                conversation_id=conversation_id,
                compressed_up_to_turn_id=compressed_up_to_turn_id,
                summary_text=summary_text,
                updated_at=datetime.now(timezone.utc),
                module=module,
            )
