"""
Durable journal of content pointers awaiting a record save.

A content write and the record save that references its (possibly new)
ContentRef are two separate requests. When the content write succeeds but
the record save keeps failing, the new pointer is journaled here instead
of being lost, and replayed later with RecordService.replay_journal().

One row per record: journaling a newer pointer for the same record
replaces the older one. complete() and fail() can be told which pointer
the caller saved, so a newer pointer journaled meanwhile is never
dropped or backed off by a stale replay.

Claims are atomic (BEGIN IMMEDIATE), failed rows back off exponentially
(30s, 60s, 120s, ... up to 1h), and rows that exhaust MAX_ATTEMPTS move
to 'failed' (dead letter) rather than being deleted.
"""

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .types import ContentRef, Record

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (process crashed mid-replay)
STALE_CLAIM_SECONDS = 600

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_BASE = 30
RETRY_BACKOFF_MAX = 3600

MAX_ATTEMPTS = 10


@dataclass
class PendingRef:
    """A journaled pointer whose owning record has not been saved yet."""
    entity: str
    record_id: str
    content_id: str
    node_url: Optional[str]
    fields: dict[str, Any] = field(default_factory=dict)
    queued_at: str = ""
    attempts: int = 0

    @property
    def ref(self) -> ContentRef:
        return ContentRef(self.content_id, self.node_url)


class RefJournal:
    """SQLite-backed journal of unsaved record pointers."""

    def __init__(self, journal_path: Path):
        """
        Args:
            journal_path: Path to SQLite database file
        """
        self._journal_path = journal_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives manual transaction control for BEGIN IMMEDIATE
        self._conn = sqlite3.connect(
            str(self._journal_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_refs (
                entity TEXT NOT NULL,
                record_id TEXT NOT NULL,
                content_id TEXT NOT NULL,
                node_url TEXT,
                fields TEXT NOT NULL DEFAULT '{}',
                queued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                last_error TEXT,
                retry_after TEXT,
                PRIMARY KEY (entity, record_id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pending_refs_status
            ON pending_refs(status, queued_at)
        """)

    def _recover_stale_claims(self) -> int:
        """Reset rows claimed by a crashed replay back to pending."""
        now = datetime.now(timezone.utc).isoformat()
        cursor = self._conn.execute("""
            UPDATE pending_refs
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL
            WHERE status = 'processing'
              AND claimed_at IS NOT NULL
              AND julianday(?) - julianday(claimed_at) > ? / 86400.0
        """, (now, STALE_CLAIM_SECONDS))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale ref journal claims", recovered)
        return recovered

    def _upsert(self, record: Record) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute("""
            INSERT OR REPLACE INTO pending_refs
            (entity, record_id, content_id, node_url, fields, queued_at,
             attempts, status, claimed_by, claimed_at, last_error, retry_after)
            VALUES (?, ?, ?, ?, ?, ?, 0, 'pending', NULL, NULL, NULL, NULL)
        """, (
            record.entity, record.id, record.ref.content_id, record.ref.node_url,
            json.dumps(record.fields), now,
        ))

    def record(self, record: Record) -> None:
        """Journal a record's current pointer (replaces any older row)."""
        with self._lock:
            self._upsert(record)
        logger.warning(
            "Journaled unsaved pointer for %s/%s -> %s@%s",
            record.entity, record.id, record.ref.content_id, record.ref.node_url or "default",
        )

    def due(self, limit: int = 50) -> list[PendingRef]:
        """Atomically claim rows whose backoff has elapsed, oldest first.

        Claimed rows move to 'processing'. Call complete() after the record
        save succeeds or fail() to release them with backoff.
        """
        pid = str(os.getpid())
        now = datetime.now(timezone.utc).isoformat()

        with self._lock:
            self._recover_stale_claims()
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = self._conn.execute("""
                    SELECT entity, record_id, content_id, node_url, fields,
                           queued_at, attempts
                    FROM pending_refs
                    WHERE status = 'pending'
                      AND (retry_after IS NULL OR retry_after <= ?)
                    ORDER BY queued_at ASC, rowid ASC
                    LIMIT ?
                """, (now, limit))
                rows = cursor.fetchall()
                items = []
                for row in rows:
                    try:
                        fields = json.loads(row[4]) if row[4] else {}
                    except (json.JSONDecodeError, TypeError):
                        fields = {}
                    items.append(PendingRef(
                        entity=row[0],
                        record_id=row[1],
                        content_id=row[2],
                        node_url=row[3],
                        fields=fields,
                        queued_at=row[5],
                        attempts=row[6] + 1,
                    ))
                if items:
                    self._conn.executemany("""
                        UPDATE pending_refs
                        SET status = 'processing', claimed_by = ?, claimed_at = ?,
                            attempts = attempts + 1
                        WHERE entity = ? AND record_id = ?
                    """, [(pid, now, p.entity, p.record_id) for p in items])
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return items

    def complete(self, entity: str, record_id: str, ref: Optional[ContentRef] = None) -> bool:
        """Drop a row after its record save succeeded.

        With ``ref``, only a row still holding that pointer is dropped, so a
        newer pointer journaled while the save was in flight survives.
        Returns True if a row was removed.
        """
        sql = "DELETE FROM pending_refs WHERE entity = ? AND record_id = ?"
        params: tuple = (entity, record_id)
        if ref is not None:
            sql += " AND content_id = ? AND node_url IS ?"
            params += (ref.content_id, ref.node_url)
        with self._lock:
            cursor = self._conn.execute(sql, params)
        return cursor.rowcount > 0

    def resolve(self, record: Record) -> None:
        """Note that ``record`` was saved with its current pointer.

        A row holding the same pointer is dropped, and so is an unclaimed
        row holding an older one. A row a replay has claimed with an older
        pointer is requeued with this one: the replay's stale save may land
        after ours, and the next replay puts the newer pointer back.
        """
        ref = record.ref
        with self._lock:
            row = self._conn.execute(
                "SELECT content_id, node_url, status FROM pending_refs"
                " WHERE entity = ? AND record_id = ?",
                (record.entity, record.id),
            ).fetchone()
            if row is None:
                return
            if row[2] == "processing" and (row[0], row[1]) != (ref.content_id, ref.node_url):
                self._upsert(record)
                logger.info(
                    "Requeued %s/%s -> %s over an in-flight replay of %s",
                    record.entity, record.id, ref.content_id, row[0],
                )
                return
            self._conn.execute(
                "DELETE FROM pending_refs WHERE entity = ? AND record_id = ?",
                (record.entity, record.id),
            )

    def fail(
        self,
        entity: str,
        record_id: str,
        error: str | None = None,
        ref: Optional[ContentRef] = None,
    ) -> None:
        """Release a claimed row with exponential backoff, or dead-letter it.

        With ``ref``, a row that has since been replaced by a newer pointer
        is left alone.
        """
        match = "entity = ? AND record_id = ?"
        keys: tuple = (entity, record_id)
        if ref is not None:
            match += " AND content_id = ? AND node_url IS ? AND status = 'processing'"
            keys += (ref.content_id, ref.node_url)

        with self._lock:
            row = self._conn.execute(
                f"SELECT attempts FROM pending_refs WHERE {match}", keys,
            ).fetchone()
            if row is None:
                logger.debug("No claimed row for %s/%s to release", entity, record_id)
                return
            attempts = row[0]

            if attempts >= MAX_ATTEMPTS:
                self._conn.execute(f"""
                    UPDATE pending_refs
                    SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                        last_error = ?
                    WHERE {match}
                """, (error,) + keys)
                logger.warning(
                    "Abandoned pointer for %s/%s after %d attempts: %s",
                    entity, record_id, attempts, error or "unknown",
                )
                return

            delay = min(RETRY_BACKOFF_BASE * (2 ** (attempts - 1)), RETRY_BACKOFF_MAX)
            retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()
            self._conn.execute(f"""
                UPDATE pending_refs
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?, retry_after = ?
                WHERE {match}
            """, (error, retry_at) + keys)
        logger.info(
            "Pointer save for %s/%s failed (attempt %d), retry after %ds: %s",
            entity, record_id, attempts, delay, error or "unknown",
        )

    def count(self) -> int:
        """Rows still waiting (excludes processing and failed)."""
        cursor = self._conn.execute(
            "SELECT COUNT(*) FROM pending_refs WHERE status = 'pending'"
        )
        return cursor.fetchone()[0]

    def stats(self) -> dict:
        cursor = self._conn.execute(
            "SELECT status, COUNT(*) FROM pending_refs GROUP BY status"
        )
        by_status = {row[0] or "pending": row[1] for row in cursor.fetchall()}
        oldest = self._conn.execute("SELECT MIN(queued_at) FROM pending_refs").fetchone()[0]
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "failed": by_status.get("failed", 0),
            "oldest": oldest,
            "journal_path": str(self._journal_path),
        }

    def list_failed(self) -> list[dict]:
        cursor = self._conn.execute("""
            SELECT entity, record_id, content_id, node_url, attempts, last_error, queued_at
            FROM pending_refs
            WHERE status = 'failed'
            ORDER BY queued_at ASC
        """)
        return [
            {
                "entity": row[0], "record_id": row[1], "content_id": row[2],
                "node_url": row[3], "attempts": row[4], "last_error": row[5],
                "queued_at": row[6],
            }
            for row in cursor.fetchall()
        ]

    def retry_failed(self) -> int:
        """Move dead-lettered rows back to pending with fresh attempt counters."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE pending_refs
                SET status = 'pending', attempts = 0, claimed_by = NULL,
                    claimed_at = NULL, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
            count = cursor.rowcount
        if count:
            logger.info("Reset %d failed pointers back to pending", count)
        return count

    def clear(self) -> int:
        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) FROM pending_refs").fetchone()[0]
            self._conn.execute("DELETE FROM pending_refs")
        return count

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
