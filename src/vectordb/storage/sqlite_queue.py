"""
SQLite-backed embedding work queue.

Tracks which documents need (re)embedding. Workers pull batches of document
ids, embed them, write the vectors through an EmbeddingStore and report the
outcome. The search path never reads this table.

Lifecycle:
    pending -> processing -> completed
                          -> failed -> (retried while error_count < max_attempts)
"""

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from ..contracts.models import QueueJob, QueueStatus
from ..core.exceptions import ValidationError
from ..query.expressions import is_identifier
from .base import placeholders
from .sqlite_store import SqliteDatabase


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
DEFAULT_MAX_ATTEMPTS = 3
PROCESSING_TIMEOUT = timedelta(minutes=15)
COMPLETED_RETENTION = timedelta(days=3)
RETRY_LIMIT = 25000

_FINAL_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqliteEmbedQueue:
    """
    Queue of documents waiting to be embedded.

    Each document appears at most once. Failed jobs are retried until their
    error count reaches ``max_attempts``.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        table_prefix: str = "vdb_",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        auto_init: bool = True,
    ):
        table = f"{table_prefix}embed_queue"
        if not is_identifier(table):
            raise ValidationError(f"Invalid table prefix: {table_prefix!r}")
        self.table = table
        self.max_attempts = max_attempts
        self.db = SqliteDatabase(db_path)

        if auto_init:
            self.init_schema()

    def init_schema(self) -> None:
        statuses = ", ".join(f"'{s.value}'" for s in QueueStatus)
        with self.db.transaction("initialize embed queue") as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.table}" (
                    job_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL UNIQUE,
                    chunk_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL CHECK (status IN ({statuses})),
                    queued_time TEXT NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS "ix_{self.table}_status"
                ON "{self.table}" (status, queued_time)
            """)
        logger.debug(f"Initialized embed queue {self.table}")

    def drop_schema(self) -> None:
        with self.db.transaction("drop embed queue") as cursor:
            cursor.execute(f'DROP TABLE IF EXISTS "{self.table}"')

    def _row_to_job(self, row) -> QueueJob:
        return QueueJob(
            job_id=row["job_id"],
            document_id=row["document_id"],
            status=QueueStatus(row["status"]),
            chunk_count=row["chunk_count"],
            queued_time=_parse(row["queued_time"]),
            start_time=_parse(row["start_time"]),
            end_time=_parse(row["end_time"]),
            error_count=row["error_count"],
            error_message=row["error_message"],
        )

    def get_job(self, document_id: int) -> Optional[QueueJob]:
        rows = self.db.query(
            "get queue job",
            f'SELECT * FROM "{self.table}" WHERE document_id = ?',
            (document_id,),
        )
        return self._row_to_job(rows[0]) if rows else None

    def exists(self, document_id: int) -> bool:
        rows = self.db.query(
            "check queue membership",
            f'SELECT 1 FROM "{self.table}" WHERE document_id = ?',
            (document_id,),
        )
        return bool(rows)

    def add_document(self, document_id: int, chunk_count: int = 0) -> int:
        """
        Queue a document.

        A completed or failed job for the same document is replaced.

        Returns:
            The new job id

        Raises:
            ValidationError: If the document is already pending or processing
        """
        now = _iso(datetime.now(timezone.utc))
        with self.db.transaction("queue document") as cursor:
            cursor.execute(
                f'SELECT status FROM "{self.table}" WHERE document_id = ?',
                (document_id,),
            )
            row = cursor.fetchone()
            if row:
                if QueueStatus(row["status"]) not in _FINAL_STATUSES:
                    raise ValidationError(f"Document {document_id} is already queued")
                cursor.execute(f'DELETE FROM "{self.table}" WHERE document_id = ?', (document_id,))
                logger.debug(f"Replacing {row['status']} job for document {document_id}")

            cursor.execute(f"""
                INSERT INTO "{self.table}" (document_id, chunk_count, status, queued_time)
                VALUES (?, ?, ?, ?)
            """, (document_id, chunk_count, QueueStatus.PENDING.value, now))
            return cursor.lastrowid

    def add_documents(self, document_ids: Iterable[int], chunk_count: int = 0) -> int:
        """
        Queue many documents at once, skipping those already in the queue.

        Returns:
            Number of documents added
        """
        now = _iso(datetime.now(timezone.utc))
        added = 0
        with self.db.transaction("queue documents") as cursor:
            for document_id in dict.fromkeys(document_ids):
                cursor.execute(f"""
                    INSERT OR IGNORE INTO "{self.table}" (document_id, chunk_count, status, queued_time)
                    VALUES (?, ?, ?, ?)
                """, (document_id, chunk_count, QueueStatus.PENDING.value, now))
                added += cursor.rowcount
        logger.info(f"Queued {added} documents for embedding")
        return added

    def get_next_batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> List[int]:
        """
        Claim the next documents to embed.

        Pending jobs come first, then failed jobs still under the attempt
        limit; oldest first within each group. Claimed jobs move to
        processing.

        Returns:
            Document ids of the claimed jobs
        """
        if batch_size <= 0:
            return []

        now = _iso(datetime.now(timezone.utc))
        with self.db.transaction("claim queue batch") as cursor:
            cursor.execute(f"""
                SELECT job_id, document_id FROM "{self.table}"
                WHERE status = ?
                ORDER BY queued_time, job_id
                LIMIT ?
            """, (QueueStatus.PENDING.value, batch_size))
            rows = cursor.fetchall()

            remaining = batch_size - len(rows)
            if remaining > 0:
                cursor.execute(f"""
                    SELECT job_id, document_id FROM "{self.table}"
                    WHERE status = ? AND error_count < ?
                    ORDER BY queued_time, job_id
                    LIMIT ?
                """, (QueueStatus.FAILED.value, self.max_attempts, remaining))
                rows.extend(cursor.fetchall())

            job_ids = [row["job_id"] for row in rows]
            if job_ids:
                cursor.execute(f"""
                    UPDATE "{self.table}"
                    SET status = ?, start_time = ?, end_time = NULL
                    WHERE job_id IN ({placeholders(len(job_ids))})
                """, (QueueStatus.PROCESSING.value, now, *job_ids))

        document_ids = [row["document_id"] for row in rows]
        logger.debug(f"Claimed {len(document_ids)} documents from the embed queue")
        return document_ids

    def update_status(
        self,
        document_ids: Union[int, Iterable[int]],
        status: Union[str, QueueStatus],
        error_message: str = "",
    ) -> bool:
        """
        Record the outcome of processing.

        Args:
            document_ids: One id or several
            status: 'completed' or 'failed'; anything else is refused
            error_message: Stored with the job (use for failures)

        Returns:
            True if the jobs were updated, False if the status was refused
        """
        try:
            status = QueueStatus(status)
        except ValueError:
            logger.warning(f"Refusing unknown queue status: {status!r}")
            return False
        if status not in _FINAL_STATUSES:
            logger.warning(f"Refusing queue status {status.value!r}; only completed/failed are accepted")
            return False

        if isinstance(document_ids, int):
            document_ids = [document_ids]
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return True

        now = _iso(datetime.now(timezone.utc))
        error_increment = 1 if status is QueueStatus.FAILED else 0
        with self.db.transaction("update queue status") as cursor:
            cursor.execute(f"""
                UPDATE "{self.table}"
                SET status = ?, end_time = ?, error_message = ?,
                    error_count = error_count + ?
                WHERE document_id IN ({placeholders(len(ids))})
            """, (status.value, now, error_message or None, error_increment, *ids))
        return True

    def get_stats(self) -> Dict[str, int]:
        """Job counts: ``total`` plus one entry per status."""
        rows = self.db.query(
            "read queue stats",
            f'SELECT status, COUNT(*) AS n FROM "{self.table}" GROUP BY status',
        )
        stats = {status.value: 0 for status in QueueStatus}
        for row in rows:
            stats[row["status"]] = row["n"]
        stats["total"] = sum(stats.values())
        return stats

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Expire stuck jobs and purge finished ones.

        - Processing jobs started more than 15 minutes ago become failed.
        - Completed jobs that ended more than 3 days ago are deleted.
        - Failed jobs with more than ``max_attempts`` errors are deleted.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            Counts of ``timed_out`` and ``deleted`` jobs
        """
        now = now or datetime.now(timezone.utc)
        stale_before = _iso(now - PROCESSING_TIMEOUT)
        completed_before = _iso(now - COMPLETED_RETENTION)

        with self.db.transaction("clean up embed queue") as cursor:
            cursor.execute(f"""
                UPDATE "{self.table}"
                SET status = ?, error_count = error_count + 1, end_time = ?,
                    error_message = ?
                WHERE status = ? AND end_time IS NULL AND start_time < ?
            """, (
                QueueStatus.FAILED.value,
                _iso(now),
                "Processing time exceeded 15 minutes.",
                QueueStatus.PROCESSING.value,
                stale_before,
            ))
            timed_out = cursor.rowcount

            cursor.execute(f"""
                DELETE FROM "{self.table}"
                WHERE (status = ? AND end_time IS NOT NULL AND end_time < ?)
                   OR (status = ? AND error_count > ?)
            """, (
                QueueStatus.COMPLETED.value,
                completed_before,
                QueueStatus.FAILED.value,
                self.max_attempts,
            ))
            deleted = cursor.rowcount

        if timed_out or deleted:
            logger.info(f"Queue cleanup: {timed_out} timed out, {deleted} deleted")
        return {"timed_out": timed_out, "deleted": deleted}

    def get_documents_to_retry(self) -> List[int]:
        rows = self.db.query(
            "list retryable documents",
            f'SELECT document_id FROM "{self.table}" '
            f'WHERE status = ? AND error_count < ? ORDER BY queued_time, job_id LIMIT ?',
            (QueueStatus.FAILED.value, self.max_attempts, RETRY_LIMIT),
        )
        return [row["document_id"] for row in rows]

    def reset_document(self, document_id: int) -> bool:
        """Put a document back to pending. Returns False if it is not queued."""
        with self.db.transaction("reset queue job") as cursor:
            cursor.execute(f"""
                UPDATE "{self.table}"
                SET status = ?, start_time = NULL, end_time = NULL
                WHERE document_id = ?
            """, (QueueStatus.PENDING.value, document_id))
            return cursor.rowcount > 0

    def delete_document(self, document_id: int) -> bool:
        with self.db.transaction("delete queue job") as cursor:
            cursor.execute(f'DELETE FROM "{self.table}" WHERE document_id = ?', (document_id,))
            return cursor.rowcount > 0

    def delete_job(self, job_id: int) -> bool:
        with self.db.transaction("delete queue job") as cursor:
            cursor.execute(f'DELETE FROM "{self.table}" WHERE job_id = ?', (job_id,))
            return cursor.rowcount > 0

    def get_page(self, page: int = 1, per_page: int = 25) -> List[QueueJob]:
        """
        One page of jobs for display.

        Active jobs come first (processing, pending, failed, completed),
        oldest first within a status.
        """
        page = max(page, 1)
        rows = self.db.query(
            "read queue page",
            f"""
            SELECT * FROM "{self.table}"
            ORDER BY CASE status
                         WHEN 'processing' THEN 0
                         WHEN 'pending' THEN 1
                         WHEN 'failed' THEN 2
                         ELSE 3
                     END,
                     queued_time, job_id
            LIMIT ? OFFSET ?
            """,
            (per_page, (page - 1) * per_page),
        )
        return [self._row_to_job(row) for row in rows]

    def get_total(self) -> int:
        rows = self.db.query("count queue jobs", f'SELECT COUNT(*) FROM "{self.table}"')
        return rows[0][0]

    def close(self) -> None:
        self.db.close()
