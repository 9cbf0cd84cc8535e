"""
Unit tests for the SQLite embed queue.

Tests for:
- Adding documents (single and bulk)
- Claiming batches and reporting outcomes
- Retry limits
- Cleanup of stuck and finished jobs
- Paging and statistics
"""

from datetime import datetime, timedelta, timezone

import pytest

from vectordb.contracts.models import QueueStatus
from vectordb.core.exceptions import ValidationError
from vectordb.storage.sqlite_queue import SqliteEmbedQueue


@pytest.fixture
def queue():
    q = SqliteEmbedQueue(":memory:")
    yield q
    q.close()


class TestAddDocuments:
    """Tests for queueing documents."""

    def test_add_document(self, queue):
        """Test a new document starts pending."""
        queue.add_document(10, chunk_count=3)

        job = queue.get_job(10)
        assert job.status is QueueStatus.PENDING
        assert job.chunk_count == 3
        assert job.error_count == 0
        assert job.queued_time is not None
        assert queue.exists(10)

    def test_add_active_document_rejected(self, queue):
        """Test a pending document cannot be queued twice."""
        queue.add_document(10)

        with pytest.raises(ValidationError, match="already queued"):
            queue.add_document(10)

    def test_add_finished_document_replaces_job(self, queue):
        """Test a completed job is replaced by a fresh pending one."""
        first = queue.add_document(10)
        queue.get_next_batch()
        queue.update_status([10], "completed")

        second = queue.add_document(10)

        assert second != first
        assert queue.get_job(10).status is QueueStatus.PENDING
        assert queue.get_total() == 1

    def test_add_documents_skips_existing(self, queue):
        """Test bulk add ignores documents already queued."""
        queue.add_document(1)

        added = queue.add_documents([1, 2, 3, 3])

        assert added == 2
        assert queue.get_total() == 3


class TestProcessing:
    """Tests for claiming and completing work."""

    def test_get_next_batch_claims_oldest_pending(self, queue):
        """Test batches come oldest first and move to processing."""
        queue.add_documents([5, 6, 7])

        batch = queue.get_next_batch(batch_size=2)

        assert batch == [5, 6]
        assert queue.get_job(5).status is QueueStatus.PROCESSING
        assert queue.get_job(5).start_time is not None
        assert queue.get_job(7).status is QueueStatus.PENDING

    def test_claimed_jobs_not_reclaimed(self, queue):
        """Test processing jobs are not handed out twice."""
        queue.add_documents([5, 6])
        queue.get_next_batch(batch_size=1)

        assert queue.get_next_batch(batch_size=5) == [6]
        assert queue.get_next_batch(batch_size=5) == []

    def test_failed_jobs_retried_after_pending(self, queue):
        """Test failed jobs fill the batch after pending ones."""
        queue.add_documents([1])
        queue.get_next_batch()
        queue.update_status([1], "failed", "timeout")
        queue.add_documents([2])

        assert queue.get_next_batch(batch_size=5) == [2, 1]

    def test_retry_limit(self, queue):
        """Test jobs that failed max_attempts times are not retried."""
        queue.add_document(1)
        for _ in range(3):
            assert queue.get_next_batch() == [1]
            queue.update_status(1, QueueStatus.FAILED, "boom")

        assert queue.get_job(1).error_count == 3
        assert queue.get_next_batch() == []
        assert queue.get_documents_to_retry() == []

    def test_update_status_completed(self, queue):
        """Test completing records the end time and clears errors."""
        queue.add_documents([1, 2])
        queue.get_next_batch()

        assert queue.update_status([1, 2], "completed") is True

        job = queue.get_job(1)
        assert job.status is QueueStatus.COMPLETED
        assert job.end_time is not None
        assert job.error_message is None
        assert job.error_count == 0

    def test_update_status_failed_increments(self, queue):
        """Test failures count and keep the message."""
        queue.add_document(1)
        queue.get_next_batch()
        queue.update_status([1], "failed", "embedding API down")

        job = queue.get_job(1)
        assert job.status is QueueStatus.FAILED
        assert job.error_count == 1
        assert job.error_message == "embedding API down"
        assert queue.get_documents_to_retry() == [1]

    @pytest.mark.parametrize("status", ["pending", "processing", "bogus"])
    def test_update_status_refuses_other_statuses(self, queue, status):
        """Test only completed/failed are accepted."""
        queue.add_document(1)

        assert queue.update_status([1], status) is False
        assert queue.get_job(1).status is QueueStatus.PENDING

    def test_reset_document(self, queue):
        """Test reset puts a job back to pending."""
        queue.add_document(1)
        queue.get_next_batch()

        assert queue.reset_document(1) is True
        job = queue.get_job(1)
        assert job.status is QueueStatus.PENDING
        assert job.start_time is None
        assert queue.reset_document(99) is False

    def test_delete(self, queue):
        """Test deleting by document and by job id."""
        job_id = queue.add_document(1)
        queue.add_document(2)

        assert queue.delete_job(job_id) is True
        assert queue.delete_document(2) is True
        assert queue.delete_document(2) is False
        assert queue.get_total() == 0


class TestCleanup:
    """Tests for cleanup."""

    def test_stuck_processing_jobs_fail(self, queue):
        """Test jobs processing for over 15 minutes become failed."""
        queue.add_documents([1, 2])
        queue.get_next_batch()

        result = queue.cleanup(now=datetime.now(timezone.utc) + timedelta(minutes=16))

        assert result["timed_out"] == 2
        job = queue.get_job(1)
        assert job.status is QueueStatus.FAILED
        assert job.error_count == 1
        assert "15 minutes" in job.error_message

    def test_recent_processing_jobs_untouched(self, queue):
        """Test jobs within the timeout keep processing."""
        queue.add_document(1)
        queue.get_next_batch()

        result = queue.cleanup(now=datetime.now(timezone.utc) + timedelta(minutes=5))

        assert result == {"timed_out": 0, "deleted": 0}
        assert queue.get_job(1).status is QueueStatus.PROCESSING

    def test_old_completed_jobs_deleted(self, queue):
        """Test completed jobs older than 3 days are purged."""
        queue.add_documents([1, 2])
        queue.get_next_batch()
        queue.update_status([1, 2], "completed")

        assert queue.cleanup(now=datetime.now(timezone.utc) + timedelta(days=1))["deleted"] == 0
        assert queue.cleanup(now=datetime.now(timezone.utc) + timedelta(days=4))["deleted"] == 2

    def test_exhausted_failures_deleted(self, queue):
        """Test failed jobs past the attempt limit are purged."""
        queue.add_document(1)
        for _ in range(3):
            queue.get_next_batch()
            queue.update_status([1], "failed", "boom")
        queue.reset_document(1)
        queue.get_next_batch()
        queue.update_status([1], "failed", "boom")

        assert queue.get_job(1).error_count == 4
        assert queue.cleanup()["deleted"] == 1
        assert not queue.exists(1)


class TestReporting:
    """Tests for stats and paging."""

    def test_stats(self, queue):
        """Test counts per status plus total."""
        queue.add_documents([1, 2, 3])
        queue.get_next_batch(batch_size=2)
        queue.update_status([1], "completed")

        assert queue.get_stats() == {
            "pending": 1,
            "processing": 1,
            "completed": 1,
            "failed": 0,
            "total": 3,
        }

    def test_get_page_orders_active_first(self, queue):
        """Test processing jobs lead, completed jobs trail."""
        queue.add_documents([1, 2, 3])
        queue.get_next_batch(batch_size=1)
        queue.update_status([1], "completed")
        queue.get_next_batch(batch_size=1)

        page = queue.get_page(page=1, per_page=10)

        assert [j.document_id for j in page] == [2, 3, 1]
        assert [j.status for j in page] == [
            QueueStatus.PROCESSING, QueueStatus.PENDING, QueueStatus.COMPLETED,
        ]

    def test_get_page_pagination(self, queue):
        """Test page boundaries."""
        queue.add_documents(range(1, 6))

        assert [j.document_id for j in queue.get_page(page=2, per_page=2)] == [3, 4]
        assert queue.get_page(page=4, per_page=2) == []

    def test_job_to_dict(self, queue):
        """Test queue jobs serialize their status as text."""
        queue.add_document(1)

        assert queue.get_job(1).to_dict()["status"] == "pending"
