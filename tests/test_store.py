"""
Job Store Tests

InMemoryJobStore behaviour, and SupabaseJobStore query construction against a
mocked Supabase client.

Run with: python -m pytest tests/test_store.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from taxflow.jobs.errors import JobValidationError, StoreConflict, StoreError
from taxflow.jobs.job_types import Job, JobStatus
from taxflow.jobs.store import InMemoryJobStore, SupabaseJobStore, compute_stats

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def _job(job_id, **fields):
    fields.setdefault("owner_ref", "s1")
    fields.setdefault("task_type", "work")
    fields.setdefault("created_at", T0)
    return Job(id=job_id, **fields)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class TestInMemoryStore:
    """Compare-and-set, listing and retention."""

    def test_create_and_get_returns_copies(self):
        store = InMemoryJobStore()
        job = _job("a", payload={"k": [1, 2]})
        store.create(job)

        loaded = store.get("a")
        loaded.payload["k"].append(3)
        assert store.get("a").payload == {"k": [1, 2]}
        assert store.get("missing") is None

    def test_duplicate_create_rejected(self):
        store = InMemoryJobStore()
        store.create(_job("a"))
        with pytest.raises(StoreError):
            store.create(_job("a"))

    def test_compare_and_set(self):
        store = InMemoryJobStore()
        store.create(_job("a"))

        running = store.get("a")
        running.status = JobStatus.RUNNING
        store.save(running, expected_status=JobStatus.PENDING)

        stale = store.get("a")
        stale.status = JobStatus.CANCELLED
        with pytest.raises(StoreConflict):
            store.save(stale, expected_status=JobStatus.PENDING)
        assert store.get("a").status == JobStatus.RUNNING

    def test_list_filters_sorting_and_pagination(self):
        store = InMemoryJobStore()
        store.create(_job("a", priority=1, sequence=1))
        store.create(_job("b", priority=10, sequence=2, task_type="other"))
        store.create(_job("c", priority=5, sequence=3, status=JobStatus.FAILED))
        store.create(_job("d", owner_ref="s2", sequence=4))

        jobs, total = store.list_jobs(owner_ref="s1", sort_by="priority", descending=True)
        assert total == 3
        assert [j.id for j in jobs] == ["b", "c", "a"]

        jobs, total = store.list_jobs(owner_ref="s1", status=[JobStatus.PENDING])
        assert total == 2

        jobs, _ = store.list_jobs(task_type="other")
        assert [j.id for j in jobs] == ["b"]

        jobs, total = store.list_jobs(sort_by="created_at", descending=False, limit=2, skip=1)
        assert total == 4
        assert [j.id for j in jobs] == ["b", "c"]

    def test_missing_sort_values_go_last(self):
        store = InMemoryJobStore()
        store.create(_job("never-started", sequence=1))
        store.create(_job("started", sequence=2, started_at=T0))

        for descending in (True, False):
            jobs, _ = store.list_jobs(sort_by="started_at", descending=descending)
            assert [j.id for j in jobs] == ["started", "never-started"]

    def test_unknown_sort_field(self):
        with pytest.raises(JobValidationError):
            InMemoryJobStore().list_jobs(sort_by="payload")

    def test_list_active_and_delete(self):
        store = InMemoryJobStore()
        store.create(_job("a"))
        store.create(_job("b", status=JobStatus.RUNNING))
        store.create(_job("c", status=JobStatus.COMPLETED))

        assert sorted(j.id for j in store.list_active()) == ["a", "b"]
        assert store.delete("c") is True
        assert store.delete("c") is False

    def test_delete_terminal_before(self):
        store = InMemoryJobStore()
        store.create(_job("old", status=JobStatus.COMPLETED, completed_at=T0 - timedelta(days=10)))
        store.create(_job("new", status=JobStatus.FAILED, completed_at=T0))
        store.create(_job("active", status=JobStatus.PENDING))

        assert store.delete_terminal_before(T0 - timedelta(days=7)) == 1
        assert store.get("old") is None
        assert store.get("new") is not None
        assert store.get("active") is not None


class TestComputeStats:

    def test_stats_from_rows(self):
        rows = [
            {"status": "completed", "task_type": "a", "attempt": 1,
             "started_at": "2025-01-15T12:00:00+00:00", "completed_at": "2025-01-15T12:00:02+00:00"},
            {"status": "completed", "task_type": "a", "attempt": 2,
             "started_at": "2025-01-15T12:00:00Z", "completed_at": "2025-01-15T12:00:04Z"},
            {"status": "failed", "task_type": "b", "attempt": 3},
            {"status": "pending", "task_type": "b", "attempt": 0},
        ]
        stats = compute_stats(rows)

        assert stats.total == 4
        assert stats.by_status["completed"] == 2
        assert stats.by_status["cancelled"] == 0
        assert stats.by_task_type == {"a": 2, "b": 2}
        assert stats.average_duration_ms == 3000.0
        assert stats.total_retries == 3
        assert stats.failure_rate == round(1 / 3, 4)
        assert stats.retry_rate == 0.5

    def test_empty(self):
        stats = compute_stats([])
        assert stats.total == 0
        assert stats.average_duration_ms is None
        assert stats.failure_rate == 0.0


# =============================================================================
# SUPABASE STORE
# =============================================================================

@pytest.fixture
def mock_supabase():
    return MagicMock()


class TestSupabaseStore:
    """Query construction and error mapping."""

    def test_requires_client(self):
        with pytest.raises(StoreError):
            SupabaseJobStore(supabase=None)

    def test_get(self, mock_supabase):
        row = _job("a").model_dump(mode="json")
        mock_supabase.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(
            data=[row]
        )
        store = SupabaseJobStore(mock_supabase)

        job = store.get("a")
        assert job.id == "a"
        mock_supabase.table.assert_called_with("background_jobs")
        mock_supabase.table.return_value.select.return_value.eq.assert_called_with("id", "a")

    def test_get_missing(self, mock_supabase):
        mock_supabase.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(
            data=[]
        )
        assert SupabaseJobStore(mock_supabase).get("a") is None

    def test_conditional_save_conflict(self, mock_supabase):
        update = mock_supabase.table.return_value.update.return_value
        update.eq.return_value.eq.return_value.execute.return_value = MagicMock(data=[])
        store = SupabaseJobStore(mock_supabase)

        with pytest.raises(StoreConflict):
            store.save(_job("a", status=JobStatus.RUNNING), expected_status=JobStatus.PENDING)
        update.eq.return_value.eq.assert_called_with("status", "pending")

    def test_conditional_save_success(self, mock_supabase):
        update = mock_supabase.table.return_value.update.return_value
        update.eq.return_value.eq.return_value.execute.return_value = MagicMock(data=[{"id": "a"}])
        job = _job("a", status=JobStatus.RUNNING)

        assert SupabaseJobStore(mock_supabase).save(job, expected_status=JobStatus.PENDING) is job

    def test_unconditional_save_upserts(self, mock_supabase):
        SupabaseJobStore(mock_supabase).save(_job("a"))
        mock_supabase.table.return_value.upsert.assert_called_once()

    def test_list_jobs(self, mock_supabase):
        query = mock_supabase.table.return_value.select.return_value
        query.eq.return_value.in_.return_value.order.return_value.range.return_value.execute.return_value = MagicMock(
            data=[_job("a").model_dump(mode="json")], count=12
        )
        store = SupabaseJobStore(mock_supabase)

        jobs, total = store.list_jobs(
            owner_ref="s1", status=[JobStatus.PENDING], limit=10, skip=10, sort_by="priority"
        )
        assert [j.id for j in jobs] == ["a"]
        assert total == 12
        mock_supabase.table.return_value.select.assert_called_with("*", count="exact")
        query.eq.return_value.in_.return_value.order.assert_called_with("priority", desc=True)
        query.eq.return_value.in_.return_value.order.return_value.range.assert_called_with(10, 19)

    def test_errors_become_store_errors(self, mock_supabase):
        mock_supabase.table.return_value.insert.return_value.execute.side_effect = Exception("connection reset")
        with pytest.raises(StoreError):
            SupabaseJobStore(mock_supabase).create(_job("a"))

    def test_delete_terminal_before(self, mock_supabase):
        chain = mock_supabase.table.return_value.delete.return_value.in_.return_value
        chain.lt.return_value.execute.return_value = MagicMock(data=[{"id": "x"}, {"id": "y"}])

        assert SupabaseJobStore(mock_supabase).delete_terminal_before(T0) == 2
        chain.lt.assert_called_with("completed_at", T0.isoformat())
