"""
Tests for RQ job enqueueing, job bodies and status reporting.
No Redis needed: queue, job lookup and the processor are replaced.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from rq.exceptions import NoSuchJobError
from rq.job import JobStatus as RqJobStatus

from royalties.config import settings
from royalties.models.enums import JobState
from royalties.pipeline.orchestrator import ProcessingError
from royalties.schemas.statements import (
    DistributionResult,
    DistributionSummary,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStats,
)
from royalties.worker import jobs


class FakeProcessor:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def process_statement(self, statement_id, content, options=None, on_progress=None):
        self.calls.append((statement_id, content, options))
        if self.fail:
            raise ProcessingError("Statement contains no rows", "ERR_EMPTY_STATEMENT")
        on_progress(1, 2)
        on_progress(2, 2)
        return ProcessingResult(
            statement_id=statement_id,
            status="completed",
            stats=ProcessingStats(total_rows=2, processed_rows=2, total_amount=Decimal("3.50")),
        )

    async def calculate_distributions(self, statement_id):
        return DistributionResult(summary=DistributionSummary(total_gross=Decimal("10.00")))


class FakeJob:
    def __init__(self, status, meta=None, exc_info=None, return_value=None):
        self.status = status
        self.meta = meta or {}
        self.exc_info = exc_info
        self._return_value = return_value
        self.cancelled = False
        self.saved_meta = []

    def get_status(self):
        return self.status

    def return_value(self):
        return self._return_value

    def cancel(self):
        self.cancelled = True

    def save_meta(self):
        self.saved_meta.append(dict(self.meta))


@pytest.fixture
def fetch_returns(monkeypatch):
    """Make Job.fetch return the given job, or raise NoSuchJobError for None."""
    def install(job):
        def fetch(job_id, connection=None):
            if job is None:
                raise NoSuchJobError(job_id)
            return job
        monkeypatch.setattr(jobs, "Job", SimpleNamespace(fetch=fetch))
    return install


@pytest.fixture
def queue(monkeypatch):
    q = MagicMock()
    q.enqueue.return_value = SimpleNamespace(id="job-1")
    monkeypatch.setattr(jobs, "get_queue", lambda: q)
    return q


class TestEnqueue:
    """Test job submission arguments."""

    def test_enqueue_processing(self, queue):
        job_id = jobs.enqueue_statement_processing(
            "stmt-1", b"title,amount\n", ProcessingOptions(auto_distribute=True)
        )
        assert job_id == "job-1"

        args, kwargs = queue.enqueue.call_args
        assert args[0] is jobs.process_statement_job
        assert args[1:] == ("stmt-1", b"title,amount\n", {"auto_distribute": True, "column_mappings": None})
        assert kwargs["job_timeout"] == settings.JOB_TIMEOUT_SECONDS
        assert kwargs["result_ttl"] == settings.JOB_RESULT_TTL_SECONDS
        assert kwargs["failure_ttl"] == settings.JOB_FAILURE_TTL_SECONDS
        assert kwargs["meta"] == {"statement_id": "stmt-1", "progress": 0.0}

    def test_enqueue_distribution(self, queue):
        jobs.enqueue_distribution_calculation("stmt-1", job_id="dist-stmt-1")
        args, kwargs = queue.enqueue.call_args
        assert args == (jobs.calculate_distributions_job, "stmt-1")
        assert kwargs["job_id"] == "dist-stmt-1"


class TestJobBodies:
    """Test the functions the worker runs."""

    def test_process_job_outside_worker(self, monkeypatch):
        processor = FakeProcessor()
        monkeypatch.setattr(jobs, "_processor", processor)

        result = jobs.process_statement_job("stmt-1", b"data", {"auto_distribute": True})

        assert result["status"] == "completed"
        assert result["stats"]["total_amount"] == "3.50"
        statement_id, content, options = processor.calls[0]
        assert options.auto_distribute is True

    def test_progress_written_to_job_meta(self, monkeypatch):
        job = FakeJob(RqJobStatus.STARTED, meta={"progress": 0.0})
        monkeypatch.setattr(jobs, "_processor", FakeProcessor())
        monkeypatch.setattr(jobs, "get_current_job", lambda: job)

        jobs.process_statement_job("stmt-1", b"data")

        assert [m["progress"] for m in job.saved_meta] == [50.0, 100.0]

    def test_processing_error_propagates(self, monkeypatch):
        monkeypatch.setattr(jobs, "_processor", FakeProcessor(fail=True))
        with pytest.raises(ProcessingError) as exc:
            jobs.process_statement_job("stmt-1", b"")
        assert exc.value.error_code == "ERR_EMPTY_STATEMENT"

    def test_distribution_job(self, monkeypatch):
        monkeypatch.setattr(jobs, "_processor", FakeProcessor())
        result = jobs.calculate_distributions_job("stmt-1")
        assert result["total_gross"] == "10.00"


class TestJobStatus:
    """Test RQ status mapping."""

    def test_unknown_job(self, fetch_returns):
        fetch_returns(None)
        status = jobs.get_job_status("missing")
        assert status.state == JobState.NOT_FOUND

    @pytest.mark.parametrize("rq_status,state", [
        (RqJobStatus.QUEUED, JobState.QUEUED),
        (RqJobStatus.DEFERRED, JobState.QUEUED),
        (RqJobStatus.STARTED, JobState.ACTIVE),
        (RqJobStatus.STOPPED, JobState.FAILED),
    ])
    def test_state_mapping(self, fetch_returns, rq_status, state):
        fetch_returns(FakeJob(rq_status, meta={"progress": 40.0}))
        status = jobs.get_job_status("job-1", connection=MagicMock())
        assert status.state == state
        assert status.result is None

    def test_active_progress(self, fetch_returns):
        fetch_returns(FakeJob(RqJobStatus.STARTED, meta={"progress": 62.5}))
        assert jobs.get_job_status("job-1", connection=MagicMock()).progress == 62.5

    def test_completed_returns_result(self, fetch_returns):
        fetch_returns(FakeJob(RqJobStatus.FINISHED, return_value={"status": "review"}))
        status = jobs.get_job_status("job-1", connection=MagicMock())
        assert status.state == JobState.COMPLETED
        assert status.progress == 100.0
        assert status.result == {"status": "review"}

    def test_failed_reason_is_last_traceback_line(self, fetch_returns):
        exc_info = (
            "Traceback (most recent call last):\n"
            '  File "jobs.py", line 1, in process_statement_job\n'
            "royalties.pipeline.orchestrator.ProcessingError: Statement contains no rows\n"
        )
        fetch_returns(FakeJob(RqJobStatus.FAILED, exc_info=exc_info))
        status = jobs.get_job_status("job-1", connection=MagicMock())
        assert status.state == JobState.FAILED
        assert status.failed_reason.endswith("Statement contains no rows")


class TestCancel:
    """Test cancellation of waiting jobs."""

    def test_cancel_queued(self, fetch_returns):
        job = FakeJob(RqJobStatus.QUEUED)
        fetch_returns(job)
        assert jobs.cancel_job("job-1", connection=MagicMock()) is True
        assert job.cancelled

    def test_started_job_not_cancelled(self, fetch_returns):
        job = FakeJob(RqJobStatus.STARTED)
        fetch_returns(job)
        assert jobs.cancel_job("job-1", connection=MagicMock()) is False
        assert not job.cancelled

    def test_cancel_unknown(self, fetch_returns):
        fetch_returns(None)
        assert jobs.cancel_job("missing", connection=MagicMock()) is False
