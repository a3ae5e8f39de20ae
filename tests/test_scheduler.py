"""Tests for JobScheduler."""

import threading
import time
from unittest.mock import patch

import pytest

from keyrack.errors import SchedulerError
from keyrack.models import JobOutcome, JobStatus
from keyrack.result_store import SharedResultStore
from keyrack.scheduler import JobScheduler


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "run"
    path.mkdir()
    return path


@pytest.fixture
def store(workspace):
    return SharedResultStore(workspace)


def succeed(job, job_logger):
    job_logger.info(f"provisioning {job.project_id}")
    return JobOutcome(job.project_id, JobStatus.SUCCESS, api_key=f"key-{job.project_id}")


def join_workers(timeout=5.0):
    for thread in threading.enumerate():
        if thread.name.startswith("keyrack-job"):
            thread.join(timeout)


class TestJobScheduler:

    def test_rejects_zero_limit(self, store, workspace):
        with pytest.raises(ValueError):
            JobScheduler(store, 0, workspace)

    def test_every_job_recorded_once(self, store, workspace):
        projects = [f"proj-{i}" for i in range(8)]
        JobScheduler(store, 3, workspace).run(projects, succeed)

        successes, failures = store.drain()
        assert sorted(o.project_id for o in successes) == sorted(projects)
        assert failures == []

    def test_in_flight_never_exceeds_limit(self, store, workspace):
        def slow(job, job_logger):
            time.sleep(0.05)
            return succeed(job, job_logger)

        scheduler = JobScheduler(store, 3, workspace)
        scheduler.run([f"proj-{i}" for i in range(12)], slow)

        assert 1 <= scheduler.max_in_flight <= 3
        assert len(store) == 12

    def test_crashing_job_is_isolated(self, store, workspace):
        def flaky(job, job_logger):
            if job.project_id == "proj-b":
                raise RuntimeError("boom")
            return succeed(job, job_logger)

        JobScheduler(store, 2, workspace).run(["proj-a", "proj-b", "proj-c"], flaky)

        successes, failures = store.drain()
        assert [o.project_id for o in failures] == ["proj-b"]
        assert "crashed: boom" in failures[0].error
        assert sorted(o.project_id for o in successes) == ["proj-a", "proj-c"]

    def test_per_job_log_files(self, store, workspace):
        scheduler = JobScheduler(store, 2, workspace)
        scheduler.run(["proj-b", "proj-a"], succeed)

        assert list(scheduler.log_paths) == ["proj-b", "proj-a"]
        log_a = (workspace / "job_proj-a.log").read_text()
        assert "provisioning proj-a" in log_a
        assert "[job 2/2]" in log_a
        assert "proj-b" not in log_a

    def test_job_ordinals(self, store, workspace):
        seen = {}

        def record(job, job_logger):
            seen[job.project_id] = (job.job_ordinal, job.total_jobs)
            return succeed(job, job_logger)

        JobScheduler(store, 1, workspace).run(["x", "y", "z"], record)
        assert seen == {"x": (1, 3), "y": (2, 3), "z": (3, 3)}

    def test_duplicate_project_ids_run_once(self, store, workspace):
        seen = []

        def record(job, job_logger):
            seen.append((job.project_id, job.job_ordinal, job.total_jobs))
            return succeed(job, job_logger)

        JobScheduler(store, 2, workspace).run(["proj-a", "proj-b", "proj-a"], record)

        assert sorted(seen) == [("proj-a", 1, 2), ("proj-b", 2, 2)]
        successes, _ = store.drain()
        assert [o.project_id for o in successes].count("proj-a") == 1
        assert (workspace / "job_proj-a.log").read_text().count("provisioning proj-a") == 1

    def test_missing_workspace_is_scheduler_error(self, store, tmp_path):
        scheduler = JobScheduler(store, 2, tmp_path / "does-not-exist")
        with pytest.raises(SchedulerError, match="proj-a"):
            scheduler.run(["proj-a"], succeed)

    def test_interrupt_cancels_and_drops_outcomes(self, store, workspace):
        release = threading.Event()

        def blocked(job, job_logger):
            release.wait(5)
            return succeed(job, job_logger)

        scheduler = JobScheduler(store, 2, workspace)
        with patch("keyrack.scheduler.wait", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                scheduler.run(["proj-a", "proj-b"], blocked)

        assert scheduler.cancelled
        release.set()
        join_workers()
        assert len(store) == 0
