"""
JobScheduler - bounded-concurrency fan-out of provisioning jobs.

The coordinator admits at most ``concurrency_limit`` jobs at a time; further
admissions block on a semaphore until a running job finishes. Each job runs
in its own worker thread with a private logger writing to
``job_<project>.log`` in the run workspace, and shares nothing with its
siblings except the SharedResultStore.

A job that raises is converted into a FAILURE outcome; it never affects
sibling jobs. On KeyboardInterrupt the coordinator stops admitting, cancels
queued jobs and re-raises; outcomes of abandoned jobs are not recorded.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Sequence

from keyrack.errors import SchedulerError
from keyrack.models import JobOutcome, ProvisioningJob
from keyrack.result_store import SharedResultStore

logger = logging.getLogger(__name__)

JobFunction = Callable[[ProvisioningJob, logging.Logger], JobOutcome]

JOB_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class JobLogSink:
    """Private, append-mode log file and logger for one job."""

    def __init__(self, workspace: Path, project_id: str):
        self.project_id = project_id
        self.path = workspace / f"job_{project_id}.log"
        self.logger = logging.getLogger(f"keyrack.job.{project_id}")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        self._handler = logging.FileHandler(self.path, mode="a")
        self._handler.setFormatter(logging.Formatter(JOB_LOG_FORMAT, "%Y-%m-%d %H:%M:%S"))
        self.logger.addHandler(self._handler)
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.logger.removeHandler(self._handler)
        self._handler.close()


class JobScheduler:
    """Run one job per project with bounded parallelism."""

    def __init__(self, store: SharedResultStore, concurrency_limit: int, workspace: Path):
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")
        self.store = store
        self.concurrency_limit = concurrency_limit
        self.workspace = workspace
        self.log_paths: Dict[str, Path] = {}

        self._cancelled = threading.Event()
        self._count_lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, project_ids: Sequence[str], job_fn: JobFunction) -> None:
        """
        Execute ``job_fn`` for every project and block until all are recorded.

        Args:
            project_ids: Targets in submission order
            job_fn: Called as ``job_fn(job, job_logger)``; returns a JobOutcome

        Raises:
            SchedulerError: If a job cannot be admitted
            KeyboardInterrupt: Re-raised after queued jobs are cancelled
        """
        # One job, log sink and logger per project
        unique_ids = list(dict.fromkeys(project_ids))
        if len(unique_ids) < len(project_ids):
            logger.warning(f"Ignoring {len(project_ids) - len(unique_ids)} duplicate project ID(s)")
        project_ids = unique_ids

        total = len(project_ids)
        slots = threading.BoundedSemaphore(self.concurrency_limit)
        futures: List[Future] = []
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency_limit,
            thread_name_prefix="keyrack-job",
        )

        try:
            for ordinal, project_id in enumerate(project_ids, start=1):
                job = ProvisioningJob(project_id=project_id, job_ordinal=ordinal, total_jobs=total)

                slots.acquire()
                try:
                    sink = JobLogSink(self.workspace, project_id)
                except OSError as e:
                    slots.release()
                    raise SchedulerError(f"Cannot create log for {project_id}: {e}") from e

                self.log_paths[project_id] = sink.path
                future = executor.submit(self._execute, job, sink, job_fn)
                future.add_done_callback(lambda _f, sink=sink: (sink.close(), slots.release()))
                futures.append(future)

            logger.info(f"All {total} job(s) admitted; waiting for completion")
            wait(futures)
        except BaseException:
            self._cancelled.set()
            executor.shutdown(wait=False, cancel_futures=True)
            raise

        executor.shutdown(wait=True)

    def _execute(self, job: ProvisioningJob, sink: JobLogSink, job_fn: JobFunction) -> None:
        job_logger = sink.logger
        with self._count_lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)

        try:
            job_logger.info(f"{job.label} Processing project {job.project_id}")
            try:
                outcome = job_fn(job, job_logger)
            except Exception as e:
                job_logger.exception(f"Job for {job.project_id} crashed: {e}")
                outcome = JobOutcome.failure(job.project_id, f"crashed: {e}")

            if self.cancelled:
                job_logger.warning("Run interrupted; outcome not recorded")
                return
            self.store.append(outcome)
            job_logger.info(f"{job.label} Finished {job.project_id}: {outcome.status.value}")
        finally:
            with self._count_lock:
                self._in_flight -= 1
