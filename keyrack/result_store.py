"""
SharedResultStore - append-only outcome record shared by concurrent jobs.

Every job appends exactly one JobOutcome. A single lock guards each append,
covering the in-memory streams, their on-disk mirrors in the run workspace
and the aggregated API key files, so no record is ever interleaved.

Streams:
- success.txt   one ``keyPath:::apiKey`` record per SUCCESS/PARTIAL_SUCCESS
- failed.txt    one bare project ID per FAILURE

Ordering is completion order. drain() is called exactly once, after the
scheduler reports every job finished.
"""

import threading
from pathlib import Path
from typing import List, Optional, Tuple

from keyrack.models import JobOutcome, JobStatus


class AggregatedKeyFiles:
    """
    Run-wide API key files.

    - bare file: one key per line
    - comma file: a single line of comma-joined keys

    Not thread-safe on its own; SharedResultStore calls it under its lock.
    """

    def __init__(self, bare_path: Path, comma_path: Path):
        self.bare_path = bare_path
        self.comma_path = comma_path

    def append(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("API key is empty")

        with open(self.bare_path, "a") as f:
            f.write(f"{api_key}\n")

        needs_separator = self.comma_path.exists() and self.comma_path.stat().st_size > 0
        with open(self.comma_path, "a") as f:
            if needs_separator:
                f.write(",")
            f.write(api_key)

    def read_keys(self) -> List[str]:
        if not self.bare_path.exists():
            return []
        return [line.strip() for line in self.bare_path.read_text().splitlines() if line.strip()]


class SharedResultStore:
    """Thread-safe, append-only, drain-once outcome store."""

    SUCCESS_STREAM = "success.txt"
    FAILURE_STREAM = "failed.txt"

    def __init__(self, workspace: Path, key_files: Optional[AggregatedKeyFiles] = None):
        self.workspace = workspace
        self.key_files = key_files
        self._lock = threading.Lock()
        self._successes: List[JobOutcome] = []
        self._failures: List[JobOutcome] = []
        self._drained = False

        self.workspace.mkdir(parents=True, exist_ok=True)
        self.success_path.touch()
        self.failure_path.touch()

    @property
    def success_path(self) -> Path:
        return self.workspace / self.SUCCESS_STREAM

    @property
    def failure_path(self) -> Path:
        return self.workspace / self.FAILURE_STREAM

    def append(self, outcome: JobOutcome) -> None:
        """
        Record one outcome.

        Raises:
            RuntimeError: If the store has already been drained
        """
        with self._lock:
            if self._drained:
                raise RuntimeError("result store already drained")

            if outcome.status is JobStatus.FAILURE:
                with open(self.failure_path, "a") as f:
                    f.write(f"{outcome.project_id}\n")
                self._failures.append(outcome)
                return

            with open(self.success_path, "a") as f:
                f.write(f"{outcome.to_record()}\n")
            if outcome.api_key and self.key_files is not None:
                self.key_files.append(outcome.api_key)
            self._successes.append(outcome)

    def __len__(self) -> int:
        with self._lock:
            return len(self._successes) + len(self._failures)

    def drain(self) -> Tuple[List[JobOutcome], List[JobOutcome]]:
        """
        Return (successes, failures) in append order. Callable once.

        Successes include PARTIAL_SUCCESS outcomes.
        """
        with self._lock:
            if self._drained:
                raise RuntimeError("result store already drained")
            self._drained = True
            return list(self._successes), list(self._failures)
