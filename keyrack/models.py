"""Data model for provisioning runs."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    """Terminal state of a provisioning job."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProvisioningJob:
    """One target project admitted into the scheduler."""

    project_id: str
    job_ordinal: int
    total_jobs: int
    attempt_index: int = 1

    @property
    def label(self) -> str:
        return f"[job {self.job_ordinal}/{self.total_jobs}]"


@dataclass(frozen=True)
class JobOutcome:
    """
    Result of one provisioning job. Appended once to the result store.

    PARTIAL_SUCCESS means the service-account key exists but the API key does not.
    """

    project_id: str
    status: JobStatus
    service_account_key_path: Optional[Path] = None
    api_key: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, project_id: str, error: str) -> "JobOutcome":
        return cls(project_id=project_id, status=JobStatus.FAILURE, error=error)

    @property
    def has_key_file(self) -> bool:
        return self.status in (JobStatus.SUCCESS, JobStatus.PARTIAL_SUCCESS)

    def to_record(self) -> str:
        """Success-stream record: ``keyPath ::: apiKey`` (apiKey may be empty)."""
        return f"{self.service_account_key_path or ''}:::{self.api_key or ''}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "service_account_key_path": (
                str(self.service_account_key_path) if self.service_account_key_path else None
            ),
            "has_api_key": bool(self.api_key),
            "error": self.error,
        }


@dataclass(frozen=True)
class ServiceAccountKey:
    """A key as listed by the provider."""

    name: str
    valid_after: Optional[datetime] = None
    key_type: str = "USER_MANAGED"

    @property
    def key_id(self) -> str:
        return self.name.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class ServiceAccount:
    """Observed view of a remote service account."""

    email: str
    project_id: str
    keys: List[ServiceAccountKey] = field(default_factory=list)

    @property
    def key_count(self) -> int:
        return len(self.keys)


@dataclass(frozen=True)
class UploadResult:
    """Where an artifact ended up after the upload pipeline ran."""

    success: bool
    tier: str
    location: Optional[str] = None
    errors: List[str] = field(default_factory=list)
