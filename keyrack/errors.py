"""
Error classes for keyrack.

- PermanentError: ends the workflow (invalid input, quota/limit decisions,
  missing tooling); never raised inside a retried remote call

Remote commands raise RemoteCommandError. The RetryExecutor retries every
failure unconditionally and raises RetryExhaustedError once attempts run out;
callers decide whether the failure is terminal for their job.

Error handling contract:
- Inside a provisioning job, errors become a tagged JobOutcome
- Errors never escape a job into its siblings or the scheduler
"""

from typing import Optional, Sequence


class KeyrackError(Exception):
    """Base exception for keyrack."""
    pass


class PermanentError(KeyrackError):
    """
    Permanent error - ends the workflow.

    Examples:
    - Key ceiling reached with no deletable key
    - Operator declined a destructive action
    - Invalid configuration
    """
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass


class EnvironmentCheckError(PermanentError):
    """Required tooling or an active credential is missing."""
    pass


class KeyCeilingError(PermanentError):
    """Service account is at its key ceiling and no slot could be freed."""
    pass


class UploadError(KeyrackError):
    """Every upload tier failed or was unavailable."""
    pass


class RemoteCommandError(KeyrackError):
    """A remote command exited non-zero or timed out."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        stdout: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        self.stdout = stdout or ""

        if returncode is None:
            message = f"{self.command[0]} timed out"
        else:
            message = f"{self.command[0]} exited with code {returncode}"
        detail = self.stderr.strip()
        if detail:
            message += f": {detail[:500]}"
        super().__init__(message)


class RetryExhaustedError(KeyrackError):
    """All retry attempts failed. Wraps the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"failed after {attempts} attempt(s): {last_error}")


class SchedulerError(KeyrackError):
    """A job could not be admitted (e.g. its log sink could not be created)."""
    pass


class ProjectCreationError(KeyrackError):
    """A project could not be created or linked to billing."""

    def __init__(self, project_id: str, message: str):
        self.project_id = project_id
        super().__init__(f"{project_id}: {message}")


class CapacityError(PermanentError):
    """The billing account already holds its maximum number of projects."""
    pass
