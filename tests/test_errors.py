"""Tests for keyrack error classes.

Tests cover:
- Error hierarchy
- RemoteCommandError messages
- RetryExhaustedError wrapping
"""

import pytest
from keyrack.errors import (
    CapacityError,
    ConfigError,
    EnvironmentCheckError,
    KeyCeilingError,
    KeyrackError,
    PermanentError,
    ProjectCreationError,
    RemoteCommandError,
    RetryExhaustedError,
    SchedulerError,
    UploadError,
)


class TestHierarchy:
    """Tests for the exception hierarchy."""

    def test_base_is_exception(self):
        assert issubclass(KeyrackError, Exception)

    def test_permanent_is_keyrack_error(self):
        assert issubclass(PermanentError, KeyrackError)

    @pytest.mark.parametrize("error_cls", [ConfigError, EnvironmentCheckError, KeyCeilingError, CapacityError])
    def test_permanent_errors(self, error_cls):
        """Limit and configuration errors are never retried."""
        assert issubclass(error_cls, PermanentError)

    @pytest.mark.parametrize("error_cls", [UploadError, SchedulerError, RemoteCommandError])
    def test_other_errors_are_keyrack_errors(self, error_cls):
        assert issubclass(error_cls, KeyrackError)

    def test_can_be_caught_as_keyrack_error(self):
        with pytest.raises(KeyrackError):
            raise KeyCeilingError("no deletable key")


class TestRemoteCommandError:
    """Tests for RemoteCommandError."""

    def test_message_includes_exit_code_and_stderr(self):
        error = RemoteCommandError(["gcloud", "projects", "create", "p"], 1, "ERROR: already exists\n")
        assert str(error) == "gcloud exited with code 1: ERROR: already exists"
        assert error.command == ["gcloud", "projects", "create", "p"]
        assert error.returncode == 1

    def test_timeout_message(self):
        error = RemoteCommandError(["gcloud", "services", "enable"], None)
        assert str(error) == "gcloud timed out"

    def test_long_stderr_is_truncated(self):
        error = RemoteCommandError(["gcloud"], 2, "x" * 2000)
        assert len(str(error)) < 600

    def test_empty_stderr(self):
        error = RemoteCommandError(["aws"], 255, None)
        assert error.stderr == ""
        assert str(error) == "aws exited with code 255"


class TestRetryExhaustedError:
    """Tests for RetryExhaustedError."""

    def test_wraps_last_error(self):
        cause = RemoteCommandError(["gcloud"], 1, "boom")
        error = RetryExhaustedError(3, cause)
        assert error.attempts == 3
        assert error.last_error is cause
        assert "failed after 3 attempt(s)" in str(error)
        assert "boom" in str(error)


class TestProjectCreationError:
    def test_carries_project_id(self):
        error = ProjectCreationError("vertex-0101-abc123", "billing link failed")
        assert error.project_id == "vertex-0101-abc123"
        assert str(error) == "vertex-0101-abc123: billing link failed"
