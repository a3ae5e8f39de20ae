"""
gcloud adapter - the remote provisioning boundary.

Every provider operation is an opaque `gcloud` invocation. Commands run
through an injectable runner so tests can script responses without a real
gcloud. A non-zero exit or a timeout raises RemoteCommandError; retrying is
left to the caller's RetryExecutor.
"""

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from keyrack.errors import EnvironmentCheckError, RemoteCommandError
from keyrack.models import ServiceAccountKey
from keyrack.utils import mask_command

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command. ``returncode`` is None on timeout."""

    command: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[..., CommandResult]


def subprocess_runner(
    command: Sequence[str],
    stdout_path: Optional[Path] = None,
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a command, capturing both streams.

    When ``stdout_path`` is given, stdout goes straight into that file and only
    stderr is captured, so secret payloads never pass through memory or logs.
    """
    argv = list(command)
    try:
        if stdout_path is None:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
            return CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")

        with open(stdout_path, "wb") as sink:
            proc = subprocess.run(
                argv,
                stdout=sink,
                stderr=subprocess.PIPE,
                timeout=timeout,
                env=env,
                check=False,
            )
        stderr = proc.stderr.decode("utf-8", errors="replace") if proc.stderr else ""
        return CommandResult(argv, proc.returncode, "", stderr)
    except subprocess.TimeoutExpired as e:
        stderr = e.stderr.decode("utf-8", errors="replace") if isinstance(e.stderr, bytes) else (e.stderr or "")
        return CommandResult(argv, None, "", stderr)
    except FileNotFoundError as e:
        return CommandResult(argv, 127, "", str(e))


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def is_not_found(stderr: str) -> bool:
    return "NOT_FOUND" in (stderr or "")


def is_already_exists(stderr: str) -> bool:
    return "ALREADY_EXISTS" in (stderr or "") or "already exists" in (stderr or "")


class GcloudClient:
    """Thin wrapper over the gcloud CLI."""

    def __init__(
        self,
        runner: Runner = subprocess_runner,
        timeout: Optional[float] = 300.0,
        binary: str = "gcloud",
    ):
        self.runner = runner
        self.timeout = timeout
        self.binary = binary

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def run(self, *args: str, stdout_path: Optional[Path] = None) -> CommandResult:
        """Run ``gcloud <args>`` and return the raw result (never raises)."""
        command = [self.binary, *args]
        logger.debug(f"Executing: {mask_command(command)}")
        return self.runner(command, stdout_path=stdout_path, timeout=self.timeout)

    def check(self, *args: str, stdout_path: Optional[Path] = None) -> CommandResult:
        """Run ``gcloud <args>`` and raise RemoteCommandError on failure."""
        result = self.run(*args, stdout_path=stdout_path)
        if not result.ok:
            raise RemoteCommandError(result.command, result.returncode, result.stderr, result.stdout)
        return result

    @staticmethod
    def _lines(output: str) -> List[str]:
        return [line.strip() for line in output.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def active_account(self) -> Optional[str]:
        """Email of the active credential, or None when nobody is logged in."""
        result = self.run("auth", "list", "--filter=status:ACTIVE", "--format=value(account)")
        if not result.ok:
            return None
        lines = self._lines(result.stdout)
        return lines[0] if lines else None

    def current_project(self) -> Optional[str]:
        result = self.run("config", "get-value", "project")
        if not result.ok:
            return None
        lines = self._lines(result.stdout)
        if not lines or lines[0] == "(unset)":
            return None
        return lines[0]

    def check_environment(self) -> str:
        """
        Verify gcloud is installed and a credential is active.

        Returns:
            The active account email

        Raises:
            EnvironmentCheckError: If gcloud is missing or nobody is logged in
        """
        if not self.is_installed():
            raise EnvironmentCheckError(f"Missing dependency: {self.binary}")
        account = self.active_account()
        if not account:
            raise EnvironmentCheckError(
                f"No active account. Run '{self.binary} auth login' first."
            )
        return account

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def enable_services(self, project_id: str, services: Sequence[str]) -> None:
        self.check("services", "enable", *services, f"--project={project_id}", "--quiet")

    def is_service_enabled(self, project_id: str, service: str) -> bool:
        result = self.check(
            "services", "list", "--enabled",
            f"--project={project_id}",
            f"--filter=name:{service}",
            "--format=value(name)",
        )
        return bool(self._lines(result.stdout))

    # ------------------------------------------------------------------
    # Service accounts and keys
    # ------------------------------------------------------------------

    def service_account_exists(self, project_id: str, email: str) -> bool:
        """
        True when the account exists, False when gcloud reports it missing.

        Raises:
            RemoteCommandError: For any other failure (outage, permission, timeout)
        """
        result = self.run("iam", "service-accounts", "describe", email, f"--project={project_id}")
        if result.ok:
            return True
        if is_not_found(result.stderr):
            return False
        raise RemoteCommandError(result.command, result.returncode, result.stderr, result.stdout)

    def create_service_account(self, project_id: str, name: str, display_name: str) -> None:
        """Create the account. An account that already exists counts as created."""
        result = self.run(
            "iam", "service-accounts", "create", name,
            f"--display-name={display_name}",
            f"--project={project_id}",
            "--quiet",
        )
        if result.ok:
            return
        if is_already_exists(result.stderr):
            logger.debug(f"Service account {name} already exists in {project_id}")
            return
        raise RemoteCommandError(result.command, result.returncode, result.stderr, result.stdout)

    def add_iam_binding(self, project_id: str, member: str, role: str) -> None:
        self.check(
            "projects", "add-iam-policy-binding", project_id,
            f"--member={member}",
            f"--role={role}",
            "--quiet",
        )

    def list_keys(self, project_id: str, email: str) -> List[ServiceAccountKey]:
        """List keys oldest-first by validity start."""
        result = self.check(
            "iam", "service-accounts", "keys", "list",
            f"--iam-account={email}",
            f"--project={project_id}",
            "--sort-by=validAfterTime",
            "--format=json",
        )
        try:
            raw = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise RemoteCommandError(result.command, 0, f"unparseable key list: {e}", result.stdout)

        keys = [
            ServiceAccountKey(
                name=item.get("name", ""),
                valid_after=_parse_timestamp(item.get("validAfterTime")),
                key_type=item.get("keyType", "USER_MANAGED"),
            )
            for item in raw
            if item.get("name")
        ]
        keys.sort(key=lambda k: (k.valid_after is None, k.valid_after or datetime.min))
        return keys

    def delete_key(self, project_id: str, email: str, key_name: str) -> None:
        self.check(
            "iam", "service-accounts", "keys", "delete", key_name,
            f"--iam-account={email}",
            f"--project={project_id}",
            "--quiet",
        )

    def create_key(self, project_id: str, email: str, key_file: Path) -> CommandResult:
        """
        Create a key and write the JSON payload into ``key_file``.

        stdout is redirected into the file and stderr is captured separately,
        because gcloud may otherwise print the secret to the console.
        """
        return self.check(
            "iam", "service-accounts", "keys", "create", "-",
            f"--iam-account={email}",
            f"--project={project_id}",
            "--quiet",
            stdout_path=key_file,
        )

    def create_api_key(self, project_id: str, display_name: str) -> str:
        """Create an API key and return the raw response text."""
        result = self.check(
            "alpha", "services", "api-keys", "create",
            f"--project={project_id}",
            f"--display-name={display_name}",
            "--format=json",
        )
        return result.stdout

    # ------------------------------------------------------------------
    # Projects and billing
    # ------------------------------------------------------------------

    def create_project(self, project_id: str) -> None:
        self.check("projects", "create", project_id, "--quiet")

    def delete_project(self, project_id: str) -> None:
        self.check("projects", "delete", project_id, "--quiet")

    def link_billing(self, project_id: str, billing_account: str) -> None:
        self.check(
            "billing", "projects", "link", project_id,
            f"--billing-account={billing_account}",
            "--quiet",
        )

    def list_billing_accounts(self) -> List[Tuple[str, str]]:
        """Open billing accounts as (account_id, display_name)."""
        result = self.check(
            "billing", "accounts", "list",
            "--filter=open=true",
            "--format=value(name,displayName)",
        )
        accounts = []
        for line in self._lines(result.stdout):
            name, _, display = line.partition("\t")
            accounts.append((name.rsplit("/", 1)[-1], display.strip()))
        return accounts

    def list_projects(self, billing_account: Optional[str] = None) -> List[str]:
        """ACTIVE project IDs, optionally only those billed to ``billing_account``."""
        if billing_account:
            project_filter = (
                f"billingInfo.billingAccountName=billingAccounts/{billing_account} "
                "AND lifecycleState=ACTIVE"
            )
        else:
            project_filter = "lifecycleState=ACTIVE"
        result = self.check(
            "projects", "list",
            f"--filter={project_filter}",
            "--format=value(projectId)",
        )
        return self._lines(result.stdout)

    def project_billing_account(self, project_id: str) -> str:
        """billingAccountName for a project, empty when unbilled. Raises RemoteCommandError."""
        result = self.check(
            "billing", "projects", "describe", project_id,
            "--format=value(billingAccountName)",
        )
        lines = self._lines(result.stdout)
        return lines[0] if lines else ""

    def project_create_quota(self, consumer_project: str) -> Optional[int]:
        """
        Project-creation quota limit, or None when it cannot be determined.

        Tries the GA quota command first, then the alpha one.
        """
        attempts = [
            (
                ("services", "quota", "list"),
                "--filter=metric=cloudresourcemanager.googleapis.com/project_create_requests",
                ("effectiveLimit",),
            ),
            (
                ("alpha", "services", "quota", "list"),
                "--filter=metric:cloudresourcemanager.googleapis.com/project_create_requests",
                ("INT64",),
            ),
        ]
        for prefix, metric_filter, limit_keys in attempts:
            result = self.run(
                *prefix,
                "--service=cloudresourcemanager.googleapis.com",
                f"--consumer=projects/{consumer_project}",
                metric_filter,
                "--format=json",
            )
            if not result.ok:
                continue
            limit = _find_first_int(result.stdout, limit_keys)
            if limit is not None:
                return limit
        return None


def _find_first_int(payload: str, keys: Sequence[str]) -> Optional[int]:
    """Depth-first search of a JSON document for the first integer-like value under ``keys``."""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError):
        return None

    stack = [data]
    while stack:
        node = stack.pop(0)
        if isinstance(node, dict):
            for key, value in node.items():
                if key in keys and str(value).isdigit():
                    return int(value)
                stack.append(value)
        elif isinstance(node, list):
            stack.extend(node)
    return None
