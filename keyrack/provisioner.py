"""
CredentialProvisioner - per-project credential state machine.

States, in order:
1. ENABLE_APIS        enable required services          (failure: terminal)
2. SERVICE_ACCOUNT    look up or create the identity    (failure: terminal)
3. GRANT_ROLES        bind roles, best effort           (failure: logged only)
4. KEY_CEILING        free one slot when at the ceiling (failure: terminal)
5. SERVICE_KEY        issue the service-account key     (failure: terminal)
6. API_KEY            issue the secondary API key       (failure: partial success)

Every remote call goes through the RetryExecutor.
"""

import json
import logging
import re
import sys
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

import click

from keyrack.config import KeyrackConfig
from keyrack.errors import KeyCeilingError, KeyrackError, RetryExhaustedError
from keyrack.gcloud import GcloudClient
from keyrack.models import JobOutcome, JobStatus, ServiceAccount, ServiceAccountKey
from keyrack.retry import RetryExecutor

# User-created keys have a hex key ID under the service account's resource name
DELETABLE_KEY_PATTERN = re.compile(r"projects/.*/serviceAccounts/.*/keys/[0-9a-f]+$")
KEY_STRING_PATTERNS = (
    re.compile(r'"keyString":"([^"]*)"'),
    re.compile(r'"keyString"\s*:\s*"([^"]*)"'),
)

Consent = Callable[[str], bool]


class ProvisionState(str, Enum):
    ENABLE_APIS = "enable_apis"
    SERVICE_ACCOUNT = "service_account"
    GRANT_ROLES = "grant_roles"
    KEY_CEILING = "key_ceiling"
    SERVICE_KEY = "service_key"
    API_KEY = "api_key"


class ProvisioningStepError(KeyrackError):
    """A terminal step failed; the job ends in FAILURE."""

    def __init__(self, state: ProvisionState, message: str):
        self.state = state
        super().__init__(f"{state.value}: {message}")


def is_deletable_key(key: ServiceAccountKey) -> bool:
    """True for user-managed keys; provider-managed keys are never touched."""
    if key.key_type == "SYSTEM_MANAGED":
        return False
    return bool(DELETABLE_KEY_PATTERN.search(key.name))


def select_keys_to_delete(keys: List[ServiceAccountKey], count: int = 1) -> List[ServiceAccountKey]:
    """Oldest ``count`` deletable keys, oldest first by validity start."""
    deletable = [k for k in keys if is_deletable_key(k)]
    deletable.sort(key=lambda k: (k.valid_after is None, k.valid_after or datetime.min))
    return deletable[:count]


def _find_key_string(node: Any) -> Optional[str]:
    if isinstance(node, dict):
        value = node.get("keyString")
        if isinstance(value, str) and value:
            return value
        for child in node.values():
            found = _find_key_string(child)
            if found:
                return found
    elif isinstance(node, list):
        for child in node:
            found = _find_key_string(child)
            if found:
                return found
    return None


def extract_key_string(response: str) -> Optional[str]:
    """
    Pull the API key string out of a create-api-key response.

    Structured parse first; if the text is not valid JSON or has no
    keyString, fall back to a tolerant pattern match.
    """
    if not response or not response.strip():
        return None

    try:
        found = _find_key_string(json.loads(response))
    except json.JSONDecodeError:
        found = None
    if found:
        return found

    for pattern in KEY_STRING_PATTERNS:
        match = pattern.search(response)
        if match and match.group(1):
            return match.group(1)
    return None


def _diagnose_key_error(error: BaseException, logger: logging.Logger) -> None:
    """Log likely causes for well-known key creation failures."""
    cause = error.last_error if isinstance(error, RetryExhaustedError) else error
    stderr = getattr(cause, "stderr", "") or ""
    if "FAILED_PRECONDITION" in stderr:
        logger.error(
            "Precondition failed: the key ceiling may be reached, the caller may lack "
            "permission to create keys, or a required API is not enabled"
        )
    elif "PERMISSION_DENIED" in stderr:
        logger.error("Permission denied: check the active account's IAM roles")


class CredentialProvisioner:
    """Drive one project to SUCCESS, PARTIAL_SUCCESS or FAILURE."""

    def __init__(
        self,
        config: KeyrackConfig,
        gcloud: GcloudClient,
        retry: RetryExecutor,
        consent: Optional[Consent] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.gcloud = gcloud
        self.retry = retry
        self.consent = consent or (lambda prompt: False)
        self._sleep = sleep
        self._now = now

    def service_account_email(self, project_id: str) -> str:
        return f"{self.config.service_account_name}@{project_id}.iam.gserviceaccount.com"

    def key_file_path(self, project_id: str) -> Path:
        stamp = self._now().strftime("%Y%m%d-%H%M%S")
        return self.config.key_dir / f"{project_id}-{self.config.service_account_name}-{stamp}.json"

    def _call(self, operation: Callable[[], Any], description: str, logger: logging.Logger) -> Any:
        return self.retry.execute(operation, description=description, logger=logger)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def provision(
        self,
        project_id: str,
        logger: logging.Logger,
        enable_apis: bool = True,
        issue_api_key: bool = True,
    ) -> JobOutcome:
        """
        Run the full state machine for one project.

        Args:
            project_id: Target project
            logger: The job's private logger
            enable_apis: Run the ENABLE_APIS state (skipped for key rotation)
            issue_api_key: Run the API_KEY state

        Returns:
            JobOutcome. Never raises for provider failures.
        """
        try:
            if enable_apis:
                self.ensure_apis_enabled(project_id, logger)
            key_file = self.setup_service_account(project_id, logger)
        except ProvisioningStepError as e:
            logger.error(f"Provisioning {project_id} failed at {e.state.value}: {e}")
            return JobOutcome.failure(project_id, str(e))

        logger.info(f"Service account key created for {project_id}")

        if not issue_api_key:
            return JobOutcome(project_id, JobStatus.SUCCESS, service_account_key_path=key_file)

        api_key = self.issue_api_key(project_id, logger)
        if api_key:
            logger.info(f"API key created for {project_id}")
            return JobOutcome(
                project_id,
                JobStatus.SUCCESS,
                service_account_key_path=key_file,
                api_key=api_key,
            )

        logger.warning(f"API key failed for {project_id}; service account key is still usable")
        return JobOutcome(
            project_id,
            JobStatus.PARTIAL_SUCCESS,
            service_account_key_path=key_file,
            error="api_key: not issued",
        )

    def setup_service_account(self, project_id: str, logger: logging.Logger) -> Path:
        """
        Run states SERVICE_ACCOUNT through SERVICE_KEY.

        Returns:
            Path of the new key file

        Raises:
            ProvisioningStepError: On any terminal failure
        """
        email = self.ensure_service_account(project_id, logger)
        self.grant_roles(project_id, email, logger)
        if self.config.propagation_wait_seconds > 0:
            logger.info(f"Waiting {self.config.propagation_wait_seconds:.0f}s for role propagation")
            self._sleep(self.config.propagation_wait_seconds)
        self.enforce_key_ceiling(project_id, email, logger)
        return self.issue_service_account_key(project_id, email, logger)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def ensure_apis_enabled(self, project_id: str, logger: logging.Logger) -> None:
        services = list(self.config.required_services)
        logger.info(f"Enabling {len(services)} services for {project_id}")
        try:
            self._call(
                lambda: self.gcloud.enable_services(project_id, services),
                "enable services",
                logger,
            )
        except RetryExhaustedError as e:
            raise ProvisioningStepError(ProvisionState.ENABLE_APIS, str(e))
        logger.info(f"Services enabled for {project_id}")

    def ensure_service_account(self, project_id: str, logger: logging.Logger) -> str:
        email = self.service_account_email(project_id)
        try:
            exists = self._call(
                lambda: self.gcloud.service_account_exists(project_id, email),
                "describe service account",
                logger,
            )
        except RetryExhaustedError as e:
            raise ProvisioningStepError(ProvisionState.SERVICE_ACCOUNT, str(e))
        if exists:
            logger.info(f"Service account exists: {email}")
            return email

        logger.info(f"Creating service account {email}")
        try:
            self._call(
                lambda: self.gcloud.create_service_account(
                    project_id,
                    self.config.service_account_name,
                    self.config.service_account_display_name,
                ),
                "create service account",
                logger,
            )
        except RetryExhaustedError as e:
            raise ProvisioningStepError(ProvisionState.SERVICE_ACCOUNT, str(e))
        return email

    def grant_roles(self, project_id: str, email: str, logger: logging.Logger) -> List[str]:
        """Bind every configured role. Returns the roles that failed."""
        member = f"serviceAccount:{email}"
        failed = []
        for role in self.config.roles:
            try:
                self._call(
                    lambda role=role: self.gcloud.add_iam_binding(project_id, member, role),
                    f"grant {role}",
                    logger,
                )
                logger.info(f"Granted {role}")
            except RetryExhaustedError as e:
                logger.warning(f"Could not grant {role}: {e}")
                failed.append(role)
        return failed

    def enforce_key_ceiling(self, project_id: str, email: str, logger: logging.Logger) -> None:
        """Delete the single oldest deletable key when the account is at the ceiling."""
        try:
            keys = self._call(lambda: self.gcloud.list_keys(project_id, email), "list keys", logger)
        except RetryExhaustedError as e:
            logger.warning(f"Could not list existing keys, continuing: {e}")
            return

        account = ServiceAccount(email=email, project_id=project_id, keys=keys)
        ceiling = self.config.key_ceiling
        if account.key_count < ceiling:
            logger.info(f"{email} has {account.key_count} key(s); ceiling is {ceiling}")
            return

        logger.error(f"{email} has {account.key_count} keys, at the ceiling of {ceiling}")
        for key in account.keys:
            valid_after = key.valid_after.isoformat() if key.valid_after else "unknown"
            logger.info(f"  {key.key_id}  {key.key_type}  valid after {valid_after}")

        try:
            self._free_key_slot(project_id, email, keys, logger)
        except KeyCeilingError as e:
            raise ProvisioningStepError(ProvisionState.KEY_CEILING, str(e))

    def _free_key_slot(
        self,
        project_id: str,
        email: str,
        keys: List[ServiceAccountKey],
        logger: logging.Logger,
    ) -> ServiceAccountKey:
        candidates = select_keys_to_delete(keys, 1)
        if not candidates:
            raise KeyCeilingError(f"No user-managed key of {email} can be deleted")

        oldest = candidates[0]
        prompt = (
            f"{email} is at the key ceiling. Delete the oldest key {oldest.key_id} "
            "to free a slot?"
        )
        if not self.consent(prompt):
            raise KeyCeilingError(f"Deletion of the oldest key of {email} was not approved")

        logger.info(f"Deleting oldest key {oldest.key_id}")
        try:
            self._call(
                lambda: self.gcloud.delete_key(project_id, email, oldest.name),
                f"delete key {oldest.key_id}",
                logger,
            )
        except RetryExhaustedError as e:
            raise KeyCeilingError(f"Could not delete key {oldest.key_id}: {e}")
        logger.info(f"Deleted key {oldest.key_id}")
        return oldest

    def issue_service_account_key(self, project_id: str, email: str, logger: logging.Logger) -> Path:
        key_file = self.key_file_path(project_id)
        key_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating service account key at {key_file}")

        try:
            self._call(
                lambda: self.gcloud.create_key(project_id, email, key_file),
                "create service account key",
                logger,
            )
        except RetryExhaustedError as e:
            _diagnose_key_error(e, logger)
            key_file.unlink(missing_ok=True)
            raise ProvisioningStepError(ProvisionState.SERVICE_KEY, str(e))

        if not key_file.exists() or key_file.stat().st_size == 0:
            key_file.unlink(missing_ok=True)
            raise ProvisioningStepError(
                ProvisionState.SERVICE_KEY,
                "key command succeeded but the key file is missing or empty",
            )

        key_file.chmod(0o600)
        logger.info(f"Key saved: {key_file}")
        return key_file

    def issue_api_key(self, project_id: str, logger: logging.Logger) -> Optional[str]:
        """Create the secondary API key. Returns None on any failure."""
        service = self.config.api_key_service
        try:
            enabled = self._call(
                lambda: self.gcloud.is_service_enabled(project_id, service),
                f"check {service}",
                logger,
            )
            if not enabled:
                logger.info(f"Enabling {service}")
                self._call(
                    lambda: self.gcloud.enable_services(project_id, [service]),
                    f"enable {service}",
                    logger,
                )
            response = self._call(
                lambda: self.gcloud.create_api_key(project_id, self.config.api_key_display_name),
                "create API key",
                logger,
            )
        except RetryExhaustedError as e:
            logger.error(f"API key creation failed: {e}")
            return None

        key_string = extract_key_string(response)
        if not key_string:
            logger.error("Could not parse an API key from the response")
            logger.debug(f"Response: {response[:500]}")
        return key_string


def prompt_consent(lock: Any, interactive: Optional[bool] = None) -> Consent:
    """
    Build a consent callback that asks the operator on a terminal.

    Prompts are serialised behind ``lock`` so concurrent jobs never interleave.
    Without a TTY the answer is always no.
    """
    def ask(prompt: str) -> bool:
        is_tty = sys.stdin.isatty() if interactive is None else interactive
        if not is_tty:
            return False
        with lock:
            return click.confirm(prompt, default=False)

    return ask


def consent_for_policy(policy: str, lock: Any) -> Consent:
    """Map the ``delete_oldest_key`` config value to a consent callback."""
    if policy == "always":
        return lambda prompt: True
    if policy == "never":
        return lambda prompt: False
    return prompt_consent(lock)
