"""
ProvisioningSession - sequencing glue for the bulk workflows.

Every workflow has the same shape:

    resolve the target project set (remote list/filter calls)
    optionally create missing projects, each immediately linked to billing
    hand the ordered set to JobScheduler
    drain SharedResultStore into a SessionResult

Interactive decisions (billing account choice, quota overrun, project
selection) belong to the CLI; the session only exposes the data they need.

Usage:
    with ProvisioningSession(config) as session:
        session.start()
        billing = session.resolve_billing_account()
        result = session.bulk_create_and_configure(3, billing)
"""

import logging
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google.cloud import storage

from keyrack.config import KeyrackConfig
from keyrack.errors import (
    CapacityError,
    ConfigError,
    EnvironmentCheckError,
    ProjectCreationError,
    RemoteCommandError,
    RetryExhaustedError,
)
from keyrack.gcloud import GcloudClient, Runner, subprocess_runner
from keyrack.models import JobOutcome, JobStatus, ProvisioningJob
from keyrack.provisioner import CredentialProvisioner, consent_for_policy
from keyrack.result_store import AggregatedKeyFiles, SharedResultStore
from keyrack.retry import RetryExecutor, RetryPolicy
from keyrack.scheduler import JobScheduler
from keyrack.upload import GcsTier, ObjectStoreTier, UploadPipeline, default_tools
from keyrack.utils import ensure_directory_permissions, sanitize_name, unique_suffix

logger = logging.getLogger(__name__)

PROJECT_ID_MAX_LENGTH = 30
WORKSPACE_PREFIX = "keyrack_"

BillingChooser = Callable[[List[Tuple[str, str]]], str]


@dataclass
class QuotaCheck:
    """Requested project creations against the project-create quota."""

    requested: int
    limit: Optional[int] = None
    skipped: bool = False

    @property
    def known(self) -> bool:
        return self.limit is not None

    @property
    def exceeded(self) -> bool:
        return self.limit is not None and self.requested > self.limit


@dataclass
class SessionResult:
    """Drained outcome of one workflow run."""

    successes: List[JobOutcome] = field(default_factory=list)
    failures: List[JobOutcome] = field(default_factory=list)
    log_paths: Dict[str, Path] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    created_projects: List[str] = field(default_factory=list)
    upload_destination: Optional[str] = None

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.successes if o.status is JobStatus.SUCCESS)

    @property
    def partial_count(self) -> int:
        return sum(1 for o in self.successes if o.status is JobStatus.PARTIAL_SUCCESS)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success_count,
            "partial_success": self.partial_count,
            "failure": self.failure_count,
            "elapsed_seconds": self.elapsed_seconds,
            "created_projects": list(self.created_projects),
            "outcomes": [o.to_dict() for o in self.successes + self.failures],
        }


def new_project_id(active_account: Optional[str], prefix: str, now: Optional[datetime] = None) -> str:
    """
    Generate a fresh project ID.

    The base name is the active account's local part when known, else
    ``prefix``. The result is in the project-ID alphabet, at most 30
    characters, with no leading or trailing dash.
    """
    if active_account:
        base = sanitize_name(active_account.split("@", 1)[0]).rstrip("-")
    else:
        base = prefix
    stamp = (now or datetime.now()).strftime("%m%d")
    full_id = f"{base}-{stamp}-{unique_suffix()}"
    return sanitize_name(full_id).lstrip("-")[:PROJECT_ID_MAX_LENGTH].rstrip("-")


class ProvisioningSession:
    """One operator session: workspace, environment and the workflows."""

    def __init__(
        self,
        config: KeyrackConfig,
        gcloud: Optional[GcloudClient] = None,
        runner: Runner = subprocess_runner,
        uploads: Optional[UploadPipeline] = None,
        storage_client_factory: Optional[Callable[[], storage.Client]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runner = runner
        self.gcloud = gcloud or GcloudClient(runner=runner, timeout=config.command_timeout)
        self.retry = RetryExecutor(RetryPolicy.from_config(config), sleep=sleep)
        self._sleep = sleep
        self._clock = clock
        self._storage_client_factory = storage_client_factory
        self._consent_lock = threading.Lock()

        self.uploads = uploads
        self.workspace: Optional[Path] = None
        self.active_account: Optional[str] = None
        self.current_project: Optional[str] = None
        self._runs = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "ProvisioningSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> Path:
        """Create the per-run workspace and the key directory."""
        if self.workspace is None:
            self.workspace = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX))
            logger.debug(f"Workspace: {self.workspace}")
        ensure_directory_permissions(self.config.key_dir)
        return self.workspace

    def close(self) -> None:
        """Remove the workspace. Safe to call more than once."""
        if self.workspace is not None:
            shutil.rmtree(self.workspace, ignore_errors=True)
            logger.debug(f"Removed workspace {self.workspace}")
            self.workspace = None

    def start(self) -> str:
        """
        Check the environment and build the upload pipeline.

        Returns:
            The active account email

        Raises:
            EnvironmentCheckError: If gcloud is missing or nobody is logged in
        """
        self.open()
        self.active_account = self.gcloud.check_environment()
        self.current_project = self.gcloud.current_project()
        logger.info(
            f"Active account: {self.active_account}",
            extra={
                "event": "session_started",
                "metadata": {"current_project": self.current_project},
            },
        )
        if self.uploads is None:
            self.uploads = self._build_upload_pipeline()
        return self.active_account

    def _build_upload_pipeline(self) -> UploadPipeline:
        store = self.config.object_store
        tiers = [
            ObjectStoreTier(
                store,
                default_tools(self.runner, self.config.command_timeout),
                self.workspace,
            ),
            GcsTier(
                self.active_account or "",
                self.current_project,
                bucket_prefix=self.config.gcs_bucket_prefix,
                directory=store.directory,
                client_factory=self._storage_client_factory,
            ),
        ]
        return UploadPipeline(tiers, self.active_account or "", self.workspace)

    def _build_provisioner(self) -> CredentialProvisioner:
        consent = consent_for_policy(self.config.delete_oldest_key, self._consent_lock)
        return CredentialProvisioner(self.config, self.gcloud, self.retry, consent=consent, sleep=self._sleep)

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    def new_project_id(self, prefix: Optional[str] = None) -> str:
        return new_project_id(self.active_account, prefix or self.config.project_prefix)

    def resolve_billing_account(self, choose: Optional[BillingChooser] = None) -> str:
        """
        Pick the billing account for this session.

        The configured account wins. Otherwise the only open account is used,
        and with several open accounts ``choose`` decides.

        Raises:
            EnvironmentCheckError: If no open billing account exists
            ConfigError: If several exist and no chooser was given
        """
        if self.config.billing_account:
            return self.config.billing_account

        accounts = self.gcloud.list_billing_accounts()
        if not accounts:
            raise EnvironmentCheckError("No open billing account found")
        if len(accounts) == 1:
            account_id = accounts[0][0]
            logger.info(f"Using billing account {account_id}")
            return account_id
        if choose is None:
            raise ConfigError(
                f"{len(accounts)} open billing accounts found; pass --billing-account to pick one"
            )
        return choose(accounts)

    def check_quota(self, requested: int) -> QuotaCheck:
        """Compare ``requested`` creations with the project-create quota."""
        if not self.current_project:
            logger.warning("No current project set; skipping quota check")
            return QuotaCheck(requested, skipped=True)
        limit = self.gcloud.project_create_quota(self.current_project)
        if limit is None:
            logger.warning("Could not determine the project creation quota")
        else:
            logger.info(f"Project creation quota: {limit}")
        return QuotaCheck(requested, limit)

    def billed_projects(self, billing_account: str) -> List[str]:
        return self.gcloud.list_projects(billing_account)

    def active_projects(self) -> List[str]:
        return self.gcloud.list_projects()

    def billing_status(self, project_id: str, billing_account: str) -> str:
        """Return "linked", "other", "unbilled" or "unknown" relative to ``billing_account``."""
        try:
            name = self.retry.execute(
                lambda: self.gcloud.project_billing_account(project_id),
                description="describe billing",
                logger=logger,
            )
        except RetryExhaustedError:
            return "unknown"
        if not name:
            return "unbilled"
        return "linked" if billing_account in name else "other"

    # ------------------------------------------------------------------
    # Project creation
    # ------------------------------------------------------------------

    def create_billed_project(self, project_id: str, billing_account: str) -> str:
        """
        Create a project and link it to billing.

        If linking fails the new project is deleted again so no orphan is left.

        Raises:
            ProjectCreationError: If creation or linking fails
        """
        logger.info(f"Creating project {project_id}")
        try:
            self.retry.execute(
                lambda: self.gcloud.create_project(project_id),
                description=f"create project {project_id}",
                logger=logger,
            )
        except RetryExhaustedError as e:
            raise ProjectCreationError(project_id, f"create failed: {e}")

        try:
            self.retry.execute(
                lambda: self.gcloud.link_billing(project_id, billing_account),
                description=f"link billing for {project_id}",
                logger=logger,
            )
        except RetryExhaustedError as e:
            logger.error(f"Billing link failed for {project_id}; deleting it")
            try:
                self.gcloud.delete_project(project_id)
            except RemoteCommandError as cleanup_error:
                logger.warning(f"Could not delete {project_id}; remove it manually: {cleanup_error}")
            raise ProjectCreationError(project_id, f"billing link failed: {e}")

        logger.info(
            f"Created and linked {project_id}",
            extra={"event": "project_created", "project": project_id},
        )
        return project_id

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def bulk_create_and_configure(
        self,
        count: int,
        billing_account: str,
        existing: Optional[List[str]] = None,
        max_new: Optional[int] = None,
    ) -> SessionResult:
        """
        Make sure ``count`` billed projects exist, then provision each.

        Args:
            count: Number of projects to process
            billing_account: Billing account ID
            existing: Projects already billed to the account (listed when None)
            max_new: Upper bound on creations (e.g. clamped to quota)

        Raises:
            ProjectCreationError: If a needed project cannot be created
        """
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")

        billed = list(existing) if existing is not None else self.billed_projects(billing_account)
        logger.info(f"Found {len(billed)} project(s) billed to {billing_account}")

        to_create = max(0, count - len(billed))
        if max_new is not None:
            to_create = min(to_create, max(0, max_new))

        created = []
        for index in range(1, to_create + 1):
            project_id = self.new_project_id(self.config.vertex_project_prefix)
            logger.info(f"[{index}/{to_create}] Creating {project_id}")
            self.create_billed_project(project_id, billing_account)
            billed.append(project_id)
            created.append(project_id)

        result = self.run_jobs(billed[:count])
        result.created_projects = created
        return result

    def configure_existing(self, project_ids: Sequence[str], billing_account: Optional[str]) -> SessionResult:
        """Provision selected existing projects, linking unbilled ones first."""
        return self.run_jobs(project_ids, link_billing=billing_account)

    def create_projects(self, count: int, billing_account: str, prefix: Optional[str] = None) -> SessionResult:
        """
        Create up to ``count`` new projects within the account's capacity and provision them.

        Creation failures are reported as Failure outcomes; remaining projects continue.

        Raises:
            CapacityError: If the billing account is already full
        """
        existing = len(self.billed_projects(billing_account))
        capacity = self.config.max_projects_per_account - existing
        if capacity <= 0:
            raise CapacityError(
                f"Billing account {billing_account} already has {existing} project(s); "
                f"limit is {self.config.max_projects_per_account}"
            )
        if count > capacity:
            logger.warning(f"Only {capacity} more project(s) allowed; creating {capacity}")
            count = capacity

        created = []
        creation_failures = []
        for index in range(1, count + 1):
            project_id = self.new_project_id(prefix or self.config.vertex_project_prefix)
            logger.info(f"[{index}/{count}] Creating {project_id}")
            try:
                created.append(self.create_billed_project(project_id, billing_account))
            except ProjectCreationError as e:
                logger.error(str(e))
                creation_failures.append(JobOutcome.failure(project_id, str(e)))

        result = self.run_jobs(created) if created else SessionResult()
        result.failures.extend(creation_failures)
        result.created_projects = created
        return result

    def rotate_keys(self, project_ids: Sequence[str]) -> SessionResult:
        """Issue a fresh service-account key for each project."""
        return self.run_jobs(project_ids, enable_apis=False, issue_api_key=False)

    def list_local_keys(self) -> List[Tuple[Path, int]]:
        """Local key files with their sizes in bytes, sorted by name."""
        key_dir = self.config.key_dir
        if not key_dir.is_dir():
            return []
        return [(path, path.stat().st_size) for path in sorted(key_dir.glob("*.json")) if path.is_file()]

    def delete_local_keys(self, paths: Sequence[Path]) -> Tuple[List[Path], List[Path]]:
        """Delete key files. Returns (deleted, failed)."""
        deleted, failed = [], []
        for path in paths:
            try:
                path.unlink()
            except OSError as e:
                logger.error(f"Could not delete {path.name}: {e}")
                failed.append(path)
                continue
            logger.info(f"Deleted {path.name}")
            deleted.append(path)
        return deleted, failed

    # ------------------------------------------------------------------
    # Job fan-out
    # ------------------------------------------------------------------

    def run_jobs(
        self,
        project_ids: Sequence[str],
        enable_apis: bool = True,
        issue_api_key: bool = True,
        link_billing: Optional[str] = None,
    ) -> SessionResult:
        """
        Fan the projects out to the scheduler and drain the results.

        Args:
            project_ids: Ordered target projects
            enable_apis: Run the API-enablement state
            issue_api_key: Run the API-key state
            link_billing: Link unbilled projects to this account first
        """
        workspace = self.open()
        self._runs += 1
        run_dir = workspace / f"run-{self._runs}"

        key_files = AggregatedKeyFiles(self.config.bare_key_file, self.config.comma_key_path)
        store = SharedResultStore(run_dir, key_files=key_files)
        scheduler = JobScheduler(store, self.config.concurrency, run_dir)
        provisioner = self._build_provisioner()

        def job_fn(job: ProvisioningJob, job_logger: logging.Logger) -> JobOutcome:
            if link_billing:
                failure = self._link_if_unbilled(job.project_id, link_billing, job_logger)
                if failure is not None:
                    return failure
            outcome = provisioner.provision(
                job.project_id,
                job_logger,
                enable_apis=enable_apis,
                issue_api_key=issue_api_key,
            )
            self._upload_artifacts(outcome, job_logger)
            return outcome

        started = self._clock()
        logger.info(
            f"Processing {len(project_ids)} project(s) with concurrency {self.config.concurrency}",
            extra={"event": "jobs_started", "metadata": {"projects": list(project_ids)}},
        )
        scheduler.run(list(project_ids), job_fn)
        successes, failures = store.drain()
        elapsed = self._clock() - started

        logger.info(
            f"Jobs finished: {len(successes)} succeeded, {len(failures)} failed",
            extra={"event": "jobs_completed", "metadata": {"elapsed_seconds": elapsed}},
        )
        return SessionResult(
            successes=successes,
            failures=failures,
            log_paths=dict(scheduler.log_paths),
            elapsed_seconds=elapsed,
            upload_destination=self.uploads.describe_destination() if self.uploads else None,
        )

    def _link_if_unbilled(
        self,
        project_id: str,
        billing_account: str,
        job_logger: logging.Logger,
    ) -> Optional[JobOutcome]:
        try:
            current = self.retry.execute(
                lambda: self.gcloud.project_billing_account(project_id),
                description="describe billing",
                logger=job_logger,
            )
        except RetryExhaustedError as e:
            return JobOutcome.failure(project_id, f"billing: {e}")
        if current:
            return None
        job_logger.warning(f"{project_id} has no billing account; linking {billing_account}")
        try:
            self.retry.execute(
                lambda: self.gcloud.link_billing(project_id, billing_account),
                description="link billing",
                logger=job_logger,
            )
        except RetryExhaustedError as e:
            return JobOutcome.failure(project_id, f"billing: {e}")
        return None

    def _upload_artifacts(self, outcome: JobOutcome, job_logger: logging.Logger) -> None:
        """Upload the key file and API key. Failures only warn."""
        if self.uploads is None or not outcome.has_key_file:
            return
        try:
            result = self.uploads.upload(
                outcome.service_account_key_path, outcome.project_id, "json", log=job_logger,
            )
            if result.success:
                job_logger.info(f"Key uploaded via {result.tier}: {result.location}")
            else:
                job_logger.warning(f"Key kept locally only: {'; '.join(result.errors) or 'no upload tier'}")

            if outcome.api_key:
                result = self.uploads.upload_api_key(outcome.api_key, outcome.project_id, log=job_logger)
                if result.success:
                    job_logger.info(f"API key uploaded via {result.tier}")
                else:
                    job_logger.warning("API key was not uploaded")
        except Exception as e:
            # Uploads never change the outcome of a provisioned job
            job_logger.warning(f"Upload failed: {e}")
