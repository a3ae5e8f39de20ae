"""
Tiered upload of generated credentials.

Tiers are tried in order and the first success wins:
1. ObjectStoreTier  S3-compatible store via the first working CLI tool
                    (s3cmd, then rclone, then aws)
2. GcsTier          Google Cloud Storage bucket derived from the active account
3. local only       nothing uploaded; the file stays in the key directory

Upload failures are always soft: they never change a job's outcome.
Object names are ``{active_account}-{project_id}.{json|key}``.
"""

import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from google.api_core import exceptions as gcs_exceptions
from google.auth.exceptions import DefaultCredentialsError, GoogleAuthError
from google.cloud import storage

from keyrack.config import ObjectStoreConfig
from keyrack.errors import UploadError
from keyrack.gcloud import Runner, subprocess_runner
from keyrack.models import UploadResult
from keyrack.utils import sanitize_name

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {"json": ".json", "key": ".key"}
LOCAL_TIER = "local"


def object_name(active_account: str, project_id: str, kind: str) -> str:
    """Remote object name traceable to both the acting identity and the project."""
    return f"{active_account}-{project_id}{FILE_EXTENSIONS.get(kind, '')}"


def _private_file(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    return path


# =============================================================================
# Object-store client tools
# =============================================================================


class UploadTool(ABC):
    """An interchangeable S3-compatible command-line client."""

    name: str = ""
    binary: str = ""

    def __init__(
        self,
        runner: Runner = subprocess_runner,
        which: Callable[[str], Optional[str]] = shutil.which,
        timeout: Optional[float] = 300.0,
    ):
        self.runner = runner
        self.which = which
        self.timeout = timeout

    def is_available(self) -> bool:
        return self.which(self.binary) is not None

    @abstractmethod
    def put(self, local_file: Path, store: ObjectStoreConfig, key: str, workspace: Path) -> str:
        """
        Upload ``local_file`` to ``{bucket}/{directory}/{key}``.

        Returns:
            Remote URI

        Raises:
            UploadError: If the tool fails
        """
        pass

    @staticmethod
    def remote_path(store: ObjectStoreConfig, key: str) -> str:
        parts = [store.bucket, store.directory.strip("/"), key]
        return "/".join(p for p in parts if p)

    def _check(self, command: List[str], env: Optional[dict] = None) -> None:
        if env is None:
            result = self.runner(command, timeout=self.timeout)
        else:
            result = self.runner(command, timeout=self.timeout, env=env)
        if not result.ok:
            detail = (result.stderr or "").strip()[:300]
            raise UploadError(f"{self.name} upload failed (exit {result.returncode}): {detail}")


class S3cmdTool(UploadTool):
    name = "s3cmd"
    binary = "s3cmd"

    def put(self, local_file: Path, store: ObjectStoreConfig, key: str, workspace: Path) -> str:
        host = store.endpoint.removeprefix("https://").removeprefix("http://")
        use_https = not store.endpoint.startswith("http://")
        config_path = _private_file(
            workspace / f"s3cmd-{threading.get_ident()}.cfg",
            "[default]\n"
            f"access_key = {store.access_key}\n"
            f"secret_key = {store.secret_key}\n"
            f"host_base = {host}\n"
            f"host_bucket = {host}\n"
            f"use_https = {use_https}\n",
        )
        uri = f"s3://{self.remote_path(store, key)}"
        try:
            self._check([self.binary, "-c", str(config_path), "put", str(local_file), uri, "--quiet"])
        finally:
            config_path.unlink(missing_ok=True)
        return uri


class RcloneTool(UploadTool):
    name = "rclone"
    binary = "rclone"

    def put(self, local_file: Path, store: ObjectStoreConfig, key: str, workspace: Path) -> str:
        config_path = _private_file(
            workspace / f"rclone-{threading.get_ident()}.conf",
            "[s3remote]\n"
            "type = s3\n"
            "provider = Other\n"
            f"access_key_id = {store.access_key}\n"
            f"secret_access_key = {store.secret_key}\n"
            f"endpoint = {store.endpoint}\n",
        )
        target = f"s3remote:{self.remote_path(store, key)}"
        try:
            self._check([
                self.binary, "--config", str(config_path),
                "copyto", str(local_file), target, "--quiet",
            ])
        finally:
            config_path.unlink(missing_ok=True)
        return f"s3://{self.remote_path(store, key)}"


class AwsCliTool(UploadTool):
    name = "aws"
    binary = "aws"

    def put(self, local_file: Path, store: ObjectStoreConfig, key: str, workspace: Path) -> str:
        # Credentials go to the child only; the parent environment is untouched
        env = dict(os.environ)
        env.update({
            "AWS_ACCESS_KEY_ID": store.access_key,
            "AWS_SECRET_ACCESS_KEY": store.secret_key,
            "AWS_ENDPOINT_URL": store.endpoint,
        })
        uri = f"s3://{self.remote_path(store, key)}"
        self._check(
            [self.binary, "s3", "cp", str(local_file), uri, "--endpoint-url", store.endpoint],
            env=env,
        )
        return uri


def default_tools(runner: Runner = subprocess_runner, timeout: Optional[float] = 300.0) -> List[UploadTool]:
    """Client tools in preference order."""
    return [
        S3cmdTool(runner=runner, timeout=timeout),
        RcloneTool(runner=runner, timeout=timeout),
        AwsCliTool(runner=runner, timeout=timeout),
    ]


# =============================================================================
# Tiers
# =============================================================================


class UploadTier(ABC):
    """One destination in the fallback chain."""

    name: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        pass

    @abstractmethod
    def upload(self, local_file: Path, object_key: str, log: logging.Logger = logger) -> str:
        """Upload and return the remote location. Raises UploadError."""
        pass

    def describe(self) -> str:
        return self.name


class ObjectStoreTier(UploadTier):
    """Primary tier: S3-compatible store through the first working client tool."""

    name = "object_store"

    def __init__(self, store: ObjectStoreConfig, tools: Sequence[UploadTool], workspace: Path):
        self.store = store.with_default_directory() if store.is_configured else store
        self.tools = list(tools)
        self.workspace = workspace

    def available_tools(self) -> List[UploadTool]:
        return [tool for tool in self.tools if tool.is_available()]

    def is_available(self) -> bool:
        return self.store.is_configured and bool(self.available_tools())

    def upload(self, local_file: Path, object_key: str, log: logging.Logger = logger) -> str:
        if not self.store.is_configured:
            raise UploadError("object store is not configured")

        tools = self.available_tools()
        if not tools:
            raise UploadError("no S3 client tool (s3cmd, rclone, aws) found")

        errors = []
        for tool in tools:
            log.info(f"Uploading {local_file.name} with {tool.name}")
            try:
                location = tool.put(local_file, self.store, object_key, self.workspace)
            except UploadError as e:
                log.warning(str(e))
                errors.append(str(e))
                continue
            log.info(f"Uploaded to {location}")
            return location

        raise UploadError("; ".join(errors))

    def describe(self) -> str:
        return f"s3://{self.store.bucket}/{self.store.directory}/"


class GcsTier(UploadTier):
    """Secondary tier: a per-account Google Cloud Storage bucket."""

    name = "gcs"

    def __init__(
        self,
        active_account: str,
        project: Optional[str],
        bucket_prefix: str = "vertex-keys",
        directory: str = "",
        client_factory: Optional[Callable[[], storage.Client]] = None,
    ):
        self.active_account = active_account
        self.project = project
        self.bucket_name = self.derive_bucket_name(active_account, bucket_prefix)
        self.directory = directory or datetime.now().strftime("%Y%m%d")
        self._client_factory = client_factory or (lambda: storage.Client(project=self.project))
        self._client: Optional[storage.Client] = None
        self._lock = threading.Lock()

    @staticmethod
    def derive_bucket_name(active_account: str, prefix: str) -> str:
        """Bucket name from the account's local part, in the bucket naming alphabet."""
        local_part = active_account.split("@", 1)[0]
        return f"{prefix}-{sanitize_name(local_part)}"[:63].rstrip("-")

    def _get_client(self) -> Optional[storage.Client]:
        with self._lock:
            if self._client is None:
                try:
                    self._client = self._client_factory()
                except DefaultCredentialsError as e:
                    logger.debug(f"GCS client unavailable: {e}")
                    return None
            return self._client

    def is_available(self) -> bool:
        return bool(self.active_account) and self._get_client() is not None

    def ensure_bucket(self, client: storage.Client, log: logging.Logger = logger) -> storage.Bucket:
        bucket = client.lookup_bucket(self.bucket_name)
        if bucket is not None:
            return bucket

        if not self.project:
            raise UploadError("no current project set; cannot create a GCS bucket")

        log.info(f"Creating GCS bucket {self.bucket_name}")
        try:
            return client.create_bucket(self.bucket_name, project=self.project)
        except gcs_exceptions.Conflict:
            # Created concurrently by a sibling job
            return client.bucket(self.bucket_name)

    def upload(self, local_file: Path, object_key: str, log: logging.Logger = logger) -> str:
        client = self._get_client()
        if client is None:
            raise UploadError("no Google Cloud credentials available")

        blob_name = f"{self.directory}/{object_key}"
        try:
            bucket = self.ensure_bucket(client, log)
            bucket.blob(blob_name).upload_from_filename(str(local_file))
        except (gcs_exceptions.GoogleAPICallError, GoogleAuthError) as e:
            raise UploadError(f"GCS upload failed: {e}")

        location = f"gs://{self.bucket_name}/{blob_name}"
        log.info(f"Uploaded to {location}")
        return location

    def describe(self) -> str:
        return f"gs://{self.bucket_name}/{self.directory}/"


# =============================================================================
# Pipeline
# =============================================================================


class UploadPipeline:
    """Try each tier in order. Tier selection is re-evaluated on every call."""

    def __init__(self, tiers: Sequence[UploadTier], active_account: str, workspace: Path):
        self.tiers = list(tiers)
        self.active_account = active_account
        self.workspace = workspace

    def upload(
        self,
        local_file: Path,
        project_id: str,
        kind: str,
        log: Optional[logging.Logger] = None,
    ) -> UploadResult:
        """
        Upload one artifact.

        Args:
            local_file: File to upload
            project_id: Project the artifact belongs to
            kind: "json" (service-account key) or "key" (API key)
            log: Logger for tier messages (the job's log when called from a job)

        Returns:
            UploadResult; ``success`` is False when only the local copy remains
        """
        log = log or logger
        if not local_file.exists():
            return UploadResult(False, LOCAL_TIER, None, [f"file not found: {local_file}"])

        key = object_name(self.active_account, project_id, kind)
        errors = []
        for tier in self.tiers:
            if not tier.is_available():
                log.debug(f"Upload tier {tier.name} unavailable")
                continue
            try:
                location = tier.upload(local_file, key, log)
            except UploadError as e:
                log.warning(f"Upload via {tier.name} failed: {e}")
                errors.append(f"{tier.name}: {e}")
                continue
            return UploadResult(True, tier.name, location, errors)

        log.warning(f"All upload tiers failed; {local_file.name} is kept locally only")
        return UploadResult(False, LOCAL_TIER, str(local_file), errors)

    def upload_api_key(
        self, api_key: str, project_id: str, log: Optional[logging.Logger] = None,
    ) -> UploadResult:
        """Write the API key to a private temp file, upload it, then remove it."""
        if not api_key:
            return UploadResult(False, LOCAL_TIER, None, ["API key is empty"])

        temp_file = _private_file(self.workspace / f"temp-api-key-{project_id}.key", f"{api_key}\n")
        try:
            return self.upload(temp_file, project_id, "key", log)
        finally:
            temp_file.unlink(missing_ok=True)

    def describe_destination(self) -> str:
        """Human description of where uploads are expected to land."""
        for tier in self.tiers:
            if tier.is_available():
                return tier.describe()
        return "local disk only"
