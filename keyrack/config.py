"""
Configuration management for keyrack.

A single immutable KeyrackConfig is built once at startup and passed to every
component. Values come from (lowest to highest precedence):

    built-in defaults
    $KEYRACK_HOME/config.yaml        (default home: ~/.config/keyrack)
    env_file named in config.yaml    (loaded with python-dotenv)
    environment variables            (MAX_RETRY, CONCURRENCY, KEY_DIR, ...)
    CLI flags                        (applied with dataclasses.replace)
"""

import os
import secrets
import time
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from keyrack.errors import ConfigError


DEFAULT_SERVICES = (
    "aiplatform.googleapis.com",
    "iam.googleapis.com",
    "iamcredentials.googleapis.com",
    "cloudresourcemanager.googleapis.com",
)

DEFAULT_ROLES = (
    "roles/aiplatform.admin",
    "roles/iam.serviceAccountUser",
    "roles/iam.serviceAccountTokenCreator",
    "roles/aiplatform.user",
)

CONSENT_POLICIES = ("ask", "always", "never")

# Environment variable -> (field name, converter)
ENV_OVERRIDES = {
    "PROJECT_PREFIX": ("project_prefix", str),
    "VERTEX_PROJECT_PREFIX": ("vertex_project_prefix", str),
    "MAX_RETRY": ("max_retry_attempts", int),
    "CONCURRENCY": ("concurrency", int),
    "BILLING_ACCOUNT": ("billing_account", str),
    "SERVICE_ACCOUNT_NAME": ("service_account_name", str),
    "KEY_DIR": ("key_dir", Path),
    "MAX_PROJECTS_PER_ACCOUNT": ("max_projects_per_account", int),
}


def _run_username() -> str:
    """Per-run tag used to name the comma-joined key file."""
    return f"momo{secrets.token_hex(2)}{str(int(time.time()))[-4:]}"


@dataclass(frozen=True)
class ObjectStoreConfig:
    """Settings for the S3-compatible primary upload tier."""

    endpoint: str = ""
    access_key: str = ""
    secret_key: str = ""
    bucket: str = ""
    directory: str = ""

    @property
    def is_configured(self) -> bool:
        return all([self.endpoint, self.access_key, self.secret_key, self.bucket])

    def with_default_directory(self) -> "ObjectStoreConfig":
        """Fill in today's date as the directory when none was given."""
        if self.directory:
            return self
        return replace(self, directory=datetime.now().strftime("%Y%m%d"))

    def __repr__(self) -> str:
        return (
            f"ObjectStoreConfig(endpoint={self.endpoint!r}, bucket={self.bucket!r}, "
            f"directory={self.directory!r}, configured={self.is_configured})"
        )


@dataclass(frozen=True)
class KeyrackConfig:
    """Process-wide configuration. Read-only after startup."""

    project_prefix: str = "gemini-key"
    vertex_project_prefix: str = "vertex"
    service_account_name: str = "vertex-admin"
    service_account_display_name: str = "Vertex AI Service Account"
    key_dir: Path = Path("./keys")

    required_services: Tuple[str, ...] = DEFAULT_SERVICES
    roles: Tuple[str, ...] = DEFAULT_ROLES
    api_key_service: str = "generativelanguage.googleapis.com"
    api_key_display_name: str = "AI Studio Key"

    max_retry_attempts: int = 3
    retry_base_delay: float = 10.0
    retry_jitter: float = 5.0
    command_timeout: float = 300.0
    propagation_wait_seconds: float = 0.0

    concurrency: int = 20
    key_ceiling: int = 10
    delete_oldest_key: str = "ask"

    billing_account: str = ""
    max_projects_per_account: int = 3

    run_username: str = field(default_factory=_run_username)
    bare_key_file: Path = Path("key.txt")
    comma_key_file: Optional[Path] = None

    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    gcs_bucket_prefix: str = "vertex-keys"

    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[Path] = None
    env_file: Optional[str] = None

    @property
    def comma_key_path(self) -> Path:
        if self.comma_key_file is not None:
            return self.comma_key_file
        return Path(f"comma_separated_keys_{self.run_username}.txt")

    def get_log_file_path(self) -> Path:
        """Structured run log. Defaults to $KEYRACK_HOME/logs/keyrack.log."""
        if self.log_file is not None:
            return self.log_file
        return get_keyrack_home() / "logs" / "keyrack.log"

    def validate(self) -> None:
        """Validate configuration values."""
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_retry_attempts < 1:
            raise ConfigError(
                f"max_retry_attempts must be >= 1, got {self.max_retry_attempts}"
            )
        if self.key_ceiling < 1:
            raise ConfigError(f"key_ceiling must be >= 1, got {self.key_ceiling}")
        if self.delete_oldest_key not in CONSENT_POLICIES:
            raise ConfigError(
                f"delete_oldest_key must be one of {', '.join(CONSENT_POLICIES)}, "
                f"got {self.delete_oldest_key!r}"
            )
        if not self.service_account_name:
            raise ConfigError("service_account_name is required")

    def with_overrides(self, **overrides: Any) -> "KeyrackConfig":
        """Return a copy with non-None overrides applied and validated."""
        applied = {k: v for k, v in overrides.items() if v is not None}
        updated = replace(self, **applied) if applied else self
        updated.validate()
        return updated


def get_keyrack_home() -> Path:
    """Return keyrack's config directory ($KEYRACK_HOME or ~/.config/keyrack)."""
    home = os.environ.get("KEYRACK_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/keyrack").expanduser()


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw YAML value to the field's runtime type."""
    if value is None:
        return None
    if name in ("key_dir", "bare_key_file", "comma_key_file", "log_file"):
        return Path(str(value)).expanduser()
    if name in ("required_services", "roles"):
        if isinstance(value, str):
            return tuple(v.strip() for v in value.split(",") if v.strip())
        return tuple(value)
    if name == "object_store":
        if not isinstance(value, dict):
            raise ConfigError("object_store must be a mapping")
        known = {f.name for f in fields(ObjectStoreConfig)}
        unknown = set(value) - known
        if unknown:
            raise ConfigError(f"Unknown object_store keys: {', '.join(sorted(unknown))}")
        return ObjectStoreConfig(**{k: str(v) for k, v in value.items() if v is not None})
    return value


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def load_config(config_path: Optional[Path] = None) -> KeyrackConfig:
    """
    Load keyrack configuration.

    Args:
        config_path: Path to config file. Defaults to $KEYRACK_HOME/config.yaml.
            A missing file is not an error; defaults are used.

    Returns:
        Validated KeyrackConfig

    Raises:
        ConfigError: If the file is malformed or a value is invalid
    """
    if config_path is None:
        config_path = get_keyrack_home() / "config.yaml"

    raw: Dict[str, Any] = {}
    if config_path.exists():
        raw = _load_yaml(config_path)

    known = {f.name for f in fields(KeyrackConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    values = {name: _coerce(name, value) for name, value in raw.items()}
    values = {k: v for k, v in values.items() if v is not None}

    env_file = values.get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    for env_name, (field_name, convert) in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value:
            try:
                values[field_name] = convert(env_value)
            except ValueError:
                raise ConfigError(f"{env_name} has an invalid value: {env_value!r}")

    try:
        config = KeyrackConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    config.validate()
    return config
