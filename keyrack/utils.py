"""
Utility functions for keyrack.

Includes logging, console output, secret masking, and file operations.
"""

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

# Flags whose following argument is a credential
SECRET_FLAGS = {"--access-key", "--secret-key", "--s3-access-key", "--s3-secret-key"}
SECRET_ASSIGNMENTS = re.compile(
    r"((?:access_key|secret_key|access_key_id|secret_access_key)\s*=\s*)\S+",
    re.IGNORECASE,
)


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "pretty",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for a keyrack run.

    Args:
        log_file: Optional path to a structured (JSON lines) run log
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable) console output
        console_output: Also log to console

    Returns:
        Configured logger
    """
    logger = logging.getLogger("keyrack")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        log_file.parent.chmod(0o700)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "project"):
            log_data["project"] = record.project
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def mask_command(command: Sequence[str]) -> str:
    """
    Render a command line for logging with credential arguments masked.

    Args:
        command: argv list

    Returns:
        Printable command string
    """
    masked: List[str] = []
    hide_next = False
    for arg in command:
        if hide_next:
            masked.append("****")
            hide_next = False
            continue
        if arg in SECRET_FLAGS:
            hide_next = True
        masked.append(SECRET_ASSIGNMENTS.sub(r"\1****", arg))
    return " ".join(masked)


def unique_suffix(length: int = 6) -> str:
    """Short lowercase hex suffix for generated identifiers."""
    return uuid.uuid4().hex[:length]


def sanitize_name(value: str) -> str:
    """Lowercase and map everything outside [a-z0-9-] to '-'."""
    return re.sub(r"[^a-z0-9-]", "-", value.lower())


def ensure_directory_permissions(directory: Path, mode: int = 0o700) -> None:
    """
    Ensure directory exists with correct permissions.

    Args:
        directory: Directory path
        mode: Permission mode (default: 0o700)
    """
    directory.mkdir(parents=True, exist_ok=True)
    directory.chmod(mode)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
