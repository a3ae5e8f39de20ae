"""Run summary and job log replay."""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape

from keyrack.models import JobOutcome, JobStatus
from keyrack.utils import console as default_console
from keyrack.utils import format_duration


@dataclass
class Tally:
    success: int = 0
    partial: int = 0
    failure: int = 0

    @classmethod
    def from_outcomes(cls, successes: List[JobOutcome], failures: List[JobOutcome]) -> "Tally":
        tally = cls(failure=len(failures))
        for outcome in successes:
            if outcome.status is JobStatus.PARTIAL_SUCCESS:
                tally.partial += 1
            else:
                tally.success += 1
        return tally

    @property
    def total(self) -> int:
        return self.success + self.partial + self.failure


def replay_job_logs(log_paths: Dict[str, Path]) -> Iterator[Tuple[str, str]]:
    """Yield (project_id, log text) in submission order."""
    for project_id, path in log_paths.items():
        if path.exists():
            yield project_id, path.read_text()


def render_summary(
    successes: List[JobOutcome],
    failures: List[JobOutcome],
    log_paths: Dict[str, Path],
    elapsed_seconds: float,
    destination: Optional[str] = None,
    show_secrets: bool = True,
    console: Optional[Console] = None,
) -> Tally:
    """
    Print job logs, the per-project credentials and the final tally.

    Returns:
        The success / partial / failure tally
    """
    out = console or default_console

    out.rule("[bold blue]Job logs[/bold blue]")
    for project_id, text in replay_job_logs(log_paths):
        out.print(f"[bold]# {escape(project_id)}[/bold]")
        out.print(escape(text.rstrip("\n")), highlight=False)

    tally = Tally.from_outcomes(successes, failures)

    if successes and show_secrets:
        out.rule("[bold blue]Generated credentials[/bold blue]")
        for outcome in successes:
            out.print(f"\n[bold magenta]===== Project: {escape(outcome.project_id)} =====[/bold magenta]")
            key_path = outcome.service_account_key_path
            if key_path and key_path.exists():
                out.print("[cyan]--- Service account (JSON key) ---[/cyan]")
                out.print(f"Path: {escape(str(key_path))}")
                out.print(escape(key_path.read_text()), highlight=False)
            if outcome.api_key:
                out.print("[cyan]--- API key ---[/cyan]")
                out.print(f"Key: {escape(outcome.api_key)}", highlight=False)
            elif outcome.status is JobStatus.PARTIAL_SUCCESS:
                out.print("[yellow]API key not issued (partial success)[/yellow]")

    if failures:
        out.rule("[bold red]Failed projects[/bold red]")
        for outcome in failures:
            reason = f": {escape(outcome.error)}" if outcome.error else ""
            out.print(f"[red]✗[/red] {escape(outcome.project_id)}{reason}")

    out.rule()
    out.print(
        f"Done. Success: [green]{tally.success}[/green], "
        f"Partial: [yellow]{tally.partial}[/yellow], "
        f"Failed: [red]{tally.failure}[/red] "
        f"(elapsed {format_duration(elapsed_seconds)})"
    )
    if destination:
        out.print(f"Uploads: {escape(destination)}")
    out.print("[yellow]Remember to delete projects you no longer need to avoid charges.[/yellow]")
    return tally
