"""
CLI interface for keyrack.

Commands:
    run          ensure N billed projects exist and provision credentials for each
    configure    provision credentials on selected existing projects
    create       create new projects within the billing account's capacity
    keys         list, rotate or delete service-account keys
    init         write a default configuration

Exit codes: 0 on completion, 1 on usage or environment errors, 130 on interrupt.
"""

import sys
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

import click

from keyrack import __version__
from keyrack.errors import KeyrackError
from keyrack.report import render_summary
from keyrack.session import ProvisioningSession, QuotaCheck, SessionResult
from keyrack.utils import (
    console,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

# Projects shown in a selection list before truncating
SELECTION_LIMIT = 20


def _interactive() -> bool:
    return sys.stdin.isatty()


def _ask_yes_no(prompt: str, default: bool = False) -> bool:
    """Confirm on a terminal; without one, take the default."""
    if not _interactive():
        return default
    return click.confirm(prompt, default=default)


def _require_config(ctx, **overrides):
    """Loaded config with CLI overrides applied; exits 1 when unavailable."""
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'keyrack init' to create a configuration file.", err=True)
        raise SystemExit(1)
    try:
        return ctx.obj["config"].with_overrides(**overrides)
    except KeyrackError as e:
        print_error(str(e))
        raise SystemExit(1)


@contextmanager
def _open_session(ctx, config) -> Iterator[ProvisioningSession]:
    """Set up logging, open a session and always remove its workspace."""
    log_level = "DEBUG" if ctx.obj.get("verbose") else config.log_level
    setup_logging(config.get_log_file_path(), log_level, config.log_format)

    factory = ctx.obj.get("session_factory", ProvisioningSession)
    session = factory(config)
    try:
        with session:
            session.start()
            yield session
    except KeyrackError as e:
        print_error(str(e))
        raise SystemExit(1)


def _choose_billing(accounts: List[Tuple[str, str]]) -> str:
    click.echo("Open billing accounts:")
    for index, (account_id, display) in enumerate(accounts, start=1):
        click.echo(f"  {index}. {account_id} - {display}")
    choice = click.prompt("Select billing account", type=click.IntRange(1, len(accounts)))
    return accounts[choice - 1][0]


def _resolve_billing(session: ProvisioningSession) -> str:
    billing = session.resolve_billing_account(_choose_billing if _interactive() else None)
    print_info(f"Billing account: {billing}")
    return billing


def _decide_quota(check: QuotaCheck) -> int:
    """Number of projects the operator allows to be created."""
    if check.skipped:
        return check.requested

    if not check.known:
        if not _ask_yes_no("Could not check the project creation quota. Continue?", default=False):
            print_info("Cancelled")
            raise SystemExit(1)
        return check.requested

    if not check.exceeded:
        return check.requested

    print_warning(f"Requested {check.requested} new project(s) but the quota is {check.limit}")
    if not _interactive():
        print_info(f"Clamping to {check.limit}")
        return check.limit

    choice = click.prompt(
        "Continue anyway, clamp to the quota, or cancel?",
        type=click.Choice(["continue", "clamp", "cancel"]),
        default="cancel",
    )
    if choice == "continue":
        return check.requested
    if choice == "clamp":
        return check.limit
    print_info("Cancelled")
    raise SystemExit(1)


def _select(items: Sequence[str], labels: Optional[Sequence[str]] = None) -> List[str]:
    """Let the operator pick items by number (space separated)."""
    labels = labels or items
    for index, label in enumerate(labels[:SELECTION_LIMIT], start=1):
        click.echo(f"  {index}. {label}")
    if len(items) > SELECTION_LIMIT:
        click.echo(f"  ... {len(items) - SELECTION_LIMIT} more")

    raw = click.prompt("Numbers (space separated)", default="", show_default=False)
    selected = []
    for token in raw.split():
        if token.isdigit() and 1 <= int(token) <= len(items):
            item = items[int(token) - 1]
            if item not in selected:
                selected.append(item)
    return selected


def _render(result: SessionResult) -> None:
    render_summary(
        result.successes,
        result.failures,
        result.log_paths,
        result.elapsed_seconds,
        destination=result.upload_destination,
    )


@click.group()
@click.version_option(version=__version__, prog_name="keyrack")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Path to config.yaml")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """
    keyrack - Vertex AI credential provisioning for Google Cloud projects.

    Creates or selects projects, issues service-account and API keys in
    parallel, and uploads them to an object store.
    """
    from keyrack.config import load_config

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if "config" in ctx.obj:
        return
    try:
        ctx.obj["config"] = load_config(config_path)
    except KeyrackError as e:
        # init can still run without a valid config
        ctx.obj["config_error"] = str(e)


@main.command("run")
@click.option("-n", "--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of projects to process")
@click.option("--s3-endpoint", help="Object store endpoint URL")
@click.option("--s3-access-key", help="Object store access key")
@click.option("--s3-secret-key", help="Object store secret key")
@click.option("--s3-bucket", help="Object store bucket")
@click.option("--s3-directory", help="Object store directory (default: today's date)")
@click.option("--billing-account", help="Billing account ID")
@click.option("--concurrency", type=click.IntRange(min=1), help="Maximum parallel jobs")
@click.pass_context
def run_cmd(
    ctx,
    count: int,
    s3_endpoint: Optional[str],
    s3_access_key: Optional[str],
    s3_secret_key: Optional[str],
    s3_bucket: Optional[str],
    s3_directory: Optional[str],
    billing_account: Optional[str],
    concurrency: Optional[int],
):
    """Ensure COUNT billed projects exist and provision credentials for each."""
    store_overrides = {
        "endpoint": s3_endpoint,
        "access_key": s3_access_key,
        "secret_key": s3_secret_key,
        "bucket": s3_bucket,
        "directory": s3_directory,
    }
    store_overrides = {k: v for k, v in store_overrides.items() if v is not None}
    base = _require_config(ctx)
    config = _require_config(
        ctx,
        object_store=replace(base.object_store, **store_overrides) if store_overrides else None,
        billing_account=billing_account,
        concurrency=concurrency,
    )

    with _open_session(ctx, config) as session:
        print_banner(f"keyrack v{__version__}")
        print_warning("Vertex AI requires a billing account; usage incurs real charges.")

        if config.object_store.is_configured:
            print_info(f"Uploads go to {session.uploads.describe_destination()}")

        billing = _resolve_billing(session)
        existing = session.billed_projects(billing)
        print_info(f"{len(existing)} project(s) already billed to {billing}")

        max_new = None
        needed = max(0, count - len(existing))
        if needed:
            max_new = _decide_quota(session.check_quota(needed))
            print_info(f"Creating {min(needed, max_new)} new project(s)")

        result = session.bulk_create_and_configure(count, billing, existing=existing, max_new=max_new)
        _render(result)


@main.command("configure")
@click.argument("projects", nargs=-1)
@click.option("--billing-account", help="Billing account ID")
@click.pass_context
def configure(ctx, projects: Tuple[str, ...], billing_account: Optional[str]):
    """Provision credentials on existing PROJECTS (or pick them interactively)."""
    config = _require_config(ctx, billing_account=billing_account)

    with _open_session(ctx, config) as session:
        billing = _resolve_billing(session)
        selection = list(projects)

        if not selection:
            if not _interactive():
                print_error("Pass project IDs or run on a terminal to choose them")
                raise SystemExit(1)

            candidates = session.billed_projects(billing)
            if not candidates:
                print_warning(f"No project is billed to {billing}")
                if not _ask_yes_no("Show all active projects?", default=False):
                    return
                candidates = session.active_projects()
            if not candidates:
                print_error("No active project found")
                raise SystemExit(1)

            labels = [
                f"{p} ({session.billing_status(p, billing)})"
                for p in candidates[:SELECTION_LIMIT]
            ]
            selection = _select(candidates, labels)
            if not selection:
                print_error("No project selected")
                raise SystemExit(1)
            if not _ask_yes_no(f"Configure {len(selection)} project(s)?"):
                print_info("Cancelled")
                raise SystemExit(1)

        result = session.configure_existing(selection, billing)
        _render(result)


@main.command("create")
@click.option("-n", "--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of projects to create")
@click.option("--prefix", help="Project ID prefix when the account name is unavailable")
@click.option("--billing-account", help="Billing account ID")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def create(ctx, count: int, prefix: Optional[str], billing_account: Optional[str], yes: bool):
    """Create new projects, link billing and provision credentials."""
    config = _require_config(ctx, billing_account=billing_account)

    with _open_session(ctx, config) as session:
        billing = _resolve_billing(session)
        if not yes and not _ask_yes_no(f"Create {count} project(s) on {billing}?", default=False):
            print_info("Cancelled")
            raise SystemExit(1)

        result = session.create_projects(count, billing, prefix=prefix)
        if result.created_projects:
            print_success(f"Created {len(result.created_projects)} project(s)")
        _render(result)


@main.group("keys")
def keys_group():
    """Manage service-account keys."""
    pass


@keys_group.command("list")
@click.pass_context
def list_keys(ctx):
    """List local key files."""
    config = _require_config(ctx)
    session = ctx.obj.get("session_factory", ProvisioningSession)(config)

    keys = session.list_local_keys()
    if not keys:
        print_info(f"No key files in {config.key_dir}")
        return

    click.echo(f"{len(keys)} key file(s) in {config.key_dir}:")
    for index, (path, size) in enumerate(keys, start=1):
        click.echo(f"  {index}. {path.name} ({size} bytes)")


@keys_group.command("generate")
@click.argument("projects", nargs=-1)
@click.pass_context
def generate_keys(ctx, projects: Tuple[str, ...]):
    """Issue a fresh service-account key for PROJECTS."""
    config = _require_config(ctx)

    with _open_session(ctx, config) as session:
        selection = list(projects)
        if not selection:
            if not _interactive():
                print_error("Pass project IDs or run on a terminal to choose them")
                raise SystemExit(1)
            candidates = session.active_projects()
            if not candidates:
                print_error("No active project found")
                raise SystemExit(1)
            selection = _select(candidates)
            if not selection:
                print_error("No project selected")
                raise SystemExit(1)
            if not _ask_yes_no(f"Generate new keys for {len(selection)} project(s)?"):
                print_info("Cancelled")
                raise SystemExit(1)

        result = session.rotate_keys(selection)
        _render(result)


@keys_group.command("delete")
@click.argument("names", nargs=-1)
@click.pass_context
def delete_keys(ctx, names: Tuple[str, ...]):
    """Delete local key files by NAME (or pick them interactively)."""
    config = _require_config(ctx)
    session = ctx.obj.get("session_factory", ProvisioningSession)(config)

    available = {path.name: path for path, _ in session.list_local_keys()}
    if not available:
        print_info(f"No key files in {config.key_dir}")
        return

    if names:
        unknown = [n for n in names if n not in available]
        if unknown:
            print_error(f"Unknown key file(s): {', '.join(unknown)}")
            raise SystemExit(1)
        selected = [available[n] for n in names]
    else:
        chosen = _select(list(available))
        selected = [available[n] for n in chosen]

    if not selected:
        print_error("No file selected")
        raise SystemExit(1)

    console.print("[bold red]The following key files will be deleted. This cannot be undone:[/bold red]")
    for path in selected:
        click.echo(f"  - {path.name}")

    confirm = click.prompt("Type DELETE to confirm", default="", show_default=False)
    if confirm != "DELETE":
        print_info("Deletion cancelled")
        raise SystemExit(1)

    deleted, failed = session.delete_local_keys(selected)
    for path in deleted:
        print_success(f"Deleted {path.name}")
    for path in failed:
        print_error(f"Could not delete {path.name}")
    click.echo(f"Deleted: {len(deleted)}, failed: {len(failed)}")
    if failed:
        raise SystemExit(1)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize keyrack configuration."""
    from keyrack.config import get_keyrack_home
    import yaml

    home = get_keyrack_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "project_prefix": "gemini-key",
        "vertex_project_prefix": "vertex",
        "service_account_name": "vertex-admin",
        "key_dir": "./keys",
        "max_retry_attempts": 3,
        "concurrency": 20,
        "key_ceiling": 10,
        "delete_oldest_key": "ask",
        "max_projects_per_account": 3,
        "billing_account": "",
        "object_store": {
            "endpoint": "",
            "bucket": "",
            "directory": "",
        },
        "log_level": "INFO",
        "env_file": str(home / ".env"),
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# BILLING_ACCOUNT=...\n# CONCURRENCY=20\n# MAX_RETRY=3\n")
        env_path.chmod(0o600)

    click.echo(f"Initialized keyrack config at {cfg_path}")


def run(argv: Optional[Sequence[str]] = None) -> None:
    """Console entry point. Maps usage errors to exit 1 and interrupts to 130."""
    try:
        main.main(args=list(argv) if argv is not None else None, prog_name="keyrack", standalone_mode=False)
    except (click.Abort, KeyboardInterrupt):
        print_error("Interrupted")
        sys.exit(130)
    except click.ClickException as e:
        e.show()
        sys.exit(1)


if __name__ == "__main__":
    run()
