"""
CLI for token-warden.

Run the admin API, trigger audit passes and inspect token expiry from
the command line.
"""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from warden.config import WardenConfig


console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def get_config() -> WardenConfig:
    """Load configuration from environment, exiting on invalid values."""
    try:
        return WardenConfig.from_env()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def _build_coordinator(config: WardenConfig):
    from warden.web.database import Database
    from warden.web.refresh import RefreshCoordinator

    db = Database(config.db_path)
    coordinator = RefreshCoordinator(
        db,
        max_concurrency=config.max_concurrency,
        refresh_buffer=config.refresh_buffer,
        token_url=config.token_url,
        client_id=config.client_id,
        recovery_path=config.recovery_path,
    )
    return db, coordinator


def _print_results(results) -> None:
    table = Table(title="Refresh Results")
    table.add_column("Account", style="cyan")
    table.add_column("Outcome")
    table.add_column("Detail", style="dim")

    for r in results:
        if not r.success:
            outcome = f"[red]FAILED[/red] ({r.error_code})"
        elif r.refreshed:
            outcome = "[green]refreshed[/green]"
        else:
            outcome = "[dim]no action[/dim]"
        table.add_row(str(r.account_id), outcome, r.error or "")

    console.print(table)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def main(verbose: bool):
    """token-warden - keeps upstream OAuth tokens refreshed."""
    setup_logging(verbose)


@main.command()
@click.option("--host", help="Bind address (defaults to WARDEN_HOST)")
@click.option("--port", "-p", type=int, help="Port (defaults to WARDEN_PORT)")
def serve(host, port):
    """Run the admin API with the background refresh scheduler."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "warden.api.main:app",
        host=host or config.host,
        port=port or config.port,
    )


@main.command()
def audit():
    """Run one audit pass now. Exits 1 if any account failed."""
    from warden.web.refresh import summarize

    config = get_config()
    db, coordinator = _build_coordinator(config)
    try:
        results = asyncio.run(coordinator.run_audit_pass())
    except Exception as e:
        console.print(f"[red]Audit pass failed:[/red] {e}")
        sys.exit(1)
    finally:
        db.close()

    if not results:
        console.print("[yellow]No active OAuth accounts to check[/yellow]")
        return

    _print_results(results)
    counts = summarize(results)
    console.print(
        f"\n{counts['total']} checked, {counts['refreshed']} refreshed, "
        f"{counts['failed']} failed"
    )
    if counts["failed"]:
        sys.exit(1)


@main.command()
@click.argument("account_id", type=int)
@click.option("--force", "-f", is_flag=True, help="Refresh even if the token is still valid")
def refresh(account_id: int, force: bool):
    """Refresh a single account's token on demand."""
    config = get_config()
    db, coordinator = _build_coordinator(config)
    try:
        result = asyncio.run(
            coordinator.refresh_token_for_account(account_id, force=force)
        )
    finally:
        db.close()

    _print_results([result])
    if not result.success:
        sys.exit(1)


@main.command()
def status():
    """Show token expiry for every OAuth account."""
    from warden.web.database import Database
    from warden.web.refresh import oauth_account_status

    config = get_config()
    db = Database(config.db_path)
    try:
        report = oauth_account_status(db)
    finally:
        db.close()

    if not report["accounts"]:
        console.print("[yellow]No OAuth accounts configured[/yellow]")
        return

    table = Table(title="OAuth Accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Time Left")

    for a in report["accounts"]:
        if a["isExpired"]:
            left = "[red]expired[/red]"
        elif a["isExpiringSoon"]:
            left = f"[yellow]{a['timeLeftFormatted']}[/yellow]"
        else:
            left = f"[green]{a['timeLeftFormatted']}[/green]"
        status_text = a["status"]
        if status_text == "FAILED":
            status_text = "[red]FAILED[/red]"
        table.add_row(str(a["id"]), a["name"], status_text, left)

    console.print(table)
    s = report["summary"]
    console.print(
        f"\n{s['total']} total, {s['valid']} valid, "
        f"{s['expiringSoon']} expiring soon, {s['expired']} expired"
    )


@main.command()
@click.argument("account_id", type=int)
def reactivate(account_id: int):
    """Move a FAILED account back to ACTIVE."""
    from warden.web.database import Database

    config = get_config()
    db = Database(config.db_path)
    try:
        changed = db.reactivate_account(account_id)
    finally:
        db.close()

    if changed:
        console.print(f"[green][OK][/green] Account {account_id} reactivated")
    else:
        console.print(f"[red]Account {account_id} is not FAILED or does not exist[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
