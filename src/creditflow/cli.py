"""Command-line interface for creditflow."""

from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from creditflow.auth.models import UserAccount
from creditflow.credits.app_settings import KNOWN_KEYS, app_settings_service, parse_number
from creditflow.credits.service import credit_service
from creditflow.logging_config import configure_logging, get_logger
from creditflow.referral.service import referral_service
from creditflow.storage.db import db

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Create Typer app
app = typer.Typer(
    name="creditflow",
    help="Creditflow - credit ledger and referral bonuses",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    db.create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("settings-show")
def show_settings() -> None:
    """Show runtime settings and the effective credit snapshot."""
    stored = app_settings_service.all_settings()

    table = Table(title="App settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", justify="right")
    for key in KNOWN_KEYS:
        table.add_row(key, stored.get(key, "[dim]unset[/dim]"))
    console.print(table)

    snapshot = app_settings_service.snapshot()
    console.print(
        f"Effective: signup bonus [bold]{snapshot.signup_bonus}[/bold], "
        f"referral bonus [bold]{snapshot.referral_bonus}[/bold], "
        f"free monthly [bold]{snapshot.free_monthly_credits}[/bold], "
        f"credits/EUR [bold]{snapshot.credits_per_eur:g}[/bold]"
    )


@app.command("settings-set")
def set_setting(
    key: Annotated[str, typer.Argument(help="Setting key")],
    value: Annotated[str, typer.Argument(help="Numeric value")],
) -> None:
    """Insert or update a runtime setting."""
    if key not in KNOWN_KEYS:
        console.print(f"[red]Unknown setting: {key}[/red] (known: {', '.join(KNOWN_KEYS)})")
        raise typer.Exit(1)

    if parse_number(value, -1) < 0:
        console.print(f"[red]Value must be a non-negative number: {value}[/red]")
        raise typer.Exit(1)

    app_settings_service.upsert_setting(key, value.strip())
    console.print(f"[bold green]✓[/bold green] {key} = {value.strip()}")


@app.command("sweep-expired")
def sweep_expired(
    user_id: Annotated[Optional[int], typer.Option("--user-id", "-u", help="Only this user")] = None,
) -> None:
    """Expire overdue credits and stale invitations."""
    if user_id is not None:
        swept = credit_service.sweep_expired(user_id)
        console.print(f"[bold green]✓[/bold green] User {user_id}: {swept} credits expired")
    else:
        result = credit_service.sweep_all_expired()
        console.print(
            f"[bold green]✓[/bold green] {result['credits_expired']} credits expired "
            f"across {result['users_affected']} users"
        )

    expired_invitations = referral_service.expire_stale_invitations()
    console.print(f"  Invitations expired: {expired_invitations}")


@app.command("reconcile")
def reconcile(
    user_id: Annotated[Optional[int], typer.Option("--user-id", "-u", help="Only this user")] = None,
    fix: Annotated[bool, typer.Option("--fix", help="Overwrite drifted balances with the ledger sum")] = False,
) -> None:
    """Compare balances with the ledger."""
    if user_id is not None:
        user_ids = [user_id]
    else:
        with db.session() as session:
            user_ids = [row.id for row in session.query(UserAccount.id).order_by(UserAccount.id)]

    table = Table(title="Balance drift")
    table.add_column("User", style="cyan")
    table.add_column("Drift", justify="right")
    table.add_column("Balance", justify="right")

    drifted = 0
    for uid in user_ids:
        drift = credit_service.reconcile_balance(uid, fix=fix)
        if drift:
            drifted += 1
            table.add_row(str(uid), f"{drift:+d}", str(credit_service.get_balance(uid)))

    if not drifted:
        console.print(f"[bold green]✓[/bold green] {len(user_ids)} balances match the ledger")
        return

    console.print(table)
    if fix:
        console.print(f"[bold green]✓[/bold green] Fixed {drifted} balances")
    else:
        console.print(f"[yellow]{drifted} balances drifted; rerun with --fix to repair[/yellow]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
