"""CLI for the Payment Broker.

Operator commands for the database, the account registry and the API server.
"""

import asyncio
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from payment_broker.config import get_settings
from payment_broker.core.errors import ConfigurationError, StoreUnavailableError
from payment_broker.core.models import Account
from payment_broker.core.rotation import AccountRotationSelector
from payment_broker.database.account_registry import AccountRegistry
from payment_broker.database.connection import close_db, init_db
from payment_broker.monitoring.logging import setup_logging

app = typer.Typer(
    name="payment-broker",
    help="Payment Broker - multi-account Stripe rotation and order reconciliation",
    add_completion=False,
)

console = Console()


def _run(coro):
    """Run a coroutine and dispose of the engine afterwards."""

    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(_wrapped())


@app.command("init-db")
def init_database() -> None:
    """Create the broker's tables if they do not exist."""
    setup_logging()
    _run(init_db())
    console.print("[green]Database initialized.[/green]")


@app.command("add-account")
def add_account(
    label: str = typer.Argument(..., help="Unique account label"),
    secret_key: str = typer.Option(..., "--secret-key", help="Stripe secret key", prompt=True, hide_input=True),
    publishable_key: str = typer.Option(..., "--publishable-key", help="Stripe publishable key"),
    webhook_secret: str = typer.Option(
        "", "--webhook-secret", help="Webhook signing secret", prompt=True, hide_input=True
    ),
    order: int = typer.Option(0, "--order", help="Rotation rank, ascending"),
    active: bool = typer.Option(True, "--active/--inactive", help="Take part in rotation"),
    merchant_site: str = typer.Option("", "--merchant-site", help="Merchant site URL"),
    titles: Optional[List[str]] = typer.Option(
        None, "--title", help="Display title (repeatable, up to 10)"
    ),
) -> None:
    """Create or replace a payment account."""
    setup_logging()

    try:
        account = Account(
            label=label,
            secret_key=secret_key,
            publishable_key=publishable_key,
            webhook_secret=webhook_secret,
            active=active,
            order=order,
            merchant_site=merchant_site,
            display_titles=titles or [],
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    stored = _run(AccountRegistry().upsert(account))
    state = "eligible" if stored.is_eligible else "not eligible"
    console.print(f"[green]Saved[/green] account {stored.label} ({state}).")


@app.command("list-accounts")
def list_accounts() -> None:
    """Show configured accounts in rotation order (no credentials)."""
    setup_logging()
    accounts = _run(AccountRegistry().get())

    if not accounts:
        console.print("[yellow]No accounts configured.[/yellow]")
        return

    table = Table(title="Payment accounts")
    table.add_column("Order", justify="right")
    table.add_column("Label")
    table.add_column("Active")
    table.add_column("Eligible")
    table.add_column("Webhooks")
    table.add_column("Last used")

    for account in accounts:
        table.add_row(
            str(account.order),
            account.label,
            "yes" if account.active else "no",
            "yes" if account.is_eligible else "no",
            "yes" if account.can_verify_webhooks else "no",
            account.last_used_at.isoformat() if account.last_used_at else "-",
        )
    console.print(table)


@app.command("rotation-status")
def rotation_status() -> None:
    """Show the account serving the current rotation window."""
    setup_logging()
    selector = AccountRotationSelector(AccountRegistry())

    try:
        status = _run(selector.rotation_status())
    except (ConfigurationError, StoreUnavailableError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(
        f"Account [bold]{status.account['label']}[/bold] "
        f"(slot {status.slot_number}/{status.total_slots}), "
        f"next rotation at {status.next_rotation_at.isoformat()}"
    )


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
) -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_broker.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


def main() -> None:
    """Entry point for the payment-broker command."""
    app()


if __name__ == "__main__":
    main()
