"""
CLI interface for Credit Gate.

Operator commands: create the database, inspect an account or a conversation,
grant purchased credits, prune old usage events and run the HTTP server.
"""

import logging
import sqlite3
import sys
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from credit_gate.config.loader import RuntimeSettings, default_config, load_config
from credit_gate.core.actions import ActionCategory, FreeTierFeature
from credit_gate.core.errors import CreditGateError
from credit_gate.core.free_tier import FreeTierCounter
from credit_gate.core.ledger import CreditLedger
from credit_gate.core.rate_limiter import RateLimiter
from credit_gate.storage.repository import Repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option("credit_gate.db", "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Accounting config YAML file")


def _load_config(config_path: Optional[str]):
    return load_config(config_path) if config_path else default_config()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Credit Gate CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Credit Gate - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Credit Gate database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    account_id: str = typer.Argument(..., help="Account to inspect"),
    db: str = DB_OPTION,
    config_path: Optional[str] = CONFIG_OPTION,
    recent: int = typer.Option(10, "--recent", help="Number of recent usage events to list"),
):
    """Show an account's balance, free replies, rate-limit usage and recent activity."""
    try:
        config = _load_config(config_path)
        repository = Repository(db)
        account = repository.get_account(account_id)
        if account is None:
            console.print(f"[yellow]No account found for {account_id}[/]")
            sys.exit(EXIT_CODE_FAIL)

        free_tier = FreeTierCounter(repository, config.free_tier)
        replies = free_tier.check_free_tier(account_id, FreeTierFeature.REPLIES)
        limiter = RateLimiter(repository, config.rate_limits)

        console.print(f"\n[bold]Account:[/bold] {account.account_id}")
        console.print(f"Balance: {account.balance:.2f} credits")
        console.print(f"Total purchased: {account.total_credits_purchased:.2f} credits")
        console.print(f"Free replies: {replies.remaining} of {replies.total_allowed} remaining")

        table = Table(title="Rate limits")
        table.add_column("Category")
        table.add_column("This hour", justify="right")
        table.add_column("Today", justify="right")
        for category in ActionCategory:
            snapshot = limiter.snapshot(account_id, category)
            table.add_row(
                category.value,
                f"{snapshot['used_this_hour']}/{snapshot['limit_per_hour']}",
                f"{snapshot['used_today']}/{snapshot['limit_per_day']}",
            )
        console.print(table)

        events = repository.fetch_usage_events(account_id, limit=recent)
        if events:
            activity = Table(title="Recent activity")
            activity.add_column("Time")
            activity.add_column("Category")
            activity.add_column("Scope")
            for event in events:
                activity.add_row(
                    event.created_at.strftime("%Y-%m-%d %H:%M:%S"), event.category, event.scope_key or "-"
                )
            console.print(activity)
        sys.exit(EXIT_CODE_PASS)
    except (CreditGateError, ValueError, FileNotFoundError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def conversation(
    conversation_id: str = typer.Argument(..., help="Conversation to show"),
    db: str = DB_OPTION,
):
    """Show the stored messages of a Smart Reply conversation."""
    try:
        messages = Repository(db).fetch_messages(conversation_id)
    except sqlite3.Error as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not messages:
        console.print(f"[yellow]No messages found for {conversation_id}[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Conversation {conversation_id}")
    table.add_column("Role")
    table.add_column("Credits", justify="right")
    table.add_column("Content")
    for message in messages:
        table.add_row(message.role, f"{message.credits_used:.2f}", message.content)
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    account_id: str = typer.Argument(..., help="Account receiving the credits"),
    credits: str = typer.Argument(..., help="Number of credits, e.g. 50 or 12.5"),
    reference: str = typer.Option(..., "--reference", "-r", help="Payment reference, applied once"),
    package_name: Optional[str] = typer.Option(None, "--package", help="Package name override"),
    db: str = DB_OPTION,
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Grant purchased credits to an account."""
    try:
        amount = Decimal(credits)
        if not amount.is_finite():
            raise InvalidOperation(credits)
    except InvalidOperation:
        console.print(f"[red]Error:[/] invalid credit amount: {credits}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        config = _load_config(config_path)
        ledger = CreditLedger(Repository(db), config.costs)
        new_balance = ledger.grant(account_id, amount, reference, package_name)
    except (CreditGateError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if new_balance is None:
        console.print(f"[yellow]Purchase {reference} was already applied[/]")
    else:
        console.print(f"[green]✓[/] Granted {amount} credits to {account_id}. Balance: {new_balance:.2f}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def prune(
    hours: int = typer.Option(24, "--hours", help="Delete generation events older than this"),
    db: str = DB_OPTION,
):
    """Delete generation usage events outside the rate-limit windows."""
    try:
        limiter = RateLimiter(Repository(db), default_config().rate_limits)
        removed = limiter.prune(older_than=timedelta(hours=hours))
        console.print(f"[green]✓[/] Removed {removed} usage events")
        sys.exit(EXIT_CODE_PASS)
    except (CreditGateError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    db: Optional[str] = typer.Option(None, "--db", help="Overrides CREDIT_GATE_DB_PATH"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn
    from openai import OpenAIError

    from credit_gate.api.app import build_service, create_app

    try:
        settings = RuntimeSettings.from_env()
        if db:
            settings = replace(settings, db_path=db)
        application = create_app(build_service(settings))
    except (ValueError, FileNotFoundError, sqlite3.Error, OpenAIError) as e:
        console.print(f"[red]Error starting server:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    uvicorn.run(application, host=host, port=port)


if __name__ == "__main__":
    app()
