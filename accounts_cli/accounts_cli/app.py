"""Accounts CLI application -- Typer-based operator interface.

Provides commands to run the API server, create the schema, inspect the
Stripe event ledger, look up a user's billing state and deletion
eligibility, and replay captured Stripe events through the reconciler.
Human-readable output goes to *stderr* via Rich; ``--json`` output goes to
*stdout* so that it can be piped.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import typer
from billing_engine.billing.eligibility import DeletionDecision, decide_for
from billing_engine.billing.events import MalformedEventError, parse_event
from billing_engine.billing.reconciler import ReconcileOutcome, WebhookReconciler
from billing_engine.state.database import get_engine, get_session
from billing_engine.state.repository import (
    BillingCustomerRepository,
    EntitlementRepository,
    EventLedgerRepository,
)
from billing_engine.state.tables import BillingCustomerTable, EntitlementTable, StripeEventTable
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from accounts_api.config import load_settings
from accounts_api.services.stripe_gateway import StripeGateway
from accounts_cli.display import display_billing_state, display_ledger, display_outcome

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="accounts",
    help="Accounts - subscription reconciliation and account lifecycle operations",
    no_args_is_help=True,
)
console = Console(stderr=True)

_LOCAL_DB_PATH = Path(".accounts") / "state.db"

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to the service configuration).",
        envvar="ACCOUNTS_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _resolve_database_url() -> str:
    return _database_url or load_settings().database_url


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _run_migrations(database_url: str) -> None:
    """Upgrade a PostgreSQL schema to the latest Alembic revision."""
    from alembic import command
    from alembic.config import Config

    os.environ["ALEMBIC_DATABASE_URL"] = database_url
    config = Config()
    config.set_main_option("script_location", "billing_engine.state:migrations")
    command.upgrade(config, "head")


async def _create_tables(database_url: str) -> None:
    from billing_engine.state.sqlite_adapter import create_local_tables

    engine = get_engine(database_url)
    try:
        await create_local_tables(engine)
    finally:
        await engine.dispose()


async def _fetch_ledger(database_url: str, limit: int) -> list[StripeEventTable]:
    engine = get_engine(database_url)
    try:
        async with get_session(engine) as session:
            return await EventLedgerRepository(session).list_recent(limit=limit)
    finally:
        await engine.dispose()


async def _lookup_user(
    database_url: str,
    user_id: str,
) -> tuple[EntitlementTable | None, BillingCustomerTable | None, DeletionDecision]:
    engine = get_engine(database_url)
    try:
        async with get_session(engine) as session:
            entitlement = await EntitlementRepository(session).get(user_id)
            customer = await BillingCustomerRepository(session).get(user_id)
            return entitlement, customer, decide_for(entitlement, customer)
    finally:
        await engine.dispose()


async def _replay_events(
    database_url: str,
    raw_events: list[dict[str, Any]],
    *,
    reject_stale_events: bool,
) -> list[ReconcileOutcome]:
    """Apply each event in its own transaction, as separate deliveries would be."""
    gateway = StripeGateway(load_settings())
    engine = get_engine(database_url)
    outcomes: list[ReconcileOutcome] = []
    try:
        for raw in raw_events:
            event = parse_event(raw)
            async with get_session(engine) as session:
                reconciler = WebhookReconciler(session, gateway, reject_stale_events=reject_stale_events)
                outcomes.append(await reconciler.apply(event))
    finally:
        await engine.dispose()
    return outcomes


def _load_event_file(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list) and all(isinstance(item, dict) for item in data):
        return data
    raise ValueError("expected a Stripe event object or a list of them")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind the API server to."),
    port: int = typer.Option(8000, "--port", "-p", help="API server port."),
    local: bool = typer.Option(
        False,
        "--local",
        help="Use a SQLite database under .accounts/ instead of PostgreSQL.",
    ),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Run the accounts API server."""
    import uvicorn

    if local:
        _LOCAL_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        os.environ["ACCOUNTS_DATABASE_URL"] = f"sqlite+aiosqlite:///{_LOCAL_DB_PATH}"
        os.environ.setdefault("ACCOUNTS_PLATFORM_ENV", "dev")
    elif _database_url:
        os.environ["ACCOUNTS_DATABASE_URL"] = _database_url

    console.print(f"[green]✓[/green] API server starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    console.print(f"[green]✓[/green] Readiness probe at http://{host}:{port}/ready")

    config = uvicorn.Config(
        "accounts_api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    try:
        uvicorn.Server(config).run()
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/yellow]")


@app.command("init-db")
def init_db() -> None:
    """Create the billing tables (SQLite) or run Alembic migrations (PostgreSQL)."""
    database_url = _resolve_database_url()
    if database_url.startswith("sqlite"):
        asyncio.run(_create_tables(database_url))
        console.print("[green]✓[/green] SQLite tables created")
        return

    try:
        _run_migrations(database_url)
    except Exception as exc:
        console.print(f"[red]Migration failed: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc
    console.print("[green]✓[/green] Database migrated to head")


@app.command()
def ledger(
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Number of events to show."),
) -> None:
    """Show the most recently processed Stripe events."""
    rows = asyncio.run(_fetch_ledger(_resolve_database_url(), limit))
    if _json_output:
        _emit_json(
            [{"event_id": r.event_id, "event_type": r.event_type, "received_at": r.received_at} for r in rows]
        )
        return
    display_ledger(console, rows)


@app.command()
def eligibility(
    user_id: str = typer.Argument(..., help="Identity provider user ID."),
) -> None:
    """Show a user's billing state and whether the account may be deleted."""
    entitlement, customer, decision = asyncio.run(_lookup_user(_resolve_database_url(), user_id))
    if _json_output:
        _emit_json(
            {
                "user_id": user_id,
                "stripe_customer_id": customer.stripe_customer_id if customer else None,
                "stripe_status": entitlement.stripe_status if entitlement else None,
                "current_period_end": entitlement.current_period_end if entitlement else None,
                "deletion": decision.model_dump(mode="json"),
            }
        )
        return
    display_billing_state(console, user_id, entitlement, customer, decision)


@app.command()
def replay(
    event_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="JSON file holding a Stripe event, or a list of events.",
    ),
    allow_stale: bool = typer.Option(
        False,
        "--allow-stale",
        help="Apply subscription events even when older than the stored state.",
    ),
) -> None:
    """Apply captured Stripe events through the reconciler.

    Signature verification is skipped: only replay events exported from the
    Stripe dashboard or CLI.  Already processed event IDs are reported as
    duplicates and change nothing.
    """
    try:
        raw_events = _load_event_file(event_file)
    except ValueError as exc:
        console.print(f"[red]Cannot read {event_file}: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc

    try:
        outcomes = asyncio.run(
            _replay_events(_resolve_database_url(), raw_events, reject_stale_events=not allow_stale)
        )
    except (ValidationError, MalformedEventError) as exc:
        console.print(f"[red]Malformed Stripe event: {escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc

    if _json_output:
        _emit_json([o.model_dump(mode="json") for o in outcomes])
        return
    for outcome in outcomes:
        display_outcome(console, outcome)
