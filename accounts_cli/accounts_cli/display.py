"""Rich output formatting for the accounts CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON written to *stdout* is never polluted with
human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from billing_engine.billing.eligibility import DeletionDecision
    from billing_engine.billing.reconciler import ReconcileOutcome
    from billing_engine.state.tables import BillingCustomerTable, EntitlementTable, StripeEventTable


_OUTCOME_COLOURS: dict[str, str] = {
    "processed": "green",
    "duplicate": "dim",
    "ignored": "dim",
    "skipped": "yellow",
    "stale": "yellow",
}


def display_ledger(console: Console, events: Sequence[StripeEventTable]) -> None:
    """Render the most recent processed Stripe events.

    Parameters
    ----------
    console:
        Rich console to write to.
    events:
        Ledger rows, newest first.
    """
    if not events:
        console.print("[dim]No processed events.[/dim]")
        return

    table = Table(title=f"Processed Stripe events ({len(events)})", expand=False)
    table.add_column("Event ID", style="bold")
    table.add_column("Type")
    table.add_column("Received")

    for row in events:
        table.add_row(row.event_id, row.event_type, row.received_at.isoformat() if row.received_at else "-")

    console.print(table)


def display_billing_state(
    console: Console,
    user_id: str,
    entitlement: EntitlementTable | None,
    customer: BillingCustomerTable | None,
    decision: DeletionDecision,
) -> None:
    """Render a user's stored billing rows and the deletion decision."""
    lines = [
        f"[bold]User:[/bold] {user_id}",
        f"[bold]Stripe customer:[/bold] {customer.stripe_customer_id if customer else '-'}",
    ]
    if entitlement is None:
        lines.append("[bold]Entitlement:[/bold] [dim]none[/dim]")
    else:
        period_end = entitlement.current_period_end.isoformat() if entitlement.current_period_end else "-"
        lines.extend(
            [
                f"[bold]Status:[/bold] {entitlement.stripe_status}",
                f"[bold]Subscription:[/bold] {entitlement.stripe_subscription_id or '-'}",
                f"[bold]Period end:[/bold] {period_end}",
            ]
        )

    if decision.eligible:
        lines.append("[bold]Deletion:[/bold] [green]eligible[/green]")
    else:
        reason = decision.reason.value if decision.reason else "unknown"
        lines.append(f"[bold]Deletion:[/bold] [red]blocked ({reason})[/red]")
        lines.append(f"[dim]{decision.message}[/dim]")

    console.print(Panel("\n".join(lines), title="Billing state", border_style="blue"))


def display_outcome(console: Console, outcome: ReconcileOutcome) -> None:
    """Render the result of applying one event."""
    colour = _OUTCOME_COLOURS.get(outcome.status.value, "white")
    console.print(
        f"[{colour}]{outcome.status.value}[/{colour}] {outcome.event_id} ({outcome.event_type})"
        + (f" user={outcome.user_id}" if outcome.user_id else "")
        + (f" [dim]{outcome.detail}[/dim]" if outcome.detail else "")
    )
