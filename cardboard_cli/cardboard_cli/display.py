"""Rich output formatting for the Cardboard CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that JSON output on *stdout* stays clean.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from cardboard_core.billing.limits import TIER_LIMITS, ResourceKind, format_bytes
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from cardboard_core.billing.counters import ReconcileResult
    from cardboard_core.billing.entitlement import Usage
    from cardboard_core.billing.maintenance import ReconcileSummary
    from cardboard_core.state.tables import TenantAccountTable
    from rich.console import Console


def _fmt_limit(kind: ResourceKind, value: int | None) -> str:
    if value is None:
        return "[green]unlimited[/green]"
    if kind is ResourceKind.STORAGE:
        return format_bytes(value)
    return str(value)


def _diff_cell(stored: int, live: int, *, as_bytes: bool = False) -> str:
    render = format_bytes if as_bytes else str
    if stored == live:
        return render(live)
    return f"[yellow]{render(stored)} -> {render(live)}[/yellow]"


def display_tier_limits(console: Console) -> None:
    """Render the tier limit table."""
    table = Table(title="Tier limits")
    table.add_column("Tier", style="bold")
    for kind in ResourceKind:
        table.add_column(kind.value.capitalize())
    for tier, limits in TIER_LIMITS.items():
        table.add_row(tier.value, *(_fmt_limit(kind, limits[kind]) for kind in ResourceKind))
    console.print(table)


def display_account_usage(console: Console, account: TenantAccountTable, live: Usage) -> None:
    """Render stored counters next to the live recount for one tenant.

    Parameters
    ----------
    console:
        Rich console to write to.
    account:
        The tenant account row holding the running counters.
    live:
        Usage recomputed from boards and cards.
    """
    header = [
        f"[bold]Tenant:[/bold]   {account.tenant_id}",
        f"[bold]Email:[/bold]    {account.email or '-'}",
        f"[bold]Tier:[/bold]     {account.subscription_tier}",
        f"[bold]Status:[/bold]   {account.subscription_status or '-'}",
        f"[bold]Flagged:[/bold]  {'yes' if account.storage_flagged else 'no'}",
    ]
    console.print(Panel("\n".join(header), title="Account", border_style="blue"))

    table = Table(title="Usage (stored vs live)")
    table.add_column("Counter", style="bold")
    table.add_column("Stored", justify="right")
    table.add_column("Live", justify="right")
    table.add_row("boards", str(account.board_count), _diff_cell(account.board_count, live.boards))
    table.add_row("cards", str(account.card_count), _diff_cell(account.card_count, live.cards))
    table.add_row(
        "confirmed storage",
        format_bytes(account.confirmed_storage_bytes),
        _diff_cell(account.confirmed_storage_bytes, live.storage_bytes, as_bytes=True),
    )
    table.add_row("pending storage", format_bytes(account.pending_storage_bytes), "-")
    console.print(table)


def display_reconcile_result(console: Console, result: ReconcileResult) -> None:
    if not result.drifted:
        console.print(f"[green]Counters for {result.tenant_id} were already accurate.[/green]")
        return
    before, after = result.before, result.after
    console.print(f"[yellow]Corrected drift for {result.tenant_id}:[/yellow]")
    console.print(f"  boards   {before.boards} -> {after.boards}")
    console.print(f"  cards    {before.cards} -> {after.cards}")
    console.print(f"  storage  {format_bytes(before.storage_bytes)} -> {format_bytes(after.storage_bytes)}")


def display_reconcile_summary(console: Console, summary: ReconcileSummary) -> None:
    colour = "red" if summary.failed else "green"
    console.print(
        f"[{colour}]Reconciled {summary.reconciled}/{summary.total} accounts "
        f"({summary.drifted} drifted, {len(summary.failed)} failed)[/{colour}]"
    )
    for tenant_id in summary.failed:
        console.print(f"  [red]failed:[/red] {tenant_id}")
