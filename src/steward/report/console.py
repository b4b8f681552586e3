"""
Console report generator for Steward.

Renders audit trails, proposals and guardrail decisions for the terminal
using Rich.

Design Principles:
    - Human-readable first: Optimize for quick scanning
    - Status at a glance: Icons and colors per outcome
    - Progressive detail: Summary first, payloads with --verbose
"""

import json
from collections import Counter
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from steward.schema import (
    ActionRequest,
    AuditKind,
    AuditRecord,
    DecisionKind,
    GuardrailDecision,
    ProposalStatus,
    StoredProposal,
    format_number,
)
from steward.store import StewardDB

# Status icons
ICON_SUCCESS = "[green]✓[/green]"
ICON_ERROR = "[red]✗[/red]"
ICON_DENIED = "[yellow]⊘[/yellow]"
ICON_PENDING = "[dim]○[/dim]"
ICON_PROPOSAL = "[cyan]?[/cyan]"

KIND_ICONS = {
    AuditKind.EXECUTION: ICON_SUCCESS,
    AuditKind.FAILURE: ICON_ERROR,
    AuditKind.DENIAL: ICON_DENIED,
    AuditKind.PROPOSAL: ICON_PROPOSAL,
}

STATUS_STYLES = {
    ProposalStatus.PENDING: "yellow",
    ProposalStatus.APPROVED: "cyan",
    ProposalStatus.EXECUTED: "green",
    ProposalStatus.FAILED: "red",
    ProposalStatus.REJECTED: "magenta",
    ProposalStatus.EXPIRED: "dim",
}


def _truncate(s: str, max_len: int) -> str:
    """Truncate string with ellipsis."""
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


# =============================================================================
# Audit trail
# =============================================================================


def generate_audit_report(
    tenant_id: str,
    db_path: str | Path = "steward.db",
    console: Console | None = None,
    actor_id: str | None = None,
    kind: AuditKind | None = None,
    verbose: bool = False,
) -> None:
    """
    Load a tenant's audit trail from the database and print it.

    Args:
        tenant_id: Tenant to report on
        db_path: Path to the SQLite database
        console: Rich Console instance (creates one if not provided)
        actor_id: Only this actor's records
        kind: Only records of this kind
        verbose: Show payloads
    """
    with StewardDB(db_path) as db:
        records = db.list_audit(tenant_id, actor_id=actor_id, kind=kind)
    print_audit_trail(records, tenant_id, console=console, verbose=verbose)


def print_audit_trail(
    records: Sequence[AuditRecord],
    tenant_id: str,
    console: Console | None = None,
    verbose: bool = False,
) -> None:
    """Print an audit trail as a header, timeline and summary."""
    if console is None:
        console = Console()

    header = Text()
    header.append(" Audit ", style="bold")
    header.append(tenant_id, style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(f"{len(records)} record(s)", style="bold")
    console.print(Panel(header, expand=False))
    console.print()

    if not records:
        console.print("[dim]No audit records.[/dim]")
        return

    console.print("[bold]Timeline[/bold]")
    console.print()

    table = Table(show_header=True, header_style="bold", show_lines=verbose, expand=True)
    table.add_column("#", style="dim", width=4, justify="right")
    table.add_column("Kind", width=6, justify="center")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Time", style="dim")
    table.add_column("Details", overflow="fold")

    for index, record in enumerate(records, start=1):
        table.add_row(
            str(index),
            KIND_ICONS.get(record.kind, ICON_PENDING),
            record.action,
            record.actor_id,
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            _format_audit_details(record, verbose),
        )

    console.print(table)
    console.print()
    _print_audit_summary(console, records)


def _format_audit_details(record: AuditRecord, verbose: bool) -> str:
    payload = record.payload
    parts = []

    if record.kind is AuditKind.DENIAL:
        parts.append(f"[yellow]{payload.get('reason', '')}[/yellow]")
        if payload.get("source"):
            parts.append(f"[dim]by {payload['source']}[/dim]")
    elif record.kind is AuditKind.FAILURE:
        parts.append(f"[red]{_truncate(str(payload.get('error', '')), 80)}[/red]")
    elif record.kind is AuditKind.PROPOSAL:
        proposal = payload.get("proposal") or {}
        parts.append(proposal.get("reason", ""))
        if proposal.get("id"):
            parts.append(f"[dim]proposal {proposal['id']}[/dim]")
    elif payload.get("result") is not None:
        parts.append(_truncate(str(payload["result"]), 60))

    if record.amount is not None:
        parts.append(f"[dim]amount:[/dim] {format_number(record.amount)}")
    if record.target_table:
        parts.append(f"[dim]table:[/dim] {record.target_table}")
    if verbose:
        parts.append(f"[dim]{_truncate(json.dumps(payload, default=str), 300)}[/dim]")

    return "\n".join(p for p in parts if p)


def _print_audit_summary(console: Console, records: Sequence[AuditRecord]) -> None:
    console.print("[bold]Summary[/bold]")
    console.print()

    counts = Counter(record.kind for record in records)
    executed_amount = sum(
        record.amount or 0 for record in records if record.kind is AuditKind.EXECUTION
    )

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column("Metric", style="dim")
    stats_table.add_column("Value")

    stats_table.add_row("Total Records", str(len(records)))
    stats_table.add_row(
        "Executed",
        f"[green]{counts[AuditKind.EXECUTION]}[/green]" if counts[AuditKind.EXECUTION] else "0",
    )
    stats_table.add_row(
        "Proposed",
        f"[cyan]{counts[AuditKind.PROPOSAL]}[/cyan]" if counts[AuditKind.PROPOSAL] else "0",
    )
    stats_table.add_row(
        "Denied",
        f"[yellow]{counts[AuditKind.DENIAL]}[/yellow]" if counts[AuditKind.DENIAL] else "0",
    )
    stats_table.add_row(
        "Failed",
        f"[red]{counts[AuditKind.FAILURE]}[/red]" if counts[AuditKind.FAILURE] else "0",
    )
    if executed_amount:
        stats_table.add_row("Amount Executed", format_number(executed_amount))

    console.print(stats_table)


# =============================================================================
# Proposals
# =============================================================================


def print_proposals(
    proposals: Sequence[StoredProposal],
    console: Console | None = None,
    title: str = "Proposals",
) -> None:
    """Print proposals as a table."""
    if console is None:
        console = Console()

    if not proposals:
        console.print("No pending proposals.")
        return

    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Tool")
    table.add_column("Risk")
    table.add_column("Summary", overflow="fold")
    table.add_column("Reason", overflow="fold")
    table.add_column("Expires", style="dim")

    for stored in proposals:
        proposal = stored.proposal
        style = STATUS_STYLES.get(stored.status, "")
        table.add_row(
            proposal.id,
            f"[{style}]{stored.status.value}[/{style}]" if style else stored.status.value,
            proposal.tool,
            proposal.risk.value,
            proposal.summary,
            proposal.reason,
            proposal.expires_at.strftime("%Y-%m-%d %H:%M") if proposal.expires_at else "—",
        )

    console.print(table)


def print_proposal_detail(stored: StoredProposal, console: Console | None = None) -> None:
    """Print one proposal with its arguments and resolution."""
    if console is None:
        console = Console()

    proposal = stored.proposal
    style = STATUS_STYLES.get(stored.status, "bold")
    header = Text()
    header.append(" Proposal ", style="bold")
    header.append(proposal.id, style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(stored.status.value.upper(), style=f"bold {style}")
    console.print(Panel(header, expand=False))

    console.print(f"  [dim]Tool:[/dim]     {proposal.tool}")
    console.print(f"  [dim]Summary:[/dim]  {proposal.summary}")
    console.print(f"  [dim]Reason:[/dim]   {proposal.reason}")
    console.print(f"  [dim]Risk:[/dim]     {proposal.risk.value}  [dim]ETA:[/dim] {proposal.estimated_duration}")
    if proposal.preview:
        console.print(f"  [dim]Preview:[/dim]  {proposal.preview}")
    console.print(f"  [dim]Tenant:[/dim]   {proposal.tenant_id}  [dim]Actor:[/dim] {proposal.actor_id}")
    console.print(f"  [dim]Created:[/dim]  {proposal.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if proposal.expires_at:
        console.print(f"  [dim]Expires:[/dim]  {proposal.expires_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if stored.resolved_at:
        console.print(
            f"  [dim]Resolved:[/dim] {stored.resolved_at.strftime('%Y-%m-%d %H:%M:%S')}"
            f" by {stored.resolved_by or 'system'}"
        )
    if stored.note:
        console.print(f"  [dim]Note:[/dim]     {stored.note}")
    console.print()
    console.print("[bold]Arguments[/bold]")
    console.print(json.dumps(proposal.args, indent=2, sort_keys=True, default=str), markup=False)


# =============================================================================
# Decisions
# =============================================================================


def print_decision(
    decision: GuardrailDecision,
    request: ActionRequest,
    console: Console | None = None,
) -> None:
    """Print a guardrail decision for a request."""
    if console is None:
        console = Console()

    if decision.kind is DecisionKind.ALLOW:
        icon, style = ICON_SUCCESS, "green"
    elif decision.kind is DecisionKind.NEEDS_APPROVAL:
        icon, style = ICON_PROPOSAL, "yellow"
    else:
        icon, style = ICON_DENIED, "red"

    header = Text()
    header.append(f" {request.authority} ", style="bold")
    header.append("│ ", style="dim")
    header.append(decision.kind.value.upper(), style=f"bold {style}")
    console.print(Panel(header, expand=False))
    console.print(f"  {icon} [dim]rule:[/dim] {decision.rule or '—'}")
    if decision.reason:
        console.print(f"  [dim]reason:[/dim] {decision.reason}")


def summarize_records(records: Sequence[AuditRecord]) -> dict[str, Any]:
    """Counts per audit kind, for machine-readable output."""
    counts = Counter(record.kind.value for record in records)
    return {kind.value: counts.get(kind.value, 0) for kind in AuditKind}
