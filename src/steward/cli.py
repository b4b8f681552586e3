"""
CLI entry point for Steward.

This module provides the Typer-based command-line interface for Steward,
mainly for the humans on the approval side: inspecting policies, listing
and resolving proposals, and reading the audit trail.

Commands:
    evaluate            Evaluate an action request against a policy file
    policy show         Show the effective policy for a tenant
    proposals list      List proposals
    proposals show      Show one proposal
    proposals approve   Approve a proposal and run it
    proposals reject    Reject a proposal
    proposals expire    Expire stale pending proposals
    audit               Show a tenant's audit trail
    doctor              Check configuration, database and policy source

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to the
    governor, store and report modules. Approving a proposal needs the tools
    it will run, so `proposals approve` takes a registry factory given as
    `module:callable`.
"""

import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Any, Optional

import httpx
import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from steward import __version__
from steward.config import StewardConfig, build_policy_source, load_config
from steward.errors import ConfigError, StewardError
from steward.governor import Governor
from steward.policy.guardrail import evaluate as evaluate_request
from steward.policy.store import HttpPolicySource, PolicyStore, YamlPolicySource
from steward.proposals.manager import format_for_display
from steward.report import (
    print_audit_trail,
    print_decision,
    print_proposal_detail,
    print_proposals,
    summarize_records,
)
from steward.schema import (
    ActionRequest,
    ActionResponse,
    AuditKind,
    Policy,
    ProposalStatus,
    ResponseStatus,
    format_number,
    load_policy,
)
from steward.store import StewardDB
from steward.tools.registry import ToolRegistry

app = typer.Typer(
    name="steward",
    help="Govern agent business actions: guardrails, proposals and audit.",
    add_completion=False,
    no_args_is_help=True,
)

policy_app = typer.Typer(name="policy", help="Inspect tenant policies.", no_args_is_help=True)
proposals_app = typer.Typer(name="proposals", help="Review and resolve proposals.", no_args_is_help=True)
app.add_typer(policy_app, name="policy")
app.add_typer(proposals_app, name="proposals")

# Rich console for formatted output; logs go to stderr
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]steward[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to steward.yaml. Defaults to ./steward.yaml when present.",
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Logging level (overrides config)."),
    ] = None,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    Steward - Governance layer for agent-initiated business actions.
    """
    ctx.obj = {"config_path": config_path, "log_level": log_level}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _config(ctx: typer.Context) -> StewardConfig:
    """Load configuration for a command, exiting with code 1 if invalid."""
    obj = ctx.obj or {}
    try:
        config = load_config(obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        if e.suggestion:
            console.print(f"[dim]Suggestion: {e.suggestion}[/dim]")
        raise typer.Exit(code=1)
    _configure_logging(obj.get("log_level") or config.log_level)
    return config


def _fail(error: StewardError) -> None:
    console.print(f"[red]{error.message}[/red]")
    if error.suggestion:
        console.print(f"[dim]Suggestion: {error.suggestion}[/dim]")
    raise typer.Exit(code=1)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def load_registry(spec: str) -> ToolRegistry:
    """
    Build a ToolRegistry from a "module:callable" factory.

    Raises:
        typer.BadParameter: If the factory cannot be found or returns
            something other than a ToolRegistry
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"expected module:callable, got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"cannot import {module_name}: {e}") from e
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise typer.BadParameter(f"{spec} is not a callable")
    registry = factory()
    if not isinstance(registry, ToolRegistry):
        raise typer.BadParameter(f"{spec} returned {type(registry).__name__}, expected ToolRegistry")
    return registry


# =============================================================================
# evaluate
# =============================================================================


@app.command()
def evaluate(
    policy_path: Annotated[
        Path,
        typer.Argument(
            help="Path to the policy YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
    request_json: Annotated[
        str,
        typer.Option("--request", "-r", help="Action request as a JSON object."),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Evaluate an action request against a policy file.

    Example:
        $ steward evaluate policy.yaml --request '{"authority": "SEND_INVOICE", "amount": 500}'
    """
    try:
        policy = load_policy(policy_path)
    except (ValidationError, OSError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading policy: {e}[/red]")
        raise typer.Exit(code=1)

    try:
        request = ActionRequest.model_validate_json(request_json)
    except ValidationError as e:
        console.print(f"[red]Invalid request: {e}[/red]")
        raise typer.Exit(code=1)

    decision = evaluate_request(policy, request)
    if json_output:
        _print_json(decision.model_dump(mode="json"))
    else:
        print_decision(decision, request, console=console)


# =============================================================================
# policy
# =============================================================================


def _policy_dict(policy: Policy) -> dict[str, Any]:
    return {
        "mode": policy.mode.value,
        "authorities": sorted(policy.authorities),
        "approval_required_over_amount": policy.approval_required_over_amount,
        "restricted_fields": {t: sorted(f) for t, f in sorted(policy.restricted_fields.items())},
        "email_domain_trustlist": sorted(policy.email_domain_trustlist),
        "auto_safe_actions": sorted(policy.auto_safe_actions),
    }


@policy_app.command("show")
def policy_show(
    ctx: typer.Context,
    tenant_id: Annotated[str, typer.Argument(help="Tenant (studio) id.")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Show the effective policy for a tenant.

    Falls back to the safe default exactly as an agent session would.
    """
    config = _config(ctx)
    store = PolicyStore(build_policy_source(config), timeout_seconds=config.policy_timeout_seconds)
    policy = asyncio.run(store.load(tenant_id))
    data = _policy_dict(policy)

    if json_output:
        _print_json(data)
        return

    table = Table(title=f"Policy for {tenant_id}", show_header=False)
    table.add_column("Setting", style="dim")
    table.add_column("Value")
    table.add_row("Mode", f"[bold]{data['mode']}[/bold]")
    table.add_row("Authorities", ", ".join(data["authorities"]) or "—")
    table.add_row("Auto limit", format_number(policy.approval_required_over_amount))
    table.add_row(
        "Restricted fields",
        "\n".join(f"{t}: {', '.join(f)}" for t, f in data["restricted_fields"].items()) or "—",
    )
    table.add_row("Trusted domains", ", ".join(data["email_domain_trustlist"]) or "—")
    table.add_row("Auto-safe actions", ", ".join(data["auto_safe_actions"]) or "—")
    console.print(table)


# =============================================================================
# proposals
# =============================================================================


@proposals_app.command("list")
def proposals_list(
    ctx: typer.Context,
    tenant_id: Annotated[
        Optional[str],
        typer.Option("--tenant", "-t", help="Only this tenant's proposals."),
    ] = None,
    status: Annotated[
        Optional[ProposalStatus],
        typer.Option("--status", "-s", help="Only proposals in this status."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of proposals to show."),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    List proposals, newest first.

    Example:
        $ steward proposals list --tenant studio-1 --status pending
    """
    config = _config(ctx)
    try:
        with StewardDB(config.db_path) as db:
            proposals = db.list_proposals(tenant_id, status, limit)
    except StewardError as e:
        _fail(e)

    if json_output:
        _print_json([p.model_dump(mode="json") for p in proposals])
    else:
        print_proposals(proposals, console=console)


@proposals_app.command("show")
def proposals_show(
    ctx: typer.Context,
    proposal_id: Annotated[str, typer.Argument(help="Proposal id.")],
    tenant_id: Annotated[str, typer.Option("--tenant", "-t", help="Tenant (studio) id.")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """Show one proposal with its arguments."""
    config = _config(ctx)
    try:
        with StewardDB(config.db_path) as db:
            stored = db.get_proposal(tenant_id, proposal_id)
    except StewardError as e:
        _fail(e)

    if stored is None:
        console.print(f"[red]Proposal not found: {proposal_id}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        _print_json(stored.model_dump(mode="json"))
    else:
        print_proposal_detail(stored, console=console)


def _display_response(response: ActionResponse) -> None:
    if response.status is ResponseStatus.SUCCESS:
        console.print(f"[green]✓[/green] {response.message}")
        if response.data is not None:
            console.print(json.dumps(response.data, indent=2, default=str), markup=False)
    elif response.status is ResponseStatus.APPROVAL_REQUIRED:
        console.print(f"[cyan]?[/cyan] {response.message}")
        console.print(format_for_display(response.proposals), markup=False)
    elif response.status is ResponseStatus.DENIED:
        console.print(f"[yellow]⊘[/yellow] {response.message}")
    else:
        console.print(f"[red]✗[/red] {response.message}")


async def _resolve(
    config: StewardConfig,
    registry: ToolRegistry,
    tenant_id: str,
    actor_id: str,
    proposal_id: str,
    approve: bool,
    note: str | None,
) -> ActionResponse:
    async with Governor.from_config(config, registry) as governor:
        session = await governor.open_session(tenant_id, actor_id)
        if approve:
            return await governor.approve(session, proposal_id)
        return await governor.reject(session, proposal_id, note)


@proposals_app.command("approve")
def proposals_approve(
    ctx: typer.Context,
    proposal_id: Annotated[str, typer.Argument(help="Proposal id.")],
    tenant_id: Annotated[str, typer.Option("--tenant", "-t", help="Tenant (studio) id.")],
    actor_id: Annotated[str, typer.Option("--actor", "-a", help="Who is approving.")],
    tools: Annotated[
        str,
        typer.Option("--tools", help="Registry factory as module:callable."),
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Approve a pending proposal and run it.

    The tenant's current policy is checked again first. Exit code is 0 only
    when the action ran successfully.

    Example:
        $ steward proposals approve 3f2a... --tenant studio-1 --actor owner --tools myapp.tools:build_registry
    """
    config = _config(ctx)
    registry = load_registry(tools)
    try:
        response = asyncio.run(
            _resolve(config, registry, tenant_id, actor_id, proposal_id, True, None)
        )
    except StewardError as e:
        _fail(e)

    if json_output:
        _print_json(response.model_dump(mode="json"))
    else:
        _display_response(response)
    raise typer.Exit(code=0 if response.ok else 1)


@proposals_app.command("reject")
def proposals_reject(
    ctx: typer.Context,
    proposal_id: Annotated[str, typer.Argument(help="Proposal id.")],
    tenant_id: Annotated[str, typer.Option("--tenant", "-t", help="Tenant (studio) id.")],
    actor_id: Annotated[str, typer.Option("--actor", "-a", help="Who is rejecting.")],
    note: Annotated[
        Optional[str],
        typer.Option("--note", help="Reason recorded with the rejection."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """Reject a pending proposal."""
    config = _config(ctx)
    try:
        response = asyncio.run(
            _resolve(config, ToolRegistry(), tenant_id, actor_id, proposal_id, False, note)
        )
    except StewardError as e:
        _fail(e)

    if json_output:
        _print_json(response.model_dump(mode="json"))
    else:
        _display_response(response)


@proposals_app.command("expire")
def proposals_expire(
    ctx: typer.Context,
    tenant_id: Annotated[
        Optional[str],
        typer.Option("--tenant", "-t", help="Only this tenant (default: all)."),
    ] = None,
) -> None:
    """Expire every pending proposal past its expiry time."""
    config = _config(ctx)
    try:
        with StewardDB(config.db_path) as db:
            count = db.expire_proposals(tenant_id)
    except StewardError as e:
        _fail(e)
    console.print(f"Expired {count} proposal(s).")


# =============================================================================
# audit
# =============================================================================


@app.command()
def audit(
    ctx: typer.Context,
    tenant_id: Annotated[str, typer.Argument(help="Tenant (studio) id.")],
    actor_id: Annotated[
        Optional[str],
        typer.Option("--actor", "-a", help="Only this actor's records."),
    ] = None,
    kind: Annotated[
        Optional[AuditKind],
        typer.Option("--kind", "-k", help="Only records of this kind."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Show record payloads."),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Show a tenant's audit trail in write order.

    Example:
        $ steward audit studio-1 --kind denial
    """
    config = _config(ctx)
    try:
        with StewardDB(config.db_path) as db:
            records = db.list_audit(tenant_id, actor_id=actor_id, kind=kind)
    except StewardError as e:
        _fail(e)

    if json_output:
        _print_json({
            "tenant_id": tenant_id,
            "summary": summarize_records(records),
            "records": [r.model_dump(mode="json") for r in records],
        })
    else:
        print_audit_trail(records, tenant_id, console=console, verbose=verbose)


# =============================================================================
# doctor
# =============================================================================


def _check_policy_source(config: StewardConfig) -> dict[str, Any]:
    source = build_policy_source(config)
    if isinstance(source, HttpPolicySource):
        try:
            with httpx.Client(timeout=config.policy_timeout_seconds) as client:
                response = client.get(source.base_url)
            ok = response.status_code < 500
            message = f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            ok = False
            message = f"Unreachable: {e}"
        return {"name": "Policy source", "ok": ok, "value": source.base_url, "message": message}

    if isinstance(source, YamlPolicySource):
        directory = source.directory
        if directory.is_dir():
            count = len(list(directory.glob("*.yaml")))
            return {
                "name": "Policy source",
                "ok": True,
                "value": str(directory),
                "message": f"{count} tenant policy file(s)",
            }
        return {
            "name": "Policy source",
            "ok": False,
            "value": str(directory),
            "message": "Directory not found",
        }

    return {
        "name": "Policy source",
        "ok": True,
        "value": "none",
        "message": "No policy source configured; every tenant gets the safe default",
    }


@app.command()
def doctor(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Check system environment and configuration.

    Verifies:
    - Python version (3.11+)
    - Configuration file validity
    - Database accessibility and schema version
    - Policy source availability

    Example:
        $ steward doctor
    """
    checks = []

    py_version = sys.version_info
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": f"{py_version.major}.{py_version.minor}.{py_version.micro}",
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })

    obj = ctx.obj or {}
    config: StewardConfig | None = None
    try:
        config = load_config(obj.get("config_path"))
        checks.append({"name": "Configuration", "ok": True, "value": "loaded", "message": "OK"})
    except ConfigError as e:
        checks.append({"name": "Configuration", "ok": False, "value": e.path, "message": e.message})

    if config is not None:
        try:
            with StewardDB(config.db_path) as db:
                version = db.schema_version()
            checks.append({
                "name": "Database",
                "ok": True,
                "value": str(config.db_path),
                "message": f"Schema version {version}",
            })
        except StewardError as e:
            checks.append({
                "name": "Database",
                "ok": False,
                "value": str(config.db_path),
                "message": e.message,
            })
        checks.append(_check_policy_source(config))

    all_ok = all(check["ok"] for check in checks)

    if json_output:
        _print_json({"ok": all_ok, "version": __version__, "checks": checks})
    else:
        console.print(f"[bold]Steward Doctor[/bold] v{__version__}")
        console.print()
        for check in checks:
            icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
            if check["ok"]:
                console.print(f"{icon} {check['name']}: [dim]{check['value']}[/dim] - {check['message']}")
            else:
                console.print(f"{icon} {check['name']}: [dim]{check['value']}[/dim]")
                console.print(f"    [red]{check['message']}[/red]")
        console.print()
        if all_ok:
            console.print("[green]All checks passed![/green]")
        else:
            console.print("[yellow]Some checks failed. See above for details.[/yellow]")

    raise typer.Exit(code=0 if all_ok else 1)


if __name__ == "__main__":
    app()
