"""CLI for Wallet Autopilot - run the agent and manage delegations from the terminal."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from wallet_autopilot.errors import AutopilotError

app = typer.Typer(
    name="wallet-autopilot",
    help="Autonomous approval hygiene for wallets that delegate to this agent.",
    no_args_is_help=True,
)
console = Console()

_base_path: Path | None = None


def _version_callback(value: bool):
    if value:
        from wallet_autopilot import __version__
        console.print(f"wallet-autopilot {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    directory: Optional[Path] = typer.Option(
        None,
        "--dir",
        "-d",
        help="Directory containing .wallet-autopilot (defaults to the current directory)",
        envvar="WALLET_AUTOPILOT_HOME",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Autonomous approval hygiene for wallets that delegate to this agent."""
    global _base_path
    _base_path = directory
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=verbose)],
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


def _fail(exc: Exception) -> None:
    if isinstance(exc, AutopilotError):
        console.print(f"[red]{exc.message}[/red] [dim]({exc.code})[/dim]")
    else:
        console.print(f"[red]{exc}[/red]")
    raise typer.Exit(1)


async def _with_autopilot(fn):
    """Load the agent, run ``await fn(autopilot)``, always shut down."""
    from wallet_autopilot.core.autopilot import Autopilot

    autopilot = await Autopilot.load(_base_path)
    try:
        return await fn(autopilot)
    finally:
        await autopilot.shutdown()


def _call(fn):
    try:
        return _run(_with_autopilot(fn))
    except (AutopilotError, FileNotFoundError) as exc:
        _fail(exc)


# ------------------------------------------------------------------
# init / serve / run-once
# ------------------------------------------------------------------


@app.command()
def init(
    agent_address: str = typer.Option("", "--agent-address", "-a", help="Delegate address (defaults to the local key)"),
    chain: str = typer.Option("monad-testnet", "--chain", "-c", help="Chain name"),
    indexer_url: str = typer.Option(None, "--indexer-url", help="Envio GraphQL endpoint"),
    relay_url: str = typer.Option(None, "--relay-url", help="Delegation relay endpoint"),
):
    """Create .wallet-autopilot/config.yaml in the current directory."""
    from wallet_autopilot.chain.chains import list_chain_names
    from wallet_autopilot.config import init_config

    if chain not in list_chain_names():
        console.print(f"[red]Unknown chain '{chain}'.[/red] Available: {', '.join(list_chain_names())}")
        raise typer.Exit(1)

    overrides: dict = {"agent": {"address": agent_address}, "chain": {"name": chain}}
    if indexer_url:
        overrides["indexer"] = {"url": indexer_url}
    if relay_url:
        overrides["authority"] = {"relay_url": relay_url}

    path = init_config(_base_path, **overrides)
    console.print(Panel(
        f"Config: [cyan]{path}[/cyan]\n\n"
        f"[dim]Next: 'wallet-autopilot key create' to generate the agent key,\n"
        f"then 'wallet-autopilot serve'.[/dim]",
        title="Wallet Autopilot initialized",
    ))


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (defaults to api.host)"),
    port: int = typer.Option(None, "--port", "-p", help="Port (defaults to api.port)"),
    no_monitor: bool = typer.Option(False, "--no-monitor", help="Serve the API without the monitor loop"),
):
    """Run the HTTP API and the periodic wallet monitor."""
    from wallet_autopilot.api.server import run_server
    from wallet_autopilot.config import get_root_dir, load_config

    config_path = get_root_dir(_base_path, create=False) / "config.yaml"
    if not config_path.exists():
        console.print("[red]No configuration found.[/red] Run 'wallet-autopilot init' first.")
        raise typer.Exit(1)
    api = load_config(config_path).api
    host = host or api.host
    port = port or api.port

    console.print(f"[bold green]Agent service on http://{host}:{port}[/bold green]")
    run_server(host=host, port=port, base_path=_base_path, start_monitor=not no_monitor)


@app.command("run-once")
def run_once():
    """Run a single monitor cycle now and show what it did."""
    report = _call(lambda autopilot: autopilot.run_once())
    if report is None:
        console.print("[yellow]A cycle is already running.[/yellow]")
        return

    table = Table(title=f"Cycle {report.started_at:%Y-%m-%d %H:%M:%S}")
    table.add_column("Delegation", style="cyan")
    table.add_column("Wallet")
    table.add_column("Approvals", justify="right")
    table.add_column("Outcomes")

    for d in report.delegations:
        if d.error:
            outcome = f"[red]{d.error}[/red]"
        elif d.outcomes:
            outcome = "\n".join(f"{o.status.value}: {o.action.reason} {o.action.spender[:10]}..." for o in d.outcomes)
        else:
            outcome = "[dim]nothing to do[/dim]"
        table.add_row(d.delegation_id, d.delegator, str(d.approvals), outcome)

    console.print(table)
    console.print(f"Submitted: {report.submitted}  Settled: {report.settled}")


# ------------------------------------------------------------------
# Wallet reads
# ------------------------------------------------------------------


@app.command()
def approvals(
    address: str = typer.Argument(help="Wallet address"),
    risky: bool = typer.Option(False, "--risky", help="Only approvals flagged risky"),
):
    """List a wallet's active token approvals."""
    from wallet_autopilot.config import MAX_UINT256

    rows = _call(lambda autopilot: autopilot.approvals(address, risky_only=risky))
    if not rows:
        console.print("[dim]No active approvals.[/dim]")
        return

    table = Table(title=f"Approvals of {address}")
    table.add_column("Token", style="cyan")
    table.add_column("Spender")
    table.add_column("Amount", justify="right")
    table.add_column("Risky")
    table.add_column("Approved")
    for a in rows:
        amount = "unlimited" if a.amount == MAX_UINT256 else str(a.amount)
        table.add_row(
            a.token,
            a.spender,
            amount,
            "[red]yes[/red]" if a.is_risky else "no",
            f"{a.approved_at:%Y-%m-%d}" if a.approved_at else "-",
        )
    console.print(table)


@app.command()
def health(address: str = typer.Argument(help="Wallet address")):
    """Show a wallet's approval health score."""
    result = _call(lambda autopilot: autopilot.wallet_health(address))
    if not result.indexed:
        console.print(f"[yellow]{address} has not been indexed yet.[/yellow]")
        raise typer.Exit(1)

    color = "green" if result.score >= 80 else "yellow" if result.score >= 50 else "red"
    console.print(Panel(
        f"Score: [bold {color}]{result.score}[/bold {color}] / 100\n\n"
        f"Active approvals: {result.total_approvals}\n"
        f"Risky approvals: {result.risky_approvals}\n"
        f"Unlimited approvals: {result.unlimited_approvals}\n"
        f"Spam tokens: {result.spam_tokens}\n"
        f"Dust tokens: {result.dust_token_count}",
        title=f"Wallet health - {result.wallet}",
    ))


@app.command()
def actions(
    delegation: str = typer.Option(None, "--delegation", help="Filter by delegation id"),
    status: str = typer.Option(None, "--status", "-s", help="pending, confirmed, failed, abandoned, superseded"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """Show the execution audit trail."""
    records = _call(lambda autopilot: autopilot.list_actions(delegation, status, limit))
    if not records:
        console.print("[dim]No execution records.[/dim]")
        return

    styles = {"confirmed": "green", "pending": "yellow", "superseded": "dim"}
    table = Table(title="Executions")
    table.add_column("ID", style="cyan")
    table.add_column("Delegation")
    table.add_column("Reason")
    table.add_column("Token / Spender")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Tx / Error")
    for r in records:
        style = styles.get(r.status.value, "red")
        table.add_row(
            r.id,
            r.delegation_id,
            r.reason,
            f"{r.token}\n{r.spender}",
            f"[{style}]{r.status.value}[/{style}]",
            str(r.attempt_count),
            r.tx_ref or r.last_error or "",
        )
    console.print(table)


# ------------------------------------------------------------------
# delegation
# ------------------------------------------------------------------

delegation_app = typer.Typer(
    name="delegation",
    help="Manage delegations granted to the agent.",
    no_args_is_help=True,
)
app.add_typer(delegation_app, name="delegation")


def _print_delegation(record) -> None:
    scope = record.scope
    console.print(Panel(
        f"ID: [cyan]{record.id}[/cyan]\n"
        f"Delegator: {record.delegator}\n"
        f"Delegate: {record.delegate}\n"
        f"Status: [bold]{record.status.value}[/bold]\n"
        f"Targets: {', '.join(scope.targets)}\n"
        f"Actions: {', '.join(k.value for k in scope.action_kinds)}",
        title="Delegation",
    ))


@delegation_app.command("list")
def delegation_list(
    wallet: str = typer.Option(None, "--wallet", "-w", help="Only delegations from this wallet"),
):
    """List delegations."""

    async def _list(autopilot):
        if wallet:
            return await autopilot.delegations_for(wallet)
        return await autopilot.registry.list_all()

    records = _call(_list)
    if not records:
        console.print("[dim]No delegations.[/dim]")
        return

    table = Table(title="Delegations")
    table.add_column("ID", style="cyan")
    table.add_column("Delegator")
    table.add_column("Delegate")
    table.add_column("Targets", justify="right")
    table.add_column("Status")
    for r in records:
        style = {"active": "green", "paused": "yellow"}.get(r.status.value, "red")
        table.add_row(
            r.id, r.delegator, r.delegate, str(len(r.scope.targets)), f"[{style}]{r.status.value}[/{style}]"
        )
    console.print(table)


@delegation_app.command("register")
def delegation_register(
    delegator: str = typer.Option(..., "--delegator", help="Wallet granting authority"),
    target: list[str] = typer.Option(..., "--target", "-t", help="Token contract in scope (repeatable)"),
    proof: str = typer.Option(..., "--proof", help="Signed delegation (proof of grant)"),
    delegate: str = typer.Option(None, "--delegate", help="Agent address (defaults to this agent)"),
    selector: list[str] = typer.Option([], "--selector", help="Allowed function selector (repeatable)"),
    max_actions: int = typer.Option(None, "--max-actions", help="Max actions per cycle"),
):
    """Register a delegation from a wallet to the agent."""
    from wallet_autopilot.storage.models import DelegationRequest, DelegationScope, ScopeLimits

    async def _register(autopilot):
        request = DelegationRequest(
            delegator=delegator,
            delegate=delegate or autopilot.agent_address or "",
            scope=DelegationScope(
                targets=target,
                selectors=selector,
                limits=ScopeLimits(max_actions_per_cycle=max_actions),
            ),
            proof_of_grant=proof,
        )
        return await autopilot.register_delegation(request)

    _print_delegation(_call(_register))


@delegation_app.command("revoke")
def delegation_revoke(delegation_id: str = typer.Argument(help="Delegation id")):
    """Revoke a delegation; the agent stops acting on it immediately."""
    record = _call(lambda autopilot: autopilot.revoke_delegation(delegation_id))
    console.print(f"[green]Revoked[/green] {record.id} ({record.delegator})")


@delegation_app.command("pause")
def delegation_pause(delegation_id: str = typer.Argument(help="Delegation id")):
    """Pause a delegation."""
    record = _call(lambda autopilot: autopilot.pause_delegation(delegation_id))
    console.print(f"Delegation {record.id}: [yellow]{record.status.value}[/yellow]")


@delegation_app.command("resume")
def delegation_resume(delegation_id: str = typer.Argument(help="Delegation id")):
    """Resume a paused delegation."""
    record = _call(lambda autopilot: autopilot.resume_delegation(delegation_id))
    console.print(f"Delegation {record.id}: [green]{record.status.value}[/green]")


# ------------------------------------------------------------------
# key
# ------------------------------------------------------------------

key_app = typer.Typer(
    name="key",
    help="Manage the agent's signing key.",
    no_args_is_help=True,
)
app.add_typer(key_app, name="key")


@key_app.command("create")
def key_create():
    """Generate the agent key in an encrypted keystore."""
    from wallet_autopilot.chain.keystore import create_agent_key
    from wallet_autopilot.config import get_root_dir

    password = console.input("[bold]Set keystore password: [/bold]", password=True)
    confirm = console.input("[bold]Confirm password: [/bold]", password=True)
    if password != confirm:
        console.print("[red]Passwords do not match.[/red]")
        raise typer.Exit(1)

    try:
        address = create_agent_key(get_root_dir(_base_path), password)
    except (FileExistsError, ValueError) as exc:
        _fail(exc)

    console.print(Panel(
        f"[bold green]Agent key created![/bold green]\n\n"
        f"Address: [cyan]{address}[/cyan]\n\n"
        f"[dim]Wallets delegate to this address. Export the password as\n"
        f"WALLET_AUTOPILOT_KEY_PASSWORD so the service can sign relay requests.[/dim]",
        title="Agent key",
    ))


@key_app.command("address")
def key_address():
    """Show the agent (delegate) address."""
    from wallet_autopilot.chain.keystore import load_address
    from wallet_autopilot.config import get_root_dir

    address = load_address(get_root_dir(_base_path, create=False))
    if address is None:
        console.print("[yellow]No agent key found.[/yellow] Run 'wallet-autopilot key create' first.")
        raise typer.Exit(1)
    console.print(Panel(f"[cyan]{address}[/cyan]", title="Agent address"))
