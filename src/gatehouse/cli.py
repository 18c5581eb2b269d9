"""Gatehouse CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gatehouse.client import (
    STATE_PATH,
    GatehouseClient,
    load_state,
    save_interface_config,
    save_state,
)
from gatehouse.core.config import ClientConfig
from gatehouse.core.exceptions import GatehouseError, format_error_for_user
from gatehouse.core.logs import configure_logging
from gatehouse.reconcile import ReconcileReport
from gatehouse.server.coordinator import Coordinator
from gatehouse.server.main import BANNER, build_settings
from gatehouse.server.main import start as server_start

console = Console()


def _format_bytes(num: int) -> str:
    size = float(num)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _fail(error: BaseException) -> None:
    console.print(f"[red]Error:[/red] {format_error_for_user(error)}")
    sys.exit(1)


def _load_state(ctx: click.Context) -> ClientConfig:
    try:
        return load_state(ctx.obj["state_path"])
    except ValueError as e:
        _fail(e)
        raise


def _client(ctx: click.Context) -> tuple[GatehouseClient, ClientConfig]:
    state = _load_state(ctx)
    if not state.api_key:
        console.print("[red]Not logged in.[/red] Run [bold]gatehouse login[/bold] first.")
        sys.exit(1)
    return GatehouseClient.from_state(state), state


@click.group()
@click.option(
    "--state",
    "state_path",
    type=click.Path(path_type=Path),
    default=STATE_PATH,
    envvar="GATEHOUSE_CLIENT_STATE",
    show_default=True,
    help="Client state file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx: click.Context, state_path: Path, verbose: bool):
    """Gatehouse - expose local services through a WireGuard peer and a public subdomain."""
    ctx.ensure_object(dict)
    ctx.obj["state_path"] = state_path
    configure_logging("debug" if verbose else "warning")


@main.command()
def version():
    """Show version information."""
    from gatehouse import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


# Client commands


@main.command()
@click.option("--server", "server_url", required=True, help="Coordinator URL, e.g. http://vpn:3000")
@click.option("--api-key", envvar="GATEHOUSE_API_KEY", prompt=True, hide_input=True)
@click.option("--api-prefix", default="/api/v1", show_default=True)
@click.pass_context
def login(ctx: click.Context, server_url: str, api_key: str, api_prefix: str):
    """Store the coordinator URL and API key after checking them."""
    try:
        with GatehouseClient(server_url, api_key=api_key, api_prefix=api_prefix) as client:
            info = client.info()
    except (GatehouseError, OSError) as e:
        _fail(e)
        return

    state = _load_state(ctx)
    state.server_url = server_url
    state.api_key = api_key
    state.api_prefix = api_prefix
    save_state(state, ctx.obj["state_path"])
    console.print(f"[green]Logged in[/green] to {server_url} (server {info.get('version', '?')})")


@main.command()
@click.argument("name")
@click.option(
    "--wg-config",
    type=click.Path(path_type=Path),
    help="Where to write the WireGuard config (default: next to the state file)",
)
@click.pass_context
def register(ctx: click.Context, name: str, wg_config: Path | None):
    """Register this machine as a peer and save its WireGuard config."""
    client, state = _client(ctx)
    try:
        with client:
            result = client.register(name)
    except (GatehouseError, OSError) as e:
        _fail(e)
        return

    peer = result["peer"]
    state.peer_id = peer["id"]
    state.assigned_address = peer["assignedAddress"]
    state.tunnels = {}
    path = wg_config or Path(ctx.obj["state_path"]).with_name("gatehouse.conf")
    save_interface_config(result["interfaceConfig"], path)
    save_state(state, ctx.obj["state_path"])

    console.print(
        Panel(
            f"Peer: [bold]{peer['name']}[/bold] ({peer['id']})\n"
            f"Address: [cyan]{peer['assignedAddress']}[/cyan]\n"
            f"WireGuard config: {path}\n\n"
            f"Bring it up with: [bold]sudo wg-quick up {path}[/bold]",
            title="Registered",
            border_style="green",
        )
    )


@main.command()
@click.argument("port", type=int)
@click.option("--subdomain", "-s", help="Request specific subdomain")
@click.pass_context
def up(ctx: click.Context, port: int, subdomain: str | None):
    """Expose local PORT through a public subdomain.

    Examples:

        gatehouse up 3000

        gatehouse up 8080 --subdomain myapp
    """
    client, state = _client(ctx)
    if not state.peer_id:
        console.print("[red]Not registered.[/red] Run [bold]gatehouse register NAME[/bold] first.")
        sys.exit(1)
    try:
        with client:
            tunnel = client.create_tunnel(state.peer_id, port, subdomain)
    except (GatehouseError, OSError) as e:
        _fail(e)
        return

    state.tunnels = {tunnel["id"]: tunnel}
    save_state(state, ctx.obj["state_path"])
    console.print(
        Panel(
            f"[bold green]{tunnel.get('publicUrl', tunnel['subdomain'])}[/bold green]\n"
            f"-> {state.assigned_address}:{port}\n"
            f"Tunnel: {tunnel['id']}",
            title="Tunnel active",
            border_style="green",
        )
    )


@main.command()
@click.argument("tunnel_id", required=False)
@click.pass_context
def down(ctx: click.Context, tunnel_id: str | None):
    """Close a tunnel (default: this machine's tunnel)."""
    client, state = _client(ctx)
    targets = [tunnel_id] if tunnel_id else list(state.tunnels)
    if not targets:
        console.print("[dim]No tunnel to close[/dim]")
        return
    try:
        with client:
            for target in targets:
                closed = client.close_tunnel(target)
                state.tunnels.pop(target, None)
                console.print(f"[yellow]Closed[/yellow] {closed['subdomain']} ({target})")
    except (GatehouseError, OSError) as e:
        _fail(e)
        return
    finally:
        save_state(state, ctx.obj["state_path"])


@main.command()
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["active", "closed", "error", "all"]),
    default="active",
)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def tunnels(ctx: click.Context, status_filter: str, json_output: bool):
    """List tunnels known to the coordinator."""
    client, _ = _client(ctx)
    try:
        with client:
            items = client.list_tunnels(status_filter)
    except (GatehouseError, OSError) as e:
        _fail(e)
        return

    if json_output:
        console.print(json.dumps(items, indent=2))
        return
    if not items:
        console.print("[dim]No tunnels[/dim]")
        return

    table = Table(title=f"Tunnels ({status_filter})")
    table.add_column("Subdomain", style="cyan")
    table.add_column("URL")
    table.add_column("Port", justify="right")
    table.add_column("Status")
    table.add_column("Bytes In", justify="right")
    table.add_column("Bytes Out", justify="right")
    table.add_column("ID", style="dim")
    for t in items:
        table.add_row(
            t["subdomain"],
            t.get("publicUrl", ""),
            str(t["localPort"]),
            t["status"],
            _format_bytes(t.get("bytesReceived", 0)),
            _format_bytes(t.get("bytesSent", 0)),
            t["id"][:8] + "...",
        )
    console.print(table)


@main.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, json_output: bool):
    """Show coordinator health and this machine's registration."""
    state = _load_state(ctx)
    try:
        with GatehouseClient.from_state(state) as client:
            health = client.health()
    except (GatehouseError, OSError) as e:
        health = {"status": "unreachable", "error": format_error_for_user(e)}

    if json_output:
        console.print(
            json.dumps(
                {
                    "server": state.server_url,
                    "health": health,
                    "peerId": state.peer_id,
                    "address": state.assigned_address,
                    "tunnels": list(state.tunnels),
                },
                indent=2,
            )
        )
        return

    colour = "green" if health.get("status") == "healthy" else "red"
    console.print(f"\n[bold]Server:[/bold] {state.server_url}")
    console.print(f"[bold]Status:[/bold] [{colour}]{health.get('status')}[/{colour}]")
    console.print(f"[bold]Logged in:[/bold] {'yes' if state.api_key else 'no'}")
    if state.peer_id:
        console.print(f"[bold]Peer:[/bold] {state.peer_id} ({state.assigned_address})")
    else:
        console.print("[dim]Not registered[/dim]")
    for tunnel_id, tunnel in state.tunnels.items():
        url = tunnel.get("publicUrl", tunnel.get("subdomain"))
        console.print(f"[bold]Tunnel:[/bold] {url} [dim]({tunnel_id})[/dim]")


# Server-side commands


@main.group()
def server():
    """Run and maintain the coordinator (on the VPN host)."""


server.add_command(server_start)


def _local_coordinator(config_file: str | None, dry_run: bool) -> Coordinator:
    try:
        settings = build_settings(config_file)
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    coordinator = Coordinator.from_settings(settings, dry_run=dry_run)
    coordinator.storage.initialize()
    return coordinator


def _print_report(report: ReconcileReport, title: str) -> None:
    table = Table(title=title)
    table.add_column("Result", style="cyan")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("ID", style="dim")
    for item in report.repaired:
        table.add_row("repaired", item["type"], item["action"], item["id"])
    for item in report.orphaned:
        table.add_row("removed", item["type"], "orphan", item["id"])
    for item in report.failures:
        table.add_row("[red]failed[/red]", "", item["action"], f"{item['id']}: {item['error']}")
    if report.repaired or report.orphaned or report.failures:
        console.print(table)
    else:
        console.print("[green]Nothing to do[/green]")


_config_option = click.option(
    "--config", "config_file", type=click.Path(exists=True), help="YAML/TOML config"
)
_dry_run_option = click.option("--dry-run", is_flag=True, help="Use in-memory drivers")


@server.command("reset")
@_config_option
@_dry_run_option
@click.option("--purge", is_flag=True, help="Also remove stored config and API keys")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def server_reset(config_file: str | None, dry_run: bool, purge: bool, yes: bool):
    """Remove every peer, tunnel and route."""
    if not yes:
        click.confirm(
            "This retracts all peers and removes all tunnels and routes. Continue?",
            abort=True,
        )
    coordinator = _local_coordinator(config_file, dry_run)

    async def _run() -> ReconcileReport:
        try:
            return await coordinator.reset(purge=purge)
        finally:
            await coordinator.stop()

    report = asyncio.run(_run())
    _print_report(report, "Reset")
    if report.failures:
        console.print("[red]Reset finished with failures; run it again to retry.[/red]")
        sys.exit(1)
    console.print("[green]Reset complete[/green]")


@server.command("reconcile")
@_config_option
@_dry_run_option
def server_reconcile(config_file: str | None, dry_run: bool):
    """Repair drift between the interface, the database and the route files."""
    coordinator = _local_coordinator(config_file, dry_run)

    async def _run() -> ReconcileReport:
        try:
            return await coordinator.reconcile(intent_grace=0.0)
        finally:
            await coordinator.stop()

    report = asyncio.run(_run())
    _print_report(report, "Reconcile")
    if report.failures:
        sys.exit(1)


@server.command("set-domain")
@click.argument("domain")
@_config_option
@_dry_run_option
def server_set_domain(domain: str, config_file: str | None, dry_run: bool):
    """Set the base domain and re-render active routes for it."""
    coordinator = _local_coordinator(config_file, dry_run)

    async def _run() -> str:
        try:
            return await coordinator.set_base_domain(domain)
        finally:
            await coordinator.stop()

    try:
        value = asyncio.run(_run())
    except GatehouseError as e:
        _fail(e)
        return
    console.print(f"[green]Base domain set to[/green] {value}")


@main.group()
def keys():
    """Manage coordinator API keys."""


@keys.command("rotate")
@_config_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def keys_rotate(config_file: str | None, yes: bool):
    """Replace all API keys with a new one."""
    if not yes:
        click.confirm("Existing API keys will stop working. Continue?", abort=True)
    coordinator = _local_coordinator(config_file, dry_run=True)
    try:
        raw_key, _ = coordinator.api_keys.create_key()
    finally:
        coordinator.storage.close()
    console.print(
        Panel(
            f"[bold]{raw_key}[/bold]\n\nIt will not be shown again.",
            title="New API key",
            border_style="green",
        )
    )


@main.group()
def config():
    """Inspect coordinator configuration."""


@config.command("show")
@_config_option
@click.option("--section", "-s", help="Show only one section")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(config_file: str | None, section: str | None, json_output: bool):
    """Show the effective server configuration."""
    try:
        settings = build_settings(config_file)
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e
    display = settings.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    for section_name, values in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        for key, value in values.items():
            table.add_row(key, str(value) if value is not None else "[dim]None[/dim]")
        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
