"""Gatehouse server - main entry point."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import click
import structlog
from aiohttp import web
from rich.console import Console
from rich.panel import Panel

from gatehouse.core.config import ServerSettings, flatten_config, load_config_from_file
from gatehouse.core.logs import configure_logging
from gatehouse.server.api import create_app
from gatehouse.server.coordinator import Coordinator

console = Console()
logger = structlog.get_logger()

BANNER = """
  ____       _       _
 / ___| __ _| |_ ___| |__   ___  _   _ ___  ___
| |  _ / _` | __/ _ \\ '_ \\ / _ \\| | | / __|/ _ \\
| |_| | (_| | ||  __/ | | | (_) | |_| \\__ \\  __/
 \\____|\\__,_|\\__\\___|_| |_|\\___/ \\__,_|___/\\___|
                 COORDINATOR
"""


def build_settings(config_file: str | Path | None = None, **overrides: Any) -> ServerSettings:
    """Merge a config file with explicit overrides; unset overrides are ignored."""
    values: dict[str, Any] = {}
    if config_file:
        values.update(flatten_config(load_config_from_file(config_file)))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ServerSettings(**values)


def _parse_bind(bind: str) -> tuple[str, int]:
    """Parse bind address into host and port."""
    if ":" in bind:
        host, port = bind.rsplit(":", 1)
        return host, int(port)
    return "0.0.0.0", int(bind)


class CoordinatorServer:
    """Serves the coordinator's HTTP API."""

    def __init__(self, coordinator: Coordinator) -> None:
        self.coordinator = coordinator
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        await self.coordinator.start()
        app = create_app(self.coordinator)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        host, port = _parse_bind(self.coordinator.settings.api_bind)
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("API listening", host=host, port=port)

    async def stop(self) -> None:
        logger.info("Stopping coordinator server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        await self.coordinator.stop()


async def run_server(coordinator: Coordinator) -> None:
    """Run the coordinator until interrupted."""
    server = CoordinatorServer(coordinator)

    try:
        await server.start()
        if coordinator.initial_api_key:
            console.print(
                Panel(
                    f"[bold]{coordinator.initial_api_key}[/bold]\n\n"
                    "Send it in the X-API-Key header. It will not be shown again.",
                    title="API key",
                    border_style="green",
                )
            )
        report = coordinator.last_report
        if report and (report.repaired or report.orphaned or report.failures):
            console.print(
                f"Reconciled: {len(report.repaired)} repaired, "
                f"{len(report.orphaned)} orphaned, {len(report.failures)} failed",
                style="yellow",
            )
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


@click.command("start")
@click.option("--config", "config_file", type=click.Path(exists=True), help="YAML/TOML config")
@click.option("--bind", "api_bind", help="API bind address (default: 0.0.0.0:3000)")
@click.option("--domain", "-d", "base_domain", help="Base domain for tunnel subdomains")
@click.option("--endpoint", help="Public WireGuard endpoint handed to clients (host:port)")
@click.option("--interface", "wg_interface", help="WireGuard interface (default: wg0)")
@click.option("--network", "wg_network", help="Client address range (default: 10.8.0.0/24)")
@click.option("--data-dir", type=click.Path(path_type=Path), help="State directory")
@click.option(
    "--address-policy",
    type=click.Choice(["skip-occupied", "reject"]),
    help="Behaviour when the address cursor lands on an address in use",
)
@click.option(
    "--manage-interface/--no-manage-interface",
    "wg_manage_interface",
    default=None,
    help="Write the interface config and bring it up with wg-quick",
)
@click.option("--sudo/--no-sudo", "use_sudo", default=None, help="Prefix wg/nginx with sudo")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Use in-memory interface and proxy drivers (no root, wg or nginx needed)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Log level",
)
@click.option("--log-json", is_flag=True, default=None, help="Emit JSON log lines")
def start(
    config_file: str | None,
    api_bind: str | None,
    base_domain: str | None,
    endpoint: str | None,
    wg_interface: str | None,
    wg_network: str | None,
    data_dir: Path | None,
    address_policy: str | None,
    wg_manage_interface: bool | None,
    use_sudo: bool | None,
    dry_run: bool,
    log_level: str | None,
    log_json: bool | None,
):
    """Run the Gatehouse coordinator."""
    console.print(BANNER, style="cyan")

    try:
        settings = build_settings(
            config_file,
            api_bind=api_bind,
            base_domain=base_domain,
            endpoint=endpoint,
            wg_interface=wg_interface,
            wg_network=wg_network,
            data_dir=data_dir,
            address_policy=address_policy,
            wg_manage_interface=wg_manage_interface,
            use_sudo=use_sudo,
            log_level=log_level,
            log_json=log_json,
        )
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e)) from e

    configure_logging(settings.log_level, settings.log_json)

    console.print(f"API: {settings.api_bind}{settings.api_prefix}", style="dim")
    console.print(f"Interface: {settings.wg_interface} ({settings.wg_network})", style="dim")
    console.print(f"Database: {settings.database_path}", style="dim")
    if dry_run:
        console.print("Dry run: in-memory interface and proxy drivers", style="yellow")

    coordinator = Coordinator.from_settings(settings, dry_run=dry_run)
    asyncio.run(run_server(coordinator))


if __name__ == "__main__":
    start()
