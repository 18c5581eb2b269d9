"""Drift repair between the live interface, the store and the route files.

The three stores cannot be rolled back together, so instead of a
distributed transaction the coordinator relies on this pass: it runs at
boot, on demand, and (in its destructive form) on reset.
"""

from __future__ import annotations

import asyncio
import inspect
import shutil
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from gatehouse.core.exceptions import ConfigurationMissingError, GatehouseError
from gatehouse.network.drivers import LivePeer
from gatehouse.network.peers import PeerController
from gatehouse.observability.metrics import RECONCILE_ACTIONS
from gatehouse.proxy.routes import RouteProvisioner, RouteSpec
from gatehouse.store.models import TunnelStatus
from gatehouse.store.sqlite import SQLiteStorage
from gatehouse.tunnels.manager import TunnelManager

logger = structlog.get_logger()

RECOVERABLE = (GatehouseError, sqlite3.Error, OSError)


@dataclass
class ReconcileReport:
    repaired: list[dict[str, Any]] = field(default_factory=list)
    orphaned: list[dict[str, Any]] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def repair(self, kind: str, action: str, target: str, **extra: Any) -> None:
        self.repaired.append({"type": kind, "action": action, "id": target, **extra})
        RECONCILE_ACTIONS.labels(action=action).inc()
        logger.info("Reconciled", type=kind, action=action, id=target, **extra)

    def orphan(self, kind: str, target: str, **extra: Any) -> None:
        self.orphaned.append({"type": kind, "id": target, **extra})
        RECONCILE_ACTIONS.labels(action=f"{kind}_orphan_removed").inc()
        logger.info("Removed orphan", type=kind, id=target, **extra)

    def fail(self, action: str, target: str, error: BaseException) -> None:
        message = error.message if isinstance(error, GatehouseError) else str(error)
        self.failures.append({"action": action, "id": target, "error": message})
        RECONCILE_ACTIONS.labels(action="failed").inc()
        logger.error("Reconcile step failed", action=action, id=target, error=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repaired": self.repaired,
            "orphaned": self.orphaned,
            "failures": self.failures,
        }


class Reconciler:
    """Cross-checks live peers and route files against store records."""

    def __init__(
        self,
        storage: SQLiteStorage,
        peers: PeerController,
        tunnels: TunnelManager,
        provisioner: RouteProvisioner,
        *,
        retries: int = 3,
        retry_delay: float = 0.5,
        manage_interface: bool = False,
        state_paths: tuple[Path, ...] = (),
    ) -> None:
        self.storage = storage
        self.peers = peers
        self.tunnels = tunnels
        self.provisioner = provisioner
        self.retries = max(retries, 1)
        self.retry_delay = retry_delay
        self.manage_interface = manage_interface
        self.state_paths = state_paths

    async def reconcile(self, intent_grace: float = 0.0) -> ReconcileReport:
        """Repair drift and return what changed.

        Registration intents younger than ``intent_grace`` seconds belong to
        registrations that may still be in flight and are left alone.
        """
        report = ReconcileReport()
        await self._reconcile_peers(report, intent_grace)
        await self._reconcile_routes(report)
        logger.info(
            "Reconcile finished",
            repaired=len(report.repaired),
            orphaned=len(report.orphaned),
            failures=len(report.failures),
        )
        return report

    async def _reconcile_peers(self, report: ReconcileReport, intent_grace: float) -> None:
        driver = self.peers.driver
        interface_up = await driver.is_up()
        live: list[LivePeer] = []
        if interface_up:
            try:
                live = await self.peers.list_live_peers()
            except GatehouseError as e:
                report.fail("list_peers", driver.interface, e)
                return
        else:
            logger.warning("Interface down, peer rows left intact", interface=driver.interface)

        rows = {p.public_key: p for p in self.storage.list_peers()}
        cutoff = datetime.now(UTC) - timedelta(seconds=intent_grace)
        intents = {i.public_key: i for i in self.storage.list_intents()}
        live_keys = {p.public_key for p in live}

        for live_peer in live:
            key = live_peer.public_key
            row = rows.get(key)
            try:
                if row is not None:
                    if not row.is_active:
                        await self.peers.retract_peer(key, missing_ok=True)
                        report.repair("peer", "retracted_inactive", row.id)
                    continue
                intent = intents.pop(key, None)
                if intent is not None:
                    if intent.created_at > cutoff:
                        continue
                    self.storage.persist_registration(intent.to_peer())
                    report.repair("peer", "promoted", intent.peer_id, address=intent.address)
                    continue
                await self.peers.retract_peer(key, missing_ok=True)
                report.orphan("peer", key, addresses=live_peer.addresses)
            except RECOVERABLE as e:
                report.fail("peer", key, e)

        for intent in intents.values():
            if intent.public_key in live_keys or intent.created_at > cutoff:
                continue
            self.storage.delete_intent(intent.peer_id)
            report.repair("intent", "discarded", intent.peer_id)

        if not interface_up:
            return
        for key, row in rows.items():
            if key in live_keys or not row.is_active:
                continue
            try:
                await self.peers.apply_peer(row)
                report.repair("peer", "reapplied", row.id, address=row.address)
            except RECOVERABLE as e:
                report.fail("apply_peer", row.id, e)

    async def _reconcile_routes(self, report: ReconcileReport) -> None:
        try:
            artifacts = set(await self.provisioner.list_routes())
        except RECOVERABLE as e:
            report.fail("list_routes", "proxy", e)
            return
        active = {t.id: t for t in self.storage.list_tunnels(status=TunnelStatus.ACTIVE)}
        changed = False

        for tunnel_id in sorted(artifacts - active.keys()):
            try:
                await self.provisioner.driver.remove_route(tunnel_id)
                changed = True
                report.orphan("route", tunnel_id)
            except RECOVERABLE as e:
                report.fail("remove_route", tunnel_id, e)

        missing = [t for tid, t in active.items() if tid not in artifacts]
        if missing:
            try:
                base_domain = self.tunnels.base_domain()
            except ConfigurationMissingError as e:
                for tunnel in missing:
                    report.fail("write_route", tunnel.id, e)
                missing = []
            for tunnel in missing:
                try:
                    async with self.tunnels.lock_for(tunnel.peer_id):
                        # A close may have landed since the listing above.
                        current = self.storage.get_tunnel(tunnel.id)
                        peer = self.storage.get_peer(tunnel.peer_id)
                        if peer is None or current is None:
                            continue
                        if current.status != TunnelStatus.ACTIVE:
                            continue
                        spec = RouteSpec.for_tunnel(current, peer, base_domain)
                        await self.provisioner.write(spec)
                    changed = True
                    report.repair("route", "regenerated", tunnel.id, subdomain=tunnel.subdomain)
                except RECOVERABLE as e:
                    report.fail("write_route", tunnel.id, e)

        if changed:
            try:
                await self.provisioner.reload()
            except RECOVERABLE as e:
                report.fail("reload", "proxy", e)

    async def reset(self, purge: bool = False) -> ReconcileReport:
        """Remove every peer, record and route; report whatever could not be removed.

        Each removal is retried independently. With ``purge`` the key-value
        config and API keys are removed as well.
        """
        report = ReconcileReport()
        driver = self.peers.driver

        live: list[LivePeer] = []
        if await driver.is_up():
            try:
                live = await self.peers.list_live_peers()
            except GatehouseError as e:
                report.fail("list_peers", driver.interface, e)
        for live_peer in live:
            key = live_peer.public_key
            if await self._attempt(
                report,
                "retract_peer",
                key,
                lambda k=key: self.peers.retract_peer(k, missing_ok=True),
            ):
                report.orphan("peer", key)

        if await self._attempt(report, "clear_records", "store", self.storage.clear_records):
            report.repair("store", "cleared", "records")

        try:
            artifacts = await self.provisioner.list_routes()
        except RECOVERABLE as e:
            report.fail("list_routes", "proxy", e)
            artifacts = []
        for tunnel_id in artifacts:
            if await self._attempt(
                report,
                "remove_route",
                tunnel_id,
                lambda t=tunnel_id: self.provisioner.driver.remove_route(t),
            ):
                report.orphan("route", tunnel_id)
        if artifacts:
            await self._attempt(report, "reload", "proxy", self.provisioner.reload)

        if self.manage_interface and await driver.is_up():
            await self._attempt(report, "interface_down", driver.interface, driver.down)
        for path in self.state_paths:
            await self._attempt(report, "remove_state", str(path), lambda p=path: _remove_path(p))

        if purge:
            if await self._attempt(report, "clear_config", "store", self.storage.clear_config):
                report.repair("store", "cleared", "config")
            await self._attempt(report, "delete_api_keys", "store", self.storage.delete_api_keys)

        logger.info(
            "Reset finished",
            purge=purge,
            removed=len(report.orphaned),
            failures=len(report.failures),
        )
        return report

    async def _attempt(
        self,
        report: ReconcileReport,
        action: str,
        target: str,
        operation: Callable[[], Awaitable[object] | object],
    ) -> bool:
        last_error: BaseException | None = None
        for attempt in range(1, self.retries + 1):
            try:
                result = operation()
                if inspect.isawaitable(result):
                    await result
                return True
            except RECOVERABLE as e:
                last_error = e
                logger.warning("Reset step failed", action=action, id=target, attempt=attempt)
                if attempt < self.retries:
                    await asyncio.sleep(self.retry_delay * attempt)
        assert last_error is not None
        report.fail(action, target, last_error)
        return False


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()
