"""Tests for coordinator wiring, boot sequence and activity sampling."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from gatehouse.core.exceptions import ConfigurationMissingError, ValidationError
from gatehouse.network.drivers import LivePeer, MemoryInterfaceDriver, WireGuardDriver
from gatehouse.proxy.drivers import MemoryProxyDriver, NginxDriver
from gatehouse.server.coordinator import Coordinator, validate_domain
from gatehouse.store.sqlite import BASE_DOMAIN_KEY, SQLiteStorage


class TestValidateDomain:
    def test_normalizes(self):
        assert validate_domain(" Tunnels.Example.COM. ") == "tunnels.example.com"

    @pytest.mark.parametrize("bad", ["", "localhost", "bad domain.com", "-a.example.com"])
    def test_rejects(self, bad):
        with pytest.raises(ValidationError):
            validate_domain(bad)


class TestFromSettings:
    """Driver selection."""

    def test_dry_run_uses_memory_drivers(self, settings):
        coord = Coordinator.from_settings(settings, dry_run=True)

        assert isinstance(coord.interface_driver, MemoryInterfaceDriver)
        assert isinstance(coord.provisioner.driver, MemoryProxyDriver)

    def test_real_drivers(self, settings):
        coord = Coordinator.from_settings(settings)

        assert isinstance(coord.interface_driver, WireGuardDriver)
        assert isinstance(coord.provisioner.driver, NginxDriver)
        assert coord.provisioner.driver.sites_path == settings.nginx_sites_path


class TestBoot:
    """Coordinator.start / stop."""

    @pytest.mark.asyncio
    async def test_start_seeds_domain_and_keys(self, coordinator):
        await coordinator.start()

        assert coordinator.storage.get_config_value(BASE_DOMAIN_KEY) == "tunnels.example.com"
        assert coordinator.server_keys is not None
        assert coordinator.initial_api_key is not None
        assert coordinator.last_report is not None

    @pytest.mark.asyncio
    async def test_start_reconciles(self, coordinator, interface):
        interface.peers["STRAY="] = LivePeer(public_key="STRAY=", allowed_ips=["10.8.0.9/32"])

        await coordinator.start()

        assert interface.peers == {}
        assert coordinator.last_report.orphaned[0]["id"] == "STRAY="

    @pytest.mark.asyncio
    async def test_initial_key_only_on_first_boot(self, settings, interface, proxy):
        first = Coordinator(settings, SQLiteStorage(settings.database_path), interface, proxy)
        first.initialize()
        await first.stop()

        second = Coordinator(settings, SQLiteStorage(settings.database_path), interface, proxy)
        second.initialize()
        await second.stop()

        assert first.initial_api_key is not None
        assert second.initial_api_key is None

    @pytest.mark.asyncio
    async def test_managed_interface_is_written_and_brought_up(self, settings, proxy):
        managed = settings.model_copy(update={"wg_manage_interface": True})
        interface = MemoryInterfaceDriver(up=False)
        coord = Coordinator(managed, SQLiteStorage(managed.database_path), interface, proxy)

        await coord.start()
        await coord.stop()

        path = managed.interface_config_path
        assert interface.running is True
        assert ("up", str(path)) in interface.calls
        assert path.stat().st_mode & 0o777 == 0o600
        assert "ListenPort = 51820" in path.read_text()
        assert "Address = 10.8.0.1/24" in path.read_text()


class TestClients:
    """Client management."""

    @pytest.mark.asyncio
    async def test_register_client_payload(self, coordinator):
        result = await coordinator.register_client("  laptop ")

        assert result["peer"]["name"] == "laptop"
        assert result["peer"]["assignedAddress"] == "10.8.0.2"
        config = result["interfaceConfig"]
        assert "AllowedIPs = 10.8.0.0/24" in config
        assert "DNS = 1.1.1.1, 8.8.8.8" in config

    @pytest.mark.asyncio
    async def test_register_rejects_long_name(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.register_client("x" * 65)

    @pytest.mark.asyncio
    async def test_endpoint_falls_back_to_domain(self, coordinator):
        coordinator.settings = coordinator.settings.model_copy(update={"endpoint": None})

        assert coordinator.endpoint() == "tunnels.example.com:51820"

        coordinator.storage.delete_config_value(BASE_DOMAIN_KEY)
        with pytest.raises(ConfigurationMissingError):
            coordinator.endpoint()

    @pytest.mark.asyncio
    async def test_remove_client(self, coordinator, interface, proxy):
        result = await coordinator.register_client("laptop")
        peer_id = result["peer"]["id"]
        await coordinator.tunnels.create_tunnel(peer_id, 3000, "alpha")

        await coordinator.remove_client(peer_id)

        assert coordinator.storage.get_peer(peer_id) is None
        assert coordinator.storage.list_tunnels() == []
        assert interface.peers == {}
        assert proxy.routes == {}
        assert peer_id not in coordinator.tunnels._peer_locks

    @pytest.mark.asyncio
    async def test_reset_drops_peer_locks(self, coordinator):
        for name in ("p1", "p2"):
            result = await coordinator.register_client(name)
            await coordinator.tunnels.create_tunnel(result["peer"]["id"], 3000)

        await coordinator.reset()

        assert coordinator.tunnels._peer_locks == {}

    @pytest.mark.asyncio
    async def test_reactivate_client(self, coordinator, interface):
        result = await coordinator.register_client("laptop")
        peer_id = result["peer"]["id"]

        await coordinator.set_client_active(peer_id, False)
        peer = await coordinator.set_client_active(peer_id, True)

        assert peer.is_active is True
        assert peer.public_key in interface.peers


class TestSetBaseDomain:
    """Base domain changes."""

    @pytest.mark.asyncio
    async def test_routes_are_rewritten(self, coordinator, proxy):
        result = await coordinator.register_client("laptop")
        tunnel = await coordinator.tunnels.create_tunnel(result["peer"]["id"], 3000, "alpha")
        reloads = proxy.reloads

        value = await coordinator.set_base_domain("New.Example.org")

        assert value == "new.example.org"
        assert "server_name alpha.new.example.org;" in proxy.routes[tunnel.id]
        assert proxy.reloads == reloads + 1
        assert coordinator.tunnels.public_url(tunnel) == "https://alpha.new.example.org"

    @pytest.mark.asyncio
    async def test_invalid_domain_changes_nothing(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.set_base_domain("not a domain")

        assert coordinator.storage.get_config_value(BASE_DOMAIN_KEY) == "tunnels.example.com"


class TestActivity:
    """Interface activity sampling."""

    @pytest.mark.asyncio
    async def test_first_sample_is_a_baseline(self, coordinator, interface):
        result = await coordinator.register_client("laptop")
        peer_id = result["peer"]["id"]
        tunnel = await coordinator.tunnels.create_tunnel(peer_id, 3000, "alpha")
        live = next(iter(interface.peers.values()))
        live.latest_handshake = datetime(2024, 5, 1, tzinfo=UTC)
        live.rx_bytes, live.tx_bytes = 1000, 4000

        assert await coordinator.sync_activity() == 0
        assert coordinator.storage.get_peer(peer_id).last_seen == live.latest_handshake
        assert coordinator.tunnels.get(tunnel.id).bytes_sent == 0

        live.rx_bytes, live.tx_bytes = 1500, 4100
        assert await coordinator.sync_activity() == 1

        updated = coordinator.tunnels.get(tunnel.id)
        assert updated.bytes_received == 500
        assert updated.bytes_sent == 100

    @pytest.mark.asyncio
    async def test_counter_reset_counts_from_zero(self, coordinator, interface):
        result = await coordinator.register_client("laptop")
        tunnel = await coordinator.tunnels.create_tunnel(result["peer"]["id"], 3000, "alpha")
        live = next(iter(interface.peers.values()))
        live.rx_bytes, live.tx_bytes = 1000, 1000
        await coordinator.sync_activity()

        live.rx_bytes, live.tx_bytes = 10, 20
        await coordinator.sync_activity()

        updated = coordinator.tunnels.get(tunnel.id)
        assert (updated.bytes_received, updated.bytes_sent) == (10, 20)

    @pytest.mark.asyncio
    async def test_unknown_live_peers_are_ignored(self, coordinator, interface):
        interface.peers["STRAY="] = LivePeer(public_key="STRAY=", rx_bytes=5, tx_bytes=5)

        assert await coordinator.sync_activity() == 0

    @pytest.mark.asyncio
    async def test_loop_survives_database_errors(self, coordinator):
        await coordinator.register_client("laptop")
        coordinator.settings = coordinator.settings.model_copy(update={"activity_interval": 0.01})
        failing = MagicMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch.object(coordinator.storage, "get_peer_by_public_key", failing):
            task = asyncio.create_task(coordinator._activity_loop())
            await asyncio.sleep(0.1)
            still_running = not task.done()
            coordinator._shutdown_event.set()
            task.cancel()
            await task

        assert still_running
        assert failing.call_count >= 2

    @pytest.mark.asyncio
    async def test_health(self, coordinator):
        assert coordinator.health() == {"status": "ok", "database": True}
