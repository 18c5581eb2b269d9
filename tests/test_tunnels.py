"""Tests for the tunnel lifecycle manager."""

from __future__ import annotations

import asyncio
import re

import pytest

from gatehouse.core.exceptions import (
    ConfigurationMissingError,
    ConflictError,
    PeerNotFoundError,
    ProxyReloadFailed,
    ProxyWriteFailed,
    SubdomainTakenError,
    TunnelNotFoundError,
    ValidationError,
)
from gatehouse.store.models import TunnelStatus
from gatehouse.store.sqlite import BASE_DOMAIN_KEY
from gatehouse.tunnels.manager import generate_subdomain, validate_port, validate_subdomain

BASE_DOMAIN = "tunnels.example.com"


async def register(coordinator, name="p1"):
    return (await coordinator.peers.register(name)).peer


class TestValidation:
    """Input validation helpers."""

    def test_subdomain_is_normalized(self):
        assert validate_subdomain("  MyApp ") == "myapp"

    @pytest.mark.parametrize("bad", ["", "-x", "x-", "a.b", "under_score", "a" * 64])
    def test_invalid_subdomains(self, bad):
        with pytest.raises(ValidationError):
            validate_subdomain(bad)

    @pytest.mark.parametrize("bad", [0, 65536, -1, True, "80"])
    def test_invalid_ports(self, bad):
        with pytest.raises(ValidationError):
            validate_port(bad)

    def test_generated_subdomain_shape(self):
        assert re.fullmatch(r"[a-z0-9]{8}", generate_subdomain())


class TestCreateTunnel:
    """TunnelManager.create_tunnel."""

    @pytest.mark.asyncio
    async def test_explicit_subdomain_url(self, coordinator, proxy):
        peer = await register(coordinator)

        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        assert tunnel.status == TunnelStatus.ACTIVE
        assert coordinator.tunnels.public_url(tunnel) == f"https://alpha.{BASE_DOMAIN}"
        assert "proxy_pass http://10.8.0.2:3000;" in proxy.routes[tunnel.id]
        assert proxy.reloads == 1

    @pytest.mark.asyncio
    async def test_second_tunnel_replaces_first(self, coordinator, proxy):
        peer = await register(coordinator)
        t1 = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        t2 = await coordinator.tunnels.create_tunnel(peer.id, 4000)

        assert coordinator.tunnels.get(t1.id).status == TunnelStatus.CLOSED
        assert coordinator.tunnels.get(t1.id).end_time is not None
        assert t2.status == TunnelStatus.ACTIVE
        assert re.fullmatch(r"[a-z0-9]{8}", t2.subdomain)
        assert [t.id for t in coordinator.tunnels.list_active()] == [t2.id]
        assert set(proxy.routes) == {t2.id}

    @pytest.mark.asyncio
    async def test_subdomain_taken_by_other_peer(self, coordinator):
        p1 = await register(coordinator, "p1")
        p2 = await register(coordinator, "p2")
        await coordinator.tunnels.create_tunnel(p1.id, 3000, "taken")

        with pytest.raises(SubdomainTakenError) as exc_info:
            await coordinator.tunnels.create_tunnel(p2.id, 3000, "taken")

        assert isinstance(exc_info.value, ConflictError)
        assert coordinator.storage.list_tunnels(peer_id=p2.id) == []

    @pytest.mark.asyncio
    async def test_conflict_does_not_close_existing_tunnel(self, coordinator):
        p1 = await register(coordinator, "p1")
        p2 = await register(coordinator, "p2")
        await coordinator.tunnels.create_tunnel(p1.id, 3000, "taken")
        mine = await coordinator.tunnels.create_tunnel(p2.id, 3000, "mine")

        with pytest.raises(SubdomainTakenError):
            await coordinator.tunnels.create_tunnel(p2.id, 3000, "taken")

        assert coordinator.tunnels.get(mine.id).status == TunnelStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_same_peer_can_keep_its_subdomain(self, coordinator):
        peer = await register(coordinator)
        first = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        second = await coordinator.tunnels.create_tunnel(peer.id, 3001, "alpha")

        assert second.subdomain == "alpha"
        assert coordinator.tunnels.get(first.id).status == TunnelStatus.CLOSED

    @pytest.mark.asyncio
    async def test_closed_subdomain_is_reusable(self, coordinator):
        p1 = await register(coordinator, "p1")
        p2 = await register(coordinator, "p2")
        old = await coordinator.tunnels.create_tunnel(p1.id, 3000, "alpha")
        await coordinator.tunnels.close_tunnel(old.id)

        new = await coordinator.tunnels.create_tunnel(p2.id, 5000, "alpha")

        assert new.id != old.id
        assert new.subdomain == "alpha"

    @pytest.mark.asyncio
    async def test_unknown_peer(self, coordinator):
        with pytest.raises(PeerNotFoundError):
            await coordinator.tunnels.create_tunnel("missing", 3000)

    @pytest.mark.asyncio
    async def test_inactive_peer(self, coordinator):
        peer = await register(coordinator)
        await coordinator.peers.set_active(peer, False)

        with pytest.raises(ConflictError):
            await coordinator.tunnels.create_tunnel(peer.id, 3000)

    @pytest.mark.asyncio
    async def test_invalid_input_has_no_side_effects(self, coordinator, proxy):
        peer = await register(coordinator)

        with pytest.raises(ValidationError):
            await coordinator.tunnels.create_tunnel(peer.id, 0)
        with pytest.raises(ValidationError):
            await coordinator.tunnels.create_tunnel(peer.id, 3000, "-bad-")

        assert coordinator.storage.list_tunnels() == []
        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_missing_base_domain(self, coordinator):
        peer = await register(coordinator)
        coordinator.storage.delete_config_value(BASE_DOMAIN_KEY)

        with pytest.raises(ConfigurationMissingError):
            await coordinator.tunnels.create_tunnel(peer.id, 3000)

        assert coordinator.storage.list_tunnels() == []

    @pytest.mark.asyncio
    async def test_write_failure_marks_error(self, coordinator, proxy):
        peer = await register(coordinator)
        proxy.fail_on.add("write")

        with pytest.raises(ProxyWriteFailed):
            await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        [tunnel] = coordinator.storage.list_tunnels()
        assert tunnel.status == TunnelStatus.ERROR
        assert coordinator.tunnels.list_active() == []

    @pytest.mark.asyncio
    async def test_reload_failure_is_distinct(self, coordinator, proxy):
        peer = await register(coordinator)
        proxy.fail_on.add("reload")

        with pytest.raises(ProxyReloadFailed):
            await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        [tunnel] = coordinator.storage.list_tunnels()
        assert tunnel.status == TunnelStatus.ERROR
        assert tunnel.id not in proxy.routes

    @pytest.mark.asyncio
    async def test_failed_route_not_served_after_later_reload(self, coordinator, proxy):
        first = await register(coordinator, "p1")
        second = await register(coordinator, "p2")
        proxy.fail_on.add("reload")
        with pytest.raises(ProxyReloadFailed):
            await coordinator.tunnels.create_tunnel(first.id, 3000, "alpha")
        proxy.fail_on.clear()

        beta = await coordinator.tunnels.create_tunnel(second.id, 4000, "beta")

        assert list(proxy.routes) == [beta.id]

    @pytest.mark.asyncio
    async def test_error_tunnel_does_not_pin_subdomain(self, coordinator, proxy):
        peer = await register(coordinator)
        proxy.fail_on.add("write")
        with pytest.raises(ProxyWriteFailed):
            await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")
        proxy.fail_on.clear()

        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        assert tunnel.status == TunnelStatus.ACTIVE
        statuses = sorted(t.status.value for t in coordinator.storage.list_tunnels())
        assert statuses == ["active", "closed"]

    @pytest.mark.asyncio
    async def test_concurrent_creates_leave_one_active(self, coordinator):
        peer = await register(coordinator)

        await asyncio.gather(
            *(coordinator.tunnels.create_tunnel(peer.id, 3000 + i) for i in range(4))
        )

        assert len(coordinator.tunnels.list_active()) == 1
        assert len(coordinator.storage.list_tunnels()) == 4


class TestCloseTunnel:
    """TunnelManager.close_tunnel."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, coordinator, proxy):
        peer = await register(coordinator)
        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        first = await coordinator.tunnels.close_tunnel(tunnel.id)
        second = await coordinator.tunnels.close_tunnel(tunnel.id)

        assert first.status == TunnelStatus.CLOSED
        assert second.status == TunnelStatus.CLOSED
        assert second.end_time == first.end_time
        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_retried_close_removes_leftover_route(self, coordinator, proxy):
        peer = await register(coordinator)
        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")
        await coordinator.tunnels.close_tunnel(tunnel.id)
        proxy.routes[tunnel.id] = "stale"

        await coordinator.tunnels.close_tunnel(tunnel.id)

        assert proxy.routes == {}

    @pytest.mark.asyncio
    async def test_close_unknown(self, coordinator):
        with pytest.raises(TunnelNotFoundError):
            await coordinator.tunnels.close_tunnel("missing")


class TestReadsAndTraffic:
    """Read projections and traffic counters."""

    @pytest.mark.asyncio
    async def test_public_url_follows_base_domain(self, coordinator):
        peer = await register(coordinator)
        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        coordinator.storage.set_config_value(BASE_DOMAIN_KEY, "other.example.org")

        assert coordinator.tunnels.view(tunnel)["publicUrl"] == "https://alpha.other.example.org"

    @pytest.mark.asyncio
    async def test_public_url_needs_domain(self, coordinator):
        peer = await register(coordinator)
        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")
        coordinator.storage.delete_config_value(BASE_DOMAIN_KEY)

        with pytest.raises(ConfigurationMissingError):
            coordinator.tunnels.public_url(tunnel)

    @pytest.mark.asyncio
    async def test_record_traffic(self, coordinator):
        peer = await register(coordinator)
        tunnel = await coordinator.tunnels.create_tunnel(peer.id, 3000, "alpha")

        coordinator.tunnels.record_traffic(tunnel.id, bytes_sent=100, requests=1)
        updated = coordinator.tunnels.record_traffic(tunnel.id, bytes_received=50, requests=2)

        assert updated.bytes_sent == 100
        assert updated.bytes_received == 50
        assert updated.request_count == 3

    def test_record_traffic_rejects_negative(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.tunnels.record_traffic("any", bytes_sent=-1)

    def test_record_traffic_unknown_tunnel(self, coordinator):
        with pytest.raises(TunnelNotFoundError):
            coordinator.tunnels.record_traffic("missing", bytes_sent=1)
