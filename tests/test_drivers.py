"""Tests for the WireGuard and in-memory interface drivers."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from gatehouse.core.exceptions import NetworkCommandFailed
from gatehouse.core.process import CommandResult
from gatehouse.network.drivers import MemoryInterfaceDriver, WireGuardDriver, parse_wg_dump

RUN = "gatehouse.network.drivers.run_command"

DUMP = (
    "SERVERPRIV=\tSERVERPUB=\t51820\toff\n"
    "PEER1=\t(none)\t203.0.113.5:40000\t10.8.0.2/32\t1700000000\t1024\t2048\t25\n"
    "PEER2=\t(none)\t(none)\t(none)\t0\t0\t0\toff\n"
)


def ok(stdout: str = "", returncode: int = 0) -> CommandResult:
    return CommandResult(args=[], returncode=returncode, stdout=stdout, stderr="")


class TestParseDump:
    """Tests for parse_wg_dump."""

    def test_skips_interface_line(self):
        peers = parse_wg_dump(DUMP)

        assert [p.public_key for p in peers] == ["PEER1=", "PEER2="]

    def test_peer_fields(self):
        peer = parse_wg_dump(DUMP)[0]

        assert peer.endpoint == "203.0.113.5:40000"
        assert peer.allowed_ips == ["10.8.0.2/32"]
        assert peer.addresses == ["10.8.0.2"]
        assert peer.latest_handshake.year == 2023
        assert (peer.rx_bytes, peer.tx_bytes) == (1024, 2048)

    def test_idle_peer(self):
        peer = parse_wg_dump(DUMP)[1]

        assert peer.endpoint is None
        assert peer.allowed_ips == []
        assert peer.latest_handshake is None

    def test_empty_output(self):
        assert parse_wg_dump("") == []


class TestWireGuardDriver:
    """Command lines issued by WireGuardDriver."""

    @pytest.mark.asyncio
    async def test_apply_peer(self):
        driver = WireGuardDriver("wg0", use_sudo=True, timeout=3)
        with patch(RUN, new=AsyncMock(return_value=ok())) as run:
            await driver.apply_peer("KEY=", "10.8.0.2")

        argv = run.await_args.args[0]
        assert argv == ["sudo", "wg", "set", "wg0", "peer", "KEY=", "allowed-ips", "10.8.0.2/32"]
        assert run.await_args.kwargs["timeout"] == 3
        assert run.await_args.kwargs["error_cls"] is NetworkCommandFailed

    @pytest.mark.asyncio
    async def test_retract_peer(self):
        driver = WireGuardDriver("wg1", use_sudo=False)
        with patch(RUN, new=AsyncMock(return_value=ok())) as run:
            await driver.retract_peer("KEY=")

        assert run.await_args.args[0] == ["wg", "set", "wg1", "peer", "KEY=", "remove"]

    @pytest.mark.asyncio
    async def test_generate_keypair_without_sudo(self):
        driver = WireGuardDriver("wg0", use_sudo=True)
        run = AsyncMock(side_effect=[ok("PRIV=\n"), ok("PUB=\n")])
        with patch(RUN, new=run):
            keys = await driver.generate_keypair()

        assert (keys.private_key, keys.public_key) == ("PRIV=", "PUB=")
        first, second = run.await_args_list
        assert first.args[0] == ["wg", "genkey"]
        assert second.args[0] == ["wg", "pubkey"]
        assert second.kwargs["input_text"] == "PRIV=\n"

    @pytest.mark.asyncio
    async def test_list_peers_parses_dump(self):
        driver = WireGuardDriver("wg0", use_sudo=False)
        with patch(RUN, new=AsyncMock(return_value=ok(DUMP))):
            peers = await driver.list_peers()

        assert len(peers) == 2

    @pytest.mark.asyncio
    async def test_is_up_does_not_raise(self):
        driver = WireGuardDriver("wg0", use_sudo=False)
        run = AsyncMock(return_value=ok(returncode=1))
        with patch(RUN, new=run):
            assert await driver.is_up() is False

        assert run.await_args.kwargs["check"] is False

    @pytest.mark.asyncio
    async def test_down_uses_config_path(self):
        driver = WireGuardDriver("wg0", use_sudo=False, config_path=Path("/srv/wg0.conf"))
        with patch(RUN, new=AsyncMock(return_value=ok())) as run:
            await driver.down()

        assert run.await_args.args[0] == ["wg-quick", "down", "/srv/wg0.conf"]


class TestMemoryInterfaceDriver:
    """In-memory stand-in."""

    @pytest.mark.asyncio
    async def test_apply_list_retract(self):
        driver = MemoryInterfaceDriver()

        await driver.apply_peer("KEY=", "10.8.0.2")
        assert [p.public_key for p in await driver.list_peers()] == ["KEY="]

        await driver.retract_peer("KEY=")
        assert await driver.list_peers() == []

    @pytest.mark.asyncio
    async def test_apply_fails_when_down(self):
        driver = MemoryInterfaceDriver(up=False)

        with pytest.raises(NetworkCommandFailed):
            await driver.apply_peer("KEY=", "10.8.0.2")

    @pytest.mark.asyncio
    async def test_injected_failure(self):
        driver = MemoryInterfaceDriver()
        driver.fail_on.add("list")

        with pytest.raises(NetworkCommandFailed):
            await driver.list_peers()
        assert driver.calls == [("list",)]

    @pytest.mark.asyncio
    async def test_keypairs_are_unique(self):
        driver = MemoryInterfaceDriver()

        a = await driver.generate_keypair()
        b = await driver.generate_keypair()

        assert a.public_key != b.public_key
