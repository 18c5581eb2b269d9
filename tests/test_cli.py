"""Tests for Gatehouse CLI."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from gatehouse.cli import _format_bytes, main
from gatehouse.client import APIError, load_state, save_state
from gatehouse.core.config import ClientConfig


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def server_env(tmp_path) -> dict[str, str]:
    return {
        "GATEHOUSE_DATA_DIR": str(tmp_path / "server"),
        "GATEHOUSE_BASE_DOMAIN": "tunnels.example.com",
    }


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "client" / "client.json"


def logged_in(state_path, **fields) -> None:
    save_state(ClientConfig(server_url="http://vpn:3000", api_key="secret", **fields), state_path)


class TestCLIBasics:
    """Basic CLI tests."""

    def test_help(self, runner):
        """Test --help shows help message."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "Gatehouse" in result.output
        assert "register" in result.output
        assert "server" in result.output

    def test_version_command(self, runner):
        """Test version command."""
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "COORDINATOR" in result.output
        assert "Version:" in result.output
        assert "Python:" in result.output


class TestClientCommands:
    """login / register / up / status against a mocked API client."""

    def test_login_saves_state(self, runner, state_path):
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.info.return_value = {"version": "0.3.0"}

            result = runner.invoke(
                main,
                ["--state", str(state_path), "login", "--server", "http://vpn:3000"],
                env={"GATEHOUSE_API_KEY": "secret"},
            )

        assert result.exit_code == 0
        assert "Logged in" in result.output
        state = load_state(state_path)
        assert (state.server_url, state.api_key) == ("http://vpn:3000", "secret")

    def test_login_with_bad_key(self, runner, state_path):
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client = client_cls.return_value.__enter__.return_value
            client.info.side_effect = APIError("Invalid API key", code="unauthorized", status=401)

            result = runner.invoke(
                main,
                ["--state", str(state_path), "login", "--server", "http://vpn:3000"],
                env={"GATEHOUSE_API_KEY": "wrong"},
            )

        assert result.exit_code == 1
        assert "Invalid API key" in result.output
        assert not state_path.exists()

    def test_register_requires_login(self, runner, state_path):
        result = runner.invoke(main, ["--state", str(state_path), "register", "laptop"])

        assert result.exit_code == 1
        assert "Not logged in" in result.output

    def test_register_writes_config(self, runner, state_path):
        logged_in(state_path)
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client_cls.from_state.return_value.register.return_value = {
                "peer": {"id": "p1", "name": "laptop", "assignedAddress": "10.8.0.2"},
                "interfaceConfig": "[Interface]\nAddress = 10.8.0.2/32\n",
            }

            result = runner.invoke(main, ["--state", str(state_path), "register", "laptop"])

        assert result.exit_code == 0
        assert "Registered" in result.output
        state = load_state(state_path)
        assert (state.peer_id, state.assigned_address) == ("p1", "10.8.0.2")
        config = state_path.with_name("gatehouse.conf")
        assert "Address = 10.8.0.2/32" in config.read_text()

    def test_up_requires_registration(self, runner, state_path):
        logged_in(state_path)

        result = runner.invoke(main, ["--state", str(state_path), "up", "3000"])

        assert result.exit_code == 1
        assert "Not registered" in result.output

    def test_up_records_tunnel(self, runner, state_path):
        logged_in(state_path, peer_id="p1", assigned_address="10.8.0.2")
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client = client_cls.from_state.return_value
            client.create_tunnel.return_value = {
                "id": "t1",
                "subdomain": "alpha",
                "publicUrl": "https://alpha.tunnels.example.com",
            }

            result = runner.invoke(
                main, ["--state", str(state_path), "up", "3000", "-s", "alpha"]
            )

        assert result.exit_code == 0
        client.create_tunnel.assert_called_once_with("p1", 3000, "alpha")
        assert list(load_state(state_path).tunnels) == ["t1"]

    def test_down_without_tunnels(self, runner, state_path):
        logged_in(state_path, peer_id="p1")
        with patch("gatehouse.cli.GatehouseClient"):
            result = runner.invoke(main, ["--state", str(state_path), "down"])

        assert result.exit_code == 0
        assert "No tunnel to close" in result.output

    def test_status_json(self, runner, state_path):
        logged_in(state_path, peer_id="p1")
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client = client_cls.from_state.return_value.__enter__.return_value
            client.health.return_value = {"status": "healthy"}

            result = runner.invoke(main, ["--state", str(state_path), "status", "--json"])

        assert result.exit_code == 0
        assert "healthy" in result.output
        assert "p1" in result.output

    def test_status_unreachable(self, runner, state_path):
        with patch("gatehouse.cli.GatehouseClient") as client_cls:
            client = client_cls.from_state.return_value.__enter__.return_value
            client.health.side_effect = APIError("Could not reach", code="unreachable", status=0)

            result = runner.invoke(main, ["--state", str(state_path), "status"])

        assert result.exit_code == 0
        assert "unreachable" in result.output
        assert "Not registered" in result.output


class TestServerCommands:
    """Maintenance commands run against a local database with in-memory drivers."""

    def test_reset_dry_run(self, runner, server_env):
        result = runner.invoke(main, ["server", "reset", "--yes", "--dry-run"], env=server_env)

        assert result.exit_code == 0
        assert "Reset complete" in result.output

    def test_reset_asks_for_confirmation(self, runner, server_env):
        result = runner.invoke(main, ["server", "reset", "--dry-run"], env=server_env, input="n\n")

        assert result.exit_code == 1
        assert "Reset complete" not in result.output

    def test_reconcile_dry_run(self, runner, server_env):
        result = runner.invoke(main, ["server", "reconcile", "--dry-run"], env=server_env)

        assert result.exit_code == 0
        assert "Nothing to do" in result.output

    def test_set_domain(self, runner, server_env):
        result = runner.invoke(
            main, ["server", "set-domain", "New.Example.org", "--dry-run"], env=server_env
        )

        assert result.exit_code == 0
        assert "new.example.org" in result.output

    def test_set_domain_invalid(self, runner, server_env):
        result = runner.invoke(
            main, ["server", "set-domain", "not a domain", "--dry-run"], env=server_env
        )

        assert result.exit_code == 1

    def test_keys_rotate(self, runner, server_env):
        result = runner.invoke(main, ["keys", "rotate", "--yes"], env=server_env)

        assert result.exit_code == 0
        assert "New API key" in result.output


class TestConfigShow:
    """config show."""

    def test_tables(self, runner, server_env):
        result = runner.invoke(main, ["config", "show"], env=server_env)

        assert result.exit_code == 0
        assert "Wireguard" in result.output
        assert "tunnels.example.com" in result.output

    def test_json_section(self, runner, server_env):
        result = runner.invoke(
            main, ["config", "show", "--section", "wireguard", "--json"], env=server_env
        )

        assert result.exit_code == 0
        assert '"interface": "wg0"' in result.output
        assert "base_domain" not in result.output

    def test_unknown_section(self, runner, server_env):
        result = runner.invoke(main, ["config", "show", "-s", "bogus"], env=server_env)

        assert result.exit_code == 1
        assert "Unknown section" in result.output

    def test_config_file(self, runner, server_env, tmp_path):
        path = tmp_path / "gatehouse.toml"
        path.write_text('[wg]\ninterface = "wg5"\n')

        result = runner.invoke(
            main, ["config", "show", "--config", str(path), "--json"], env=server_env
        )

        assert result.exit_code == 0
        assert '"interface": "wg5"' in result.output


class TestFormatBytes:
    """Tests for _format_bytes helper."""

    def test_bytes(self):
        assert _format_bytes(0) == "0 B"
        assert _format_bytes(512) == "512 B"

    def test_kilobytes(self):
        assert _format_bytes(1024) == "1.0 KB"
        assert _format_bytes(1536) == "1.5 KB"

    def test_megabytes(self):
        assert _format_bytes(1024 * 1024) == "1.0 MB"

    def test_gigabytes(self):
        assert _format_bytes(1024**3) == "1.0 GB"

    def test_terabytes(self):
        assert _format_bytes(1024**4) == "1.0 TB"
