"""Configuration types with environment variable support.

All server settings can be configured via environment variables with the
GATEHOUSE_ prefix, an optional .env file, or a YAML/TOML file passed with
--config. Example: GATEHOUSE_WG_INTERFACE=wg1 manages the wg1 interface.
"""

from __future__ import annotations

import ipaddress
import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DATA_DIR = Path.home() / ".gatehouse"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ServerSettings(BaseSettings):
    """Coordinator settings.

    Example:
        settings = ServerSettings(base_domain="tunnels.example.com")
        print(settings.network, settings.database_path)
    """

    model_config = SettingsConfigDict(
        env_prefix="GATEHOUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_bind: str = Field(
        default="0.0.0.0:3000",
        description="host:port the HTTP API listens on.",
    )
    api_prefix: str = Field(
        default="/api/v1",
        description="Common prefix for all versioned API routes.",
    )
    data_dir: Path = Field(
        default=DEFAULT_DATA_DIR / "server",
        description="Directory holding the database and generated interface config.",
    )
    db_path: Path | None = Field(
        default=None,
        description="SQLite database path. Defaults to <data_dir>/gatehouse.db.",
    )
    base_domain: str | None = Field(
        default=None,
        description="Public base domain. Seeded into the config table at boot.",
    )
    endpoint: str | None = Field(
        default=None,
        description="Public host:port of the WireGuard listener handed to clients.",
    )
    wg_interface: str = Field(
        default="wg0",
        description="WireGuard interface name.",
    )
    wg_network: str = Field(
        default="10.8.0.0/24",
        description="CIDR range client addresses are drawn from.",
    )
    wg_server_address: str = Field(
        default="10.8.0.1",
        description="Server address inside wg_network. Never handed to clients.",
    )
    wg_listen_port: int = Field(
        default=51820,
        ge=1,
        le=65535,
        description="WireGuard UDP listen port.",
    )
    wg_dns: str = Field(
        default="1.1.1.1, 8.8.8.8",
        description="DNS servers written into client configs.",
    )
    wg_manage_interface: bool = Field(
        default=False,
        description="Write the server interface config and bring it up with wg-quick at boot.",
    )
    address_policy: Literal["skip-occupied", "reject"] = Field(
        default="skip-occupied",
        description="What the allocator does when the cursor lands on an occupied address.",
    )
    nginx_sites_path: Path = Field(
        default=Path("/etc/nginx/sites-enabled"),
        description="Directory scanned by nginx for route artifacts.",
    )
    tls_cert_dir: Path = Field(
        default=Path("/etc/letsencrypt/live"),
        description="Directory holding <base_domain>/fullchain.pem and privkey.pem.",
    )
    nginx_log_dir: Path = Field(
        default=Path("/var/log/nginx"),
        description="Directory for per-tunnel access and error logs.",
    )
    use_sudo: bool = Field(
        default=True,
        description="Prefix privileged wg/nginx commands with sudo.",
    )
    command_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for interface commands (seconds).",
    )
    reload_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for nginx test/reload commands (seconds).",
    )
    reconcile_on_start: bool = Field(
        default=True,
        description="Run the reconciler before serving requests.",
    )
    reset_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts per removal during a reset sweep.",
    )
    activity_interval: float = Field(
        default=60.0,
        description="Seconds between interface activity samples. 0 disables sampling.",
    )
    log_level: Literal["debug", "info", "warning", "error"] = "info"
    log_json: bool = False

    @model_validator(mode="after")
    def _check_network(self) -> ServerSettings:
        try:
            network = ipaddress.IPv4Network(self.wg_network, strict=False)
            server = ipaddress.IPv4Address(self.wg_server_address)
        except ValueError as e:
            raise ValueError(f"Invalid WireGuard addressing: {e}") from e
        if server not in network:
            raise ValueError(f"wg_server_address {server} is outside wg_network {network}")
        if network.num_addresses < 4:
            raise ValueError(f"wg_network {network} is too small to hold clients")
        return self

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(self.wg_network, strict=False)

    @property
    def server_address(self) -> ipaddress.IPv4Address:
        return ipaddress.IPv4Address(self.wg_server_address)

    @property
    def database_path(self) -> Path:
        return self.db_path or self.data_dir / "gatehouse.db"

    @property
    def interface_config_path(self) -> Path:
        return self.data_dir / f"{self.wg_interface}.conf"

    def to_display_dict(self) -> dict[str, Any]:
        """Export current settings as a nested dictionary for display."""
        return {
            "api": {
                "bind": self.api_bind,
                "prefix": self.api_prefix,
            },
            "storage": {
                "data_dir": str(self.data_dir),
                "database": str(self.database_path),
            },
            "wireguard": {
                "interface": self.wg_interface,
                "network": self.wg_network,
                "server_address": self.wg_server_address,
                "listen_port": self.wg_listen_port,
                "endpoint": self.endpoint,
                "manage_interface": self.wg_manage_interface,
                "address_policy": self.address_policy,
            },
            "proxy": {
                "base_domain": self.base_domain,
                "sites_path": str(self.nginx_sites_path),
                "tls_cert_dir": str(self.tls_cert_dir),
                "log_dir": str(self.nginx_log_dir),
            },
            "runtime": {
                "use_sudo": self.use_sudo,
                "command_timeout": self.command_timeout,
                "reload_timeout": self.reload_timeout,
                "reconcile_on_start": self.reconcile_on_start,
                "reset_retries": self.reset_retries,
                "activity_interval": self.activity_interval,
                "log_level": self.log_level,
                "log_json": self.log_json,
            },
        }


class ClientConfig(BaseModel):
    """Client-side state persisted between CLI invocations."""

    server_url: str = "http://localhost:3000"
    api_prefix: str = "/api/v1"
    api_key: str | None = Field(default=None, repr=False)
    peer_id: str | None = None
    assigned_address: str | None = None
    tunnels: dict[str, dict[str, Any]] = Field(default_factory=dict)
    timeout: float = 10.0


_settings: ServerSettings | None = None


def get_settings() -> ServerSettings:
    """Get the global settings instance.

    The instance is created once from the environment and cached for the
    lifetime of the process. Call clear_settings() first to reload it.
    """
    global _settings
    if _settings is None:
        _settings = ServerSettings()
    return _settings


def clear_settings() -> None:
    """Clear the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
