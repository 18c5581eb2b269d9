"""Core."""

from .config import (
    DEFAULT_DATA_DIR,
    ClientConfig,
    ServerSettings,
    clear_settings,
    flatten_config,
    get_settings,
    load_config_from_file,
)
from .exceptions import (
    AddressConflictError,
    AddressPoolExhaustedError,
    ConfigurationMissingError,
    ConflictError,
    ExternalToolError,
    GatehouseError,
    NetworkCommandFailed,
    NotFoundError,
    PeerNotFoundError,
    ProxyReloadFailed,
    ProxyWriteFailed,
    SubdomainTakenError,
    TunnelNotFoundError,
    UnauthorizedError,
    ValidationError,
    format_error_for_user,
)
from .logs import configure_logging
from .process import CommandResult, run_command

__all__ = [
    "DEFAULT_DATA_DIR",
    "ClientConfig",
    "ServerSettings",
    "clear_settings",
    "flatten_config",
    "get_settings",
    "load_config_from_file",
    "AddressConflictError",
    "AddressPoolExhaustedError",
    "ConfigurationMissingError",
    "ConflictError",
    "ExternalToolError",
    "GatehouseError",
    "NetworkCommandFailed",
    "NotFoundError",
    "PeerNotFoundError",
    "ProxyReloadFailed",
    "ProxyWriteFailed",
    "SubdomainTakenError",
    "TunnelNotFoundError",
    "UnauthorizedError",
    "ValidationError",
    "format_error_for_user",
    "configure_logging",
    "CommandResult",
    "run_command",
]
