"""Tunnel lifecycle."""

from gatehouse.tunnels.manager import (
    TunnelManager,
    generate_subdomain,
    validate_port,
    validate_subdomain,
)

__all__ = ["TunnelManager", "generate_subdomain", "validate_port", "validate_subdomain"]
