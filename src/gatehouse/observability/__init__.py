from gatehouse.observability.metrics import (
    ACTIVE_PEERS,
    ACTIVE_TUNNELS,
    EXTERNAL_COMMAND_DURATION,
    EXTERNAL_COMMANDS,
    PROXY_RELOADS,
    RECONCILE_ACTIONS,
    REGISTRATIONS,
    TUNNEL_OPERATIONS,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "REGISTRATIONS",
    "TUNNEL_OPERATIONS",
    "EXTERNAL_COMMANDS",
    "EXTERNAL_COMMAND_DURATION",
    "PROXY_RELOADS",
    "RECONCILE_ACTIONS",
    "ACTIVE_TUNNELS",
    "ACTIVE_PEERS",
    "generate_metrics",
    "get_content_type",
]
