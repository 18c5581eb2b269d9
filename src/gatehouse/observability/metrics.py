from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

REGISTRATIONS = Counter(
    "gatehouse_registrations_total",
    "Client registrations",
    ["result"],
)

TUNNEL_OPERATIONS = Counter(
    "gatehouse_tunnel_operations_total",
    "Tunnel lifecycle operations",
    ["operation", "result"],  # operation: create/close
)

EXTERNAL_COMMANDS = Counter(
    "gatehouse_external_commands_total",
    "External tool invocations",
    ["tool", "result"],  # result: ok/error/timeout/missing
)

EXTERNAL_COMMAND_DURATION = Histogram(
    "gatehouse_external_command_duration_seconds",
    "External tool latency",
    ["tool"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

PROXY_RELOADS = Counter(
    "gatehouse_proxy_reloads_total",
    "Reverse proxy reloads",
    ["result"],  # result: ok/failed/coalesced
)

RECONCILE_ACTIONS = Counter(
    "gatehouse_reconcile_actions_total",
    "Drift repairs performed by the reconciler",
    ["action"],
)

ACTIVE_TUNNELS = Gauge(
    "gatehouse_active_tunnels",
    "Tunnels currently in status active",
)

ACTIVE_PEERS = Gauge(
    "gatehouse_active_peers",
    "Registered peers flagged active",
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
