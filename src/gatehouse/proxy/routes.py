"""Route artifact rendering and the route provisioner.

An artifact is derived entirely from a tunnel, its peer and the base domain;
it is regenerated on demand and never edited in place.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog

from gatehouse.core.exceptions import ProxyReloadFailed
from gatehouse.observability.metrics import PROXY_RELOADS
from gatehouse.proxy.drivers import ReverseProxyDriver
from gatehouse.store.models import Peer, Tunnel

logger = structlog.get_logger()

PROXY_TIMEOUT = "60s"
TLS_CIPHERS = (
    "ECDHE-RSA-AES256-GCM-SHA512:DHE-RSA-AES256-GCM-SHA512:"
    "ECDHE-RSA-AES256-GCM-SHA384:DHE-RSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-SHA384"
)


@dataclass(frozen=True)
class RouteSpec:
    tunnel_id: str
    peer_id: str
    subdomain: str
    base_domain: str
    target_address: str
    target_port: int

    @property
    def server_name(self) -> str:
        return f"{self.subdomain}.{self.base_domain}"

    @classmethod
    def for_tunnel(cls, tunnel: Tunnel, peer: Peer, base_domain: str) -> RouteSpec:
        return cls(
            tunnel_id=tunnel.id,
            peer_id=peer.id,
            subdomain=tunnel.subdomain,
            base_domain=base_domain,
            target_address=peer.address,
            target_port=tunnel.local_port,
        )


def render_route(spec: RouteSpec, *, tls_cert_dir: Path, log_dir: Path) -> str:
    """Render the nginx server blocks for one tunnel."""
    cert_dir = Path(tls_cert_dir) / spec.base_domain
    log_dir = Path(log_dir)
    return f"""\
# Tunnel: {spec.tunnel_id} (Peer: {spec.peer_id})
server {{
    listen 80;
    server_name {spec.server_name};

    location / {{
        return 301 https://$host$request_uri;
    }}
}}

server {{
    listen 443 ssl;
    server_name {spec.server_name};

    ssl_certificate {cert_dir / "fullchain.pem"};
    ssl_certificate_key {cert_dir / "privkey.pem"};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers on;
    ssl_ciphers {TLS_CIPHERS};

    location / {{
        proxy_pass http://{spec.target_address}:{spec.target_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header X-Forwarded-Host $host;
        proxy_set_header X-Forwarded-Port $server_port;

        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection "upgrade";

        proxy_connect_timeout {PROXY_TIMEOUT};
        proxy_send_timeout {PROXY_TIMEOUT};
        proxy_read_timeout {PROXY_TIMEOUT};
    }}

    access_log {log_dir / f"tunnel_{spec.tunnel_id}.access.log"};
    error_log {log_dir / f"tunnel_{spec.tunnel_id}.error.log"};
}}
"""


class RouteProvisioner:
    """Writes and removes route artifacts and reloads the proxy.

    Artifact writes for different tunnels run in parallel. Reloads are
    coalesced: a caller waiting on the reload lock returns as soon as a
    reload that started after its request has succeeded.
    """

    def __init__(
        self,
        driver: ReverseProxyDriver,
        *,
        tls_cert_dir: Path,
        log_dir: Path,
    ) -> None:
        self.driver = driver
        self.tls_cert_dir = Path(tls_cert_dir)
        self.log_dir = Path(log_dir)
        self._reload_lock = asyncio.Lock()
        self._requested = 0
        self._completed = 0
        self._reload_pending = False

    def render(self, spec: RouteSpec) -> str:
        return render_route(spec, tls_cert_dir=self.tls_cert_dir, log_dir=self.log_dir)

    async def provision(self, tunnel: Tunnel, peer: Peer, base_domain: str) -> None:
        """Write the tunnel's artifact and reload.

        Raises ProxyWriteFailed if the artifact could not be written and
        ProxyReloadFailed if it was written but the proxy did not take it.
        """
        spec = RouteSpec.for_tunnel(tunnel, peer, base_domain)
        await self.write(spec)
        await self.reload()
        logger.info(
            "Route provisioned",
            tunnel_id=tunnel.id,
            host=spec.server_name,
            target=f"{spec.target_address}:{spec.target_port}",
        )

    async def write(self, spec: RouteSpec) -> None:
        await self.driver.write_route(spec.tunnel_id, self.render(spec))

    async def deprovision(self, tunnel_id: str) -> bool:
        """Remove the tunnel's artifact; an absent artifact is not an error.

        The proxy is reloaded when a file was removed, or when an earlier
        reload failed and the running config may still be stale.
        """
        removed = await self.driver.remove_route(tunnel_id)
        if removed or self._reload_pending:
            await self.reload()
        if removed:
            logger.info("Route deprovisioned", tunnel_id=tunnel_id)
        return removed

    async def list_routes(self) -> list[str]:
        return await self.driver.list_routes()

    async def reload(self) -> None:
        self._requested += 1
        ticket = self._requested
        async with self._reload_lock:
            if self._completed >= ticket:
                PROXY_RELOADS.labels(result="coalesced").inc()
                return
            covers = self._requested
            try:
                await self.driver.reload()
            except ProxyReloadFailed:
                self._reload_pending = True
                PROXY_RELOADS.labels(result="failed").inc()
                raise
            self._completed = max(self._completed, covers)
            self._reload_pending = False
            PROXY_RELOADS.labels(result="ok").inc()
