"""Reverse proxy drivers.

A driver stores one route artifact per tunnel id and knows how to make the
proxy pick changes up. It does not render artifacts; see
``gatehouse.proxy.routes``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from gatehouse.core.exceptions import ProxyReloadFailed, ProxyWriteFailed
from gatehouse.core.process import run_command

logger = structlog.get_logger()

ROUTE_PREFIX = "tunnel-"
ROUTE_SUFFIX = ".conf"


class ReverseProxyDriver(ABC):
    @abstractmethod
    async def write_route(self, tunnel_id: str, content: str) -> None: ...

    @abstractmethod
    async def remove_route(self, tunnel_id: str) -> bool:
        """Remove the artifact. Returns False if it was already absent."""

    @abstractmethod
    async def list_routes(self) -> list[str]:
        """Tunnel ids that currently have an artifact."""

    @abstractmethod
    async def reload(self) -> None: ...


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Dot-prefixed so a concurrent reload's include glob never sees it.
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.chmod(0o644)
    tmp.replace(path)


class NginxDriver(ReverseProxyDriver):
    """Writes ``tunnel-<id>.conf`` files into an nginx include directory."""

    def __init__(
        self,
        sites_path: Path,
        *,
        use_sudo: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self.sites_path = Path(sites_path)
        self.use_sudo = use_sudo
        self.timeout = timeout

    def path_for(self, tunnel_id: str) -> Path:
        return self.sites_path / f"{ROUTE_PREFIX}{tunnel_id}{ROUTE_SUFFIX}"

    async def write_route(self, tunnel_id: str, content: str) -> None:
        path = self.path_for(tunnel_id)
        try:
            await asyncio.to_thread(_atomic_write, path, content)
        except OSError as e:
            logger.error("Route write failed", path=str(path), error=str(e))
            raise ProxyWriteFailed(f"Could not write {path}: {e}") from e
        logger.debug("Route written", path=str(path))

    async def remove_route(self, tunnel_id: str) -> bool:
        path = self.path_for(tunnel_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error("Route removal failed", path=str(path), error=str(e))
            raise ProxyWriteFailed(f"Could not remove {path}: {e}") from e
        logger.debug("Route removed", path=str(path))
        return True

    async def list_routes(self) -> list[str]:
        if not self.sites_path.is_dir():
            return []
        return sorted(
            p.name[len(ROUTE_PREFIX) : -len(ROUTE_SUFFIX)]
            for p in self.sites_path.glob(f"{ROUTE_PREFIX}*{ROUTE_SUFFIX}")
        )

    async def reload(self) -> None:
        sudo = ["sudo"] if self.use_sudo else []
        await run_command([*sudo, "nginx", "-t"], timeout=self.timeout, error_cls=ProxyReloadFailed)
        await run_command(
            [*sudo, "nginx", "-s", "reload"],
            timeout=self.timeout,
            error_cls=ProxyReloadFailed,
        )
        logger.info("nginx reloaded")


class MemoryProxyDriver(ReverseProxyDriver):
    """Keeps artifacts in a dict. ``fail_on`` injects write/remove/reload failures."""

    def __init__(self) -> None:
        self.routes: dict[str, str] = {}
        self.reloads = 0
        self.fail_on: set[str] = set()
        self.reload_delay = 0.0

    async def write_route(self, tunnel_id: str, content: str) -> None:
        if "write" in self.fail_on:
            raise ProxyWriteFailed(f"Could not write route for {tunnel_id}")
        self.routes[tunnel_id] = content

    async def remove_route(self, tunnel_id: str) -> bool:
        if "remove" in self.fail_on:
            raise ProxyWriteFailed(f"Could not remove route for {tunnel_id}")
        return self.routes.pop(tunnel_id, None) is not None

    async def list_routes(self) -> list[str]:
        return sorted(self.routes)

    async def reload(self) -> None:
        if self.reload_delay:
            await asyncio.sleep(self.reload_delay)
        if "reload" in self.fail_on:
            raise ProxyReloadFailed(
                "nginx exited with status 1",
                command=["nginx", "-s", "reload"],
                returncode=1,
                stderr="injected failure",
            )
        self.reloads += 1
