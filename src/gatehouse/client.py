"""Client side of the API: an httpx wrapper plus state kept between CLI runs."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import httpx
import structlog

from gatehouse.core.config import DEFAULT_DATA_DIR, ClientConfig
from gatehouse.core.exceptions import GatehouseError
from gatehouse.security.apikeys import API_KEY_HEADER

logger = structlog.get_logger()

STATE_PATH = DEFAULT_DATA_DIR / "client.json"
WG_CONFIG_PATH = DEFAULT_DATA_DIR / "gatehouse.conf"


class APIError(GatehouseError):
    """An error response from the coordinator, carrying its code and status."""

    def __init__(self, message: str, *, code: str = "api_error", status: int = 500) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


def _write_private(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    tmp.replace(path)


def load_state(path: Path = STATE_PATH) -> ClientConfig:
    if not path.exists():
        return ClientConfig()
    try:
        return ClientConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValueError(f"Corrupt client state in {path}: {e}") from e


def save_state(state: ClientConfig, path: Path = STATE_PATH) -> None:
    _write_private(path, state.model_dump_json(indent=2))


def save_interface_config(content: str, path: Path = WG_CONFIG_PATH) -> Path:
    """Store the WireGuard config; it holds the private key, so 0600."""
    _write_private(path, content)
    return path


class GatehouseClient:
    """Thin synchronous client for the coordinator API.

    Example:
        with GatehouseClient("http://vpn.example.com:3000", api_key=key) as client:
            result = client.register("laptop")
    """

    def __init__(
        self,
        server_url: str,
        *,
        api_key: str | None = None,
        api_prefix: str = "/api/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {API_KEY_HEADER: api_key} if api_key else {}
        self._http = httpx.Client(
            base_url=server_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.api_prefix = api_prefix.rstrip("/")

    @classmethod
    def from_state(cls, state: ClientConfig) -> GatehouseClient:
        return cls(
            state.server_url,
            api_key=state.api_key,
            api_prefix=state.api_prefix,
            timeout=state.timeout,
        )

    def __enter__(self) -> GatehouseClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = path if path.startswith("/healthz") else f"{self.api_prefix}{path}"
        try:
            response = self._http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise APIError(
                f"Could not reach {self._http.base_url}: {e}", code="unreachable", status=0
            ) from e
        try:
            body = response.json()
        except json.JSONDecodeError:
            body = {}
        if response.is_error:
            code = body.get("error", "api_error") if isinstance(body, dict) else "api_error"
            message = body.get("message") if isinstance(body, dict) else None
            logger.debug("API error", method=method, url=url, status=response.status_code)
            raise APIError(
                message or f"{method} {url} failed with HTTP {response.status_code}",
                code=code,
                status=response.status_code,
            )
        return body

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/healthz")

    def info(self) -> dict[str, Any]:
        return self._request("GET", "/")

    def register(self, name: str) -> dict[str, Any]:
        return self._request("POST", "/register", json={"name": name})

    def create_tunnel(
        self, peer_id: str, local_port: int, subdomain: str | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"peerId": peer_id, "localPort": local_port}
        if subdomain:
            payload["subdomain"] = subdomain
        return self._request("POST", "/tunnels", json=payload)["tunnel"]

    def close_tunnel(self, tunnel_id: str) -> dict[str, Any]:
        return self._request("DELETE", f"/tunnels/{tunnel_id}")["tunnel"]

    def list_tunnels(self, status: str = "active") -> list[dict[str, Any]]:
        return self._request("GET", "/tunnels", params={"status": status})["tunnels"]

    def get_tunnel(self, tunnel_id: str) -> dict[str, Any]:
        return self._request("GET", f"/tunnels/{tunnel_id}")["tunnel"]

    def list_clients(self, include_inactive: bool = False) -> list[dict[str, Any]]:
        params = {"all": "true"} if include_inactive else None
        return self._request("GET", "/clients", params=params)["clients"]

    def get_client(self, peer_id: str) -> dict[str, Any]:
        return self._request("GET", f"/clients/{peer_id}")
