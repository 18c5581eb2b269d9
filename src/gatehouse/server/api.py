"""HTTP surface of the coordinator.

Every route under the API prefix requires an ``X-API-Key`` header; only
``/healthz`` is open. Errors are rendered as ``{"error": code, "message": text}``
with the status their exception class carries.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from aiohttp import web
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, StrictInt
from pydantic import ValidationError as PydanticValidationError

from gatehouse import __version__
from gatehouse.core.exceptions import GatehouseError, UnauthorizedError, ValidationError
from gatehouse.observability.metrics import generate_metrics, get_content_type
from gatehouse.security.apikeys import API_KEY_HEADER
from gatehouse.server.coordinator import MAX_NAME_LENGTH, Coordinator
from gatehouse.store.models import TunnelStatus

logger = structlog.get_logger()

COORDINATOR_KEY = web.AppKey("coordinator", Coordinator)
OPEN_PATHS = frozenset({"/healthz"})


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)


class CreateTunnelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    peer_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("peerId", "clientId", "peer_id"),
    )
    local_port: StrictInt = Field(
        ge=1,
        le=65535,
        validation_alias=AliasChoices("localPort", "local_port"),
    )
    subdomain: str | None = Field(default=None, min_length=1, max_length=63)


class ClientStatusRequest(BaseModel):
    is_active: StrictBool = Field(validation_alias=AliasChoices("isActive", "is_active"))


class TrafficRequest(BaseModel):
    bytes_sent: StrictInt = Field(
        default=0, ge=0, validation_alias=AliasChoices("bytesSent", "bytes_sent")
    )
    bytes_received: StrictInt = Field(
        default=0, ge=0, validation_alias=AliasChoices("bytesReceived", "bytes_received")
    )
    requests: StrictInt = Field(default=0, ge=0)


async def _parse(request: web.Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "body"
        raise ValidationError(f"{field}: {first.get('msg', 'invalid value')}") from e


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except GatehouseError as e:
        if e.status >= 500:
            logger.error("Request failed", path=request.path, code=e.code, error=e.message)
        else:
            logger.info("Request rejected", path=request.path, code=e.code, error=e.message)
        return web.json_response(e.to_dict(), status=e.status)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        code = (e.reason or "error").lower().replace(" ", "_")
        return web.json_response({"error": code, "message": e.reason}, status=e.status)
    except Exception:
        logger.exception("Unhandled error", path=request.path)
        return web.json_response(
            {"error": "internal_error", "message": "Internal server error"},
            status=500,
        )


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.path in OPEN_PATHS:
        return await handler(request)
    coordinator = request.app[COORDINATOR_KEY]
    if coordinator.api_keys.verify(request.headers.get(API_KEY_HEADER)) is None:
        raise UnauthorizedError(f"Missing or invalid {API_KEY_HEADER} header")
    return await handler(request)


class ApiHandlers:
    """Route handlers bound to one coordinator."""

    def __init__(self, coordinator: Coordinator) -> None:
        self.coordinator = coordinator

    @property
    def tunnels(self):
        return self.coordinator.tunnels

    async def health(self, request: web.Request) -> web.Response:
        try:
            healthy = self.coordinator.storage.ping()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            healthy = False
        if not healthy:
            return web.json_response({"status": "unhealthy"}, status=500)
        return web.json_response({"status": "healthy"})

    async def metrics(self, request: web.Request) -> web.Response:
        # The exposition content type carries its own charset parameter.
        return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})

    async def info(self, request: web.Request) -> web.Response:
        prefix = self.coordinator.settings.api_prefix
        return web.json_response(
            {
                "name": "gatehouse",
                "version": __version__,
                "endpoints": {
                    "register": f"POST {prefix}/register",
                    "tunnels": f"GET|POST {prefix}/tunnels",
                    "tunnel": f"GET|DELETE {prefix}/tunnels/{{id}}",
                    "clients": f"GET {prefix}/clients",
                    "client": f"GET|DELETE {prefix}/clients/{{id}}",
                    "clientStatus": f"PATCH {prefix}/clients/{{id}}/status",
                    "reconcile": f"POST {prefix}/admin/reconcile",
                },
            }
        )

    async def register(self, request: web.Request) -> web.Response:
        body = await _parse(request, RegisterRequest)
        result = await self.coordinator.register_client(body.name)
        return web.json_response(result, status=201)

    async def create_tunnel(self, request: web.Request) -> web.Response:
        body = await _parse(request, CreateTunnelRequest)
        tunnel = await self.tunnels.create_tunnel(body.peer_id, body.local_port, body.subdomain)
        return web.json_response({"tunnel": self.tunnels.view(tunnel)}, status=201)

    async def list_tunnels(self, request: web.Request) -> web.Response:
        status = request.query.get("status", TunnelStatus.ACTIVE.value)
        if status == "all":
            tunnels = self.tunnels.list_tunnels()
        else:
            try:
                tunnels = self.tunnels.list_tunnels(TunnelStatus(status))
            except ValueError as e:
                raise ValidationError(f"Unknown tunnel status: {status}") from e
        return web.json_response({"tunnels": [self.tunnels.view(t) for t in tunnels]})

    async def get_tunnel(self, request: web.Request) -> web.Response:
        tunnel = self.tunnels.get(request.match_info["tunnel_id"])
        return web.json_response({"tunnel": self.tunnels.view(tunnel)})

    async def close_tunnel(self, request: web.Request) -> web.Response:
        tunnel = await self.tunnels.close_tunnel(request.match_info["tunnel_id"])
        return web.json_response({"tunnel": tunnel.to_dict()})

    async def record_traffic(self, request: web.Request) -> web.Response:
        body = await _parse(request, TrafficRequest)
        tunnel = self.tunnels.record_traffic(
            request.match_info["tunnel_id"],
            bytes_sent=body.bytes_sent,
            bytes_received=body.bytes_received,
            requests=body.requests,
        )
        return web.json_response({"tunnel": tunnel.to_dict()})

    async def list_clients(self, request: web.Request) -> web.Response:
        include_inactive = request.query.get("all", "").lower() in ("1", "true", "yes")
        peers = self.coordinator.list_clients(include_inactive=include_inactive)
        return web.json_response({"clients": [p.to_dict() for p in peers]})

    async def get_client(self, request: web.Request) -> web.Response:
        peer = self.coordinator.get_client(request.match_info["peer_id"])
        tunnels = self.coordinator.storage.list_tunnels(peer_id=peer.id)
        live = await self.coordinator.live_peer(peer)
        return web.json_response(
            {
                "client": peer.to_dict(),
                "tunnels": [t.to_dict() for t in tunnels],
                "live": live.to_dict() if live else None,
            }
        )

    async def set_client_status(self, request: web.Request) -> web.Response:
        body = await _parse(request, ClientStatusRequest)
        peer = await self.coordinator.set_client_active(
            request.match_info["peer_id"], body.is_active
        )
        return web.json_response({"client": peer.to_dict()})

    async def delete_client(self, request: web.Request) -> web.Response:
        peer = await self.coordinator.remove_client(request.match_info["peer_id"])
        return web.json_response({"deleted": peer.id})

    async def reconcile(self, request: web.Request) -> web.Response:
        report = await self.coordinator.reconcile()
        return web.json_response(report.to_dict())


def create_app(coordinator: Coordinator) -> web.Application:
    """Build the aiohttp application for ``coordinator``."""
    app = web.Application(middlewares=[error_middleware, auth_middleware])
    app[COORDINATOR_KEY] = coordinator
    handlers = ApiHandlers(coordinator)
    prefix = coordinator.settings.api_prefix.rstrip("/")

    app.router.add_get("/healthz", handlers.health)
    app.router.add_get("/metrics", handlers.metrics)
    app.router.add_get(f"{prefix}/", handlers.info)
    app.router.add_post(f"{prefix}/register", handlers.register)
    app.router.add_post(f"{prefix}/tunnels", handlers.create_tunnel)
    app.router.add_get(f"{prefix}/tunnels", handlers.list_tunnels)
    app.router.add_get(f"{prefix}/tunnels/{{tunnel_id}}", handlers.get_tunnel)
    app.router.add_delete(f"{prefix}/tunnels/{{tunnel_id}}", handlers.close_tunnel)
    app.router.add_post(f"{prefix}/tunnels/{{tunnel_id}}/traffic", handlers.record_traffic)
    app.router.add_get(f"{prefix}/clients", handlers.list_clients)
    app.router.add_get(f"{prefix}/clients/{{peer_id}}", handlers.get_client)
    app.router.add_patch(f"{prefix}/clients/{{peer_id}}/status", handlers.set_client_status)
    app.router.add_delete(f"{prefix}/clients/{{peer_id}}", handlers.delete_client)
    app.router.add_post(f"{prefix}/admin/reconcile", handlers.reconcile)
    return app
