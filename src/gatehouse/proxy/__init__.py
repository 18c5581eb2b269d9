"""Reverse proxy route artifacts."""

from gatehouse.proxy.drivers import (
    MemoryProxyDriver,
    NginxDriver,
    ReverseProxyDriver,
)
from gatehouse.proxy.routes import RouteProvisioner, RouteSpec, render_route

__all__ = [
    "MemoryProxyDriver",
    "NginxDriver",
    "ReverseProxyDriver",
    "RouteProvisioner",
    "RouteSpec",
    "render_route",
]
