"""Coordinator service: wiring, HTTP API and entry point."""

from gatehouse.server.api import create_app
from gatehouse.server.coordinator import Coordinator

__all__ = ["Coordinator", "create_app"]
