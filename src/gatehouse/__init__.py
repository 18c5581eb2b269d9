"""Gatehouse - expose local services through WireGuard peers and nginx routes."""

__version__ = "0.3.0"

__all__ = ["__version__"]
