"""Error taxonomy for the coordinator.

Every error a request can produce derives from GatehouseError and carries a
stable machine-readable code plus the HTTP status the API layer answers with.
Lookup and validation errors are raised before any side effect happens;
external tool failures may leave partial state behind for the reconciler.
"""

from __future__ import annotations

from typing import Any


class GatehouseError(Exception):
    """Base class for all coordinator errors."""

    code: str = "internal_error"
    status: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(GatehouseError):
    """Malformed or out-of-range request input."""

    code = "invalid_request"
    status = 400


class NotFoundError(GatehouseError):
    code = "not_found"
    status = 404


class PeerNotFoundError(NotFoundError):
    code = "peer_not_found"


class TunnelNotFoundError(NotFoundError):
    code = "tunnel_not_found"


class ConflictError(GatehouseError):
    code = "conflict"
    status = 409


class SubdomainTakenError(ConflictError):
    code = "subdomain_taken"


class AddressConflictError(ConflictError):
    """An allocated address or key collides with an existing peer."""

    code = "address_conflict"


class AddressPoolExhaustedError(ConflictError):
    code = "address_pool_exhausted"


class UnauthorizedError(GatehouseError):
    code = "unauthorized"
    status = 401


class ConfigurationMissingError(GatehouseError):
    """A required runtime setting (e.g. the base domain) is not configured."""

    code = "configuration_missing"
    status = 500


class ExternalToolError(GatehouseError):
    """An external command exited non-zero, could not start, or timed out."""

    code = "external_tool_failure"
    status = 500

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ) -> None:
        details: dict[str, Any] = {}
        if command:
            details["command"] = " ".join(command)
        if returncode is not None:
            details["returncode"] = returncode
        if timed_out:
            details["timed_out"] = True
        super().__init__(message, details=details)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out


class NetworkCommandFailed(ExternalToolError):
    code = "network_command_failed"


class ProxyWriteFailed(ExternalToolError):
    code = "proxy_write_failed"


class ProxyReloadFailed(ExternalToolError):
    code = "proxy_reload_failed"


def format_error_for_user(error: BaseException) -> str:
    """Render an exception as a single line suitable for the CLI."""
    if isinstance(error, ExternalToolError):
        text = error.message
        if error.stderr:
            text = f"{text}: {error.stderr.strip()}"
        return text
    if isinstance(error, GatehouseError):
        return error.message
    return f"{type(error).__name__}: {error}"
