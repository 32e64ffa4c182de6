from __future__ import annotations

from typing import Literal, Optional

BackendErrorKind = Literal["network", "bad_status", "decode_error"]


class GatewayError(Exception):
    """Base class for every error raised by the gateway core."""


class ConfigError(GatewayError):
    """Missing API key, invalid base URL and similar settings problems."""


class BindError(GatewayError):
    """The listener could not be bound (invalid port or port in use)."""

    def __init__(self, port: int, reason: str):
        super().__init__(f"cannot listen on port {port}: {reason}")
        self.port = port
        self.reason = reason


class ProtocolError(GatewayError):
    """Malformed HTTP request or response framing."""


class BackendError(GatewayError):
    def __init__(
        self,
        backend: str,
        kind: BackendErrorKind,
        message: str,
        *,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.backend = backend
        self.kind = kind
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = f"{self.backend}: {self.args[0]}"
        if self.status is not None:
            base += f" (status {self.status})"
        return base


class TransportError(BackendError):
    """DNS, connect and timeout failures talking to a backend."""

    def __init__(self, backend: str, message: str):
        super().__init__(backend, "network", message)
