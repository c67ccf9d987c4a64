"""
Error types raised by the Asterisk transport clients.

"Not found" is deliberately absent: a device that is not in use is a normal
outcome and comes back as ``None`` from the lookup, never as an exception.
"""

from typing import Optional


class AsteriskError(Exception):
    """Base class for every failure talking to the telephony control plane."""


class InvalidConnectionError(AsteriskError, ValueError):
    """Connection parameters are malformed. Raised before any network I/O."""


class UnreachableError(AsteriskError):
    """DNS failure, refused connection or socket-level timeout."""

    def __init__(self, host: str, port, reason: str = ''):
        self.host = host
        self.port = port
        self.reason = reason
        msg = f"Cannot connect to {host}:{port}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class AuthError(AsteriskError):
    """The remote accepted the connection but rejected the credentials."""


class ProtocolError(AsteriskError):
    """The remote rejected the command or sent a response we cannot use."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class BulkTimeoutError(AsteriskError):
    """A bulk AMI command never received its completion event."""

    def __init__(self, action: str, complete_event: str, timeout: float):
        self.action = action
        self.complete_event = complete_event
        self.timeout = timeout
        super().__init__(f"{action}: no {complete_event} within {timeout:g}s")
