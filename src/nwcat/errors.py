"""
Error taxonomy for nwcat.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""


class NetcatError(Exception):
    """Base error for nwcat."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.cause is not None:
            return f"{message}: {self.cause}"
        return message


class ConfigurationError(NetcatError):
    """Invalid arguments or settings."""
    pass


class ConnectionStateError(NetcatError):
    """Operation not allowed in the connection's current state."""
    pass


class SetupWaitingError(NetcatError):
    """Setup cannot complete right now; it will be retried."""
    pass


class SetupFailedError(NetcatError):
    """Setup failed for good (handshake rejected, hard network error)."""
    pass


class RuntimeFailedError(NetcatError):
    """Transport failure on a connection that was ready."""
    pass


class LocalIOError(NetcatError):
    """Reading stdin or writing stdout failed."""
    pass


class ConnectionCancelledError(NetcatError):
    """The connection was cancelled."""
    pass


class DiscoveryError(NetcatError):
    """A discovery-service name could not be resolved."""

    def __init__(self, message: str, cause: BaseException | None = None, transient: bool = False):
        super().__init__(message, cause)
        self.transient = transient
