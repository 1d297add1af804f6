"""
Connection state machine.

A connection owns one (optionally secured) channel to a single peer and
drives it through setup, readiness and teardown:

    setup -> waiting <-> setup -> ready -> failed -> cancelled
    setup -> failed -> cancelled
    any state -> cancelled (explicit cancel)

All state callbacks are delivered in order on the event loop that was
running when start() was called. Nothing is delivered after cancelled.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import errno
import itertools
import logging
import socket
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from OpenSSL import SSL

from nwcat.channel import (
    DEFAULT_MESSAGE,
    RECEIVE_MAXIMUM,
    Channel,
    MessageContext,
    ReceivedUnit,
    open_channel,
)
from nwcat.config import NetcatSettings, get_settings
from nwcat.errors import (
    ConnectionCancelledError,
    ConnectionStateError,
    DiscoveryError,
    NetcatError,
    RuntimeFailedError,
    SetupFailedError,
    SetupWaitingError,
)
from nwcat.parameters import TransportParameters

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that mean "not now" rather than "never"
TRANSIENT_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ENETUNREACH,
    errno.EHOSTUNREACH,
    errno.ENETDOWN,
    errno.ETIMEDOUT,
}


class ConnectionState(str, Enum):
    """Connection lifecycle states."""
    SETUP = "setup"
    WAITING = "waiting"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


StateHandler = Callable[[ConnectionState, NetcatError | None], None]


def is_transient(error: BaseException) -> bool:
    """Whether a setup error is worth waiting out."""
    if isinstance(error, DiscoveryError):
        return error.transient
    if isinstance(error, TimeoutError):
        return True
    if isinstance(error, socket.gaierror):
        return error.errno == socket.EAI_AGAIN
    if isinstance(error, OSError):
        return error.errno in TRANSIENT_ERRNOS
    return False


class Connection:
    """
    One transport connection to a single peer.

    Usage:
        connection = Connection.create(Endpoint("example.com", "80"), parameters)
        connection.start(on_state_change)
        # on ready:
        unit = await connection.receive()
        await connection.send(b"data")
        # when done:
        connection.cancel()
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        endpoint: Any,
        parameters: TransportParameters,
        settings: NetcatSettings | None = None,
        channel: Channel | None = None,
    ):
        self.id = next(Connection._ids)
        self.endpoint = endpoint
        self.parameters = parameters
        self.settings = settings or get_settings()
        self.state = ConnectionState.SETUP
        self.error: NetcatError | None = None

        self._channel = channel
        self._inbound = channel is not None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._handler: StateHandler | None = None
        self._setup_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Future] = set()
        self._cancel_requested = False

    @classmethod
    def create(
        cls,
        endpoint: Any,
        parameters: TransportParameters,
        settings: NetcatSettings | None = None,
    ) -> "Connection":
        """Outbound connection; no I/O happens until start()."""
        return cls(endpoint, parameters, settings)

    @classmethod
    def inbound(
        cls,
        channel: Channel,
        parameters: TransportParameters,
        settings: NetcatSettings | None = None,
    ) -> "Connection":
        """Connection handed over already connected by a listener."""
        return cls(None, parameters, settings, channel)

    @property
    def is_inbound(self) -> bool:
        return self._inbound

    @property
    def peer(self) -> Any:
        return self._channel.peer if self._channel is not None else None

    def describe(self) -> str:
        if self.endpoint is not None:
            return self.endpoint.describe()
        peer = self.peer
        if isinstance(peer, tuple):
            return f"{peer[0]} port {peer[1]}"
        return str(peer)

    # Lifecycle

    def start(self, on_state_change: StateHandler) -> None:
        """Bind the running event loop as delivery context and begin setup."""
        if self._loop is not None:
            raise ConnectionStateError(f"connection {self.id} already started")
        if self._cancel_requested:
            raise ConnectionStateError(f"connection {self.id} was cancelled")

        self._loop = asyncio.get_running_loop()
        self._handler = on_state_change
        self._setup_task = self._loop.create_task(self._setup(), name=f"nwcat-setup-{self.id}")

    async def _establish(self) -> None:
        if self._inbound:
            await asyncio.wait_for(
                self._channel.secure(self.parameters, server_side=True),
                self.settings.connect_timeout,
            )
        else:
            self._channel = await open_channel(self.endpoint, self.parameters, self.settings)

    async def _setup(self) -> None:
        delay = self.settings.retry_interval

        while True:
            try:
                await self._establish()
            except (OSError, SSL.Error, NetcatError) as e:
                if not self._inbound and is_transient(e):
                    self._transition(
                        ConnectionState.WAITING,
                        SetupWaitingError(f"connect to {self.describe()} waiting", e),
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.settings.retry_max_interval)
                    self._transition(ConnectionState.SETUP)
                    continue

                self._transition(
                    ConnectionState.FAILED,
                    SetupFailedError(f"connect to {self.describe()} failed", e),
                )
                return

            self._transition(ConnectionState.READY)
            return

    def cancel(self) -> None:
        """Request teardown; the handler observes cancelled later."""
        if self._cancel_requested:
            return
        self._cancel_requested = True

        if self._setup_task is not None:
            self._setup_task.cancel()
        for operation in list(self._inflight):
            operation.cancel()
        if self._channel is not None:
            self._channel.close()

        if self._loop is None:
            # Never started, nobody to tell
            self.state = ConnectionState.CANCELLED
            logger.debug(f"Connection {self.id} released before start")
            return

        self._transition(ConnectionState.CANCELLED)

    def _transition(self, state: ConnectionState, error: NetcatError | None = None) -> None:
        if self.state == ConnectionState.CANCELLED:
            return

        self.state = state
        self.error = error
        if error is not None:
            logger.debug(f"Connection {self.id} -> {state.value}: {error}")
        else:
            logger.debug(f"Connection {self.id} -> {state.value}")
        self._loop.call_soon(self._deliver, state, error)

    def _deliver(self, state: ConnectionState, error: NetcatError | None) -> None:
        if self._handler is not None:
            self._handler(state, error)

    # Data transfer

    def _check_ready(self) -> None:
        if self._cancel_requested:
            raise ConnectionCancelledError(f"connection {self.id} was cancelled")
        if self.state != ConnectionState.READY:
            raise ConnectionStateError(f"connection {self.id} is {self.state.value}, not ready")

    async def _guarded(self, operation: Awaitable[T]) -> T:
        # cancel() aborts whatever is in flight
        future = asyncio.ensure_future(operation)
        self._inflight.add(future)
        try:
            return await future
        finally:
            self._inflight.discard(future)

    async def receive(self, minimum: int = 1, maximum: int = RECEIVE_MAXIMUM) -> ReceivedUnit:
        """Receive the next unit.

        Transport errors fail the connection and come back in ``unit.error``.
        """
        self._check_ready()
        try:
            return await self._guarded(self._channel.receive(minimum, maximum))
        except (OSError, SSL.Error) as e:
            error = RuntimeFailedError(f"receive from {self.describe()} failed", e)
            self._transition(ConnectionState.FAILED, error)
            return ReceivedUnit(error=error)

    async def send(
        self,
        data: bytes,
        context: MessageContext = DEFAULT_MESSAGE,
        is_complete: bool = True,
    ) -> None:
        """Send one message.

        Raises RuntimeFailedError (and fails the connection) on transport errors.
        """
        self._check_ready()
        try:
            await self._guarded(self._channel.send(data, context, is_complete))
        except (OSError, SSL.Error) as e:
            error = RuntimeFailedError(f"send to {self.describe()} failed", e)
            self._transition(ConnectionState.FAILED, error)
            raise error from e
