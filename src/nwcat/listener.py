"""
Listener: binds a local endpoint and admits one inbound connection at a time.

A second peer arriving while a connection is admitted is cancelled on the
spot, never queued and never started.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable

from nwcat.channel import DatagramChannel, DatagramProtocol, StreamChannel
from nwcat.config import NetcatSettings, get_settings
from nwcat.connection import Connection
from nwcat.errors import ConnectionStateError, NetcatError, SetupFailedError
from nwcat.parameters import Security, Transport, TransportParameters

logger = logging.getLogger(__name__)

DEFAULT_BIND_ADDRESS = "0.0.0.0"


class ListenerState(str, Enum):
    """Listener lifecycle states."""
    SETUP = "setup"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"


ListenerStateHandler = Callable[[ListenerState, NetcatError | None], None]
NewConnectionHandler = Callable[[Connection], None]


class ListenerDatagramProtocol(DatagramProtocol):
    """Hands every datagram to the listener's per-peer demultiplexer."""

    def __init__(self, listener: "Listener"):
        super().__init__()
        self._listener = listener

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self._listener._datagram_received(data, addr)


class Listener:
    """
    Single-tenant listener for TCP or UDP.

    Usage:
        listener = Listener.create(parameters)
        listener.start(on_state_change, on_new_connection)
        # on_new_connection only ever sees admitted connections
        listener.release(connection)  # once that connection is cancelled
        listener.cancel()
    """

    def __init__(self, parameters: TransportParameters, settings: NetcatSettings | None = None):
        self.parameters = parameters
        self.settings = settings or get_settings()
        self.state = ListenerState.SETUP
        self.error: NetcatError | None = None
        self.admitted: Connection | None = None
        self.port: int | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_state_change: ListenerStateHandler | None = None
        self._on_new_connection: NewConnectionHandler | None = None
        self._bind_task: asyncio.Task | None = None
        self._server: asyncio.Server | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._protocol: ListenerDatagramProtocol | None = None
        self._flows: dict[Any, DatagramChannel] = {}
        self._cancel_requested = False

    @classmethod
    def create(cls, parameters: TransportParameters, settings: NetcatSettings | None = None) -> "Listener":
        return cls(parameters, settings)

    @property
    def bind_address(self) -> tuple[str, int]:
        return self.parameters.local_endpoint or (DEFAULT_BIND_ADDRESS, 0)

    def start(self, on_state_change: ListenerStateHandler, on_new_connection: NewConnectionHandler) -> None:
        """Bind the running event loop as delivery context and start listening."""
        if self._loop is not None:
            raise ConnectionStateError("listener already started")

        self._loop = asyncio.get_running_loop()
        self._on_state_change = on_state_change
        self._on_new_connection = on_new_connection
        self._bind_task = self._loop.create_task(self._bind(), name="nwcat-listener")

    async def _bind(self) -> None:
        host, port = self.bind_address

        try:
            if self.parameters.transport == Transport.TCP:
                self._server = await asyncio.start_server(
                    self._accept_stream, host, port, reuse_address=True
                )
                sockname = self._server.sockets[0].getsockname()
            else:
                self._transport, self._protocol = await self._loop.create_datagram_endpoint(
                    lambda: ListenerDatagramProtocol(self),
                    local_addr=(host, port),
                )
                sockname = self._transport.get_extra_info("sockname")
        except OSError as e:
            self._transition(
                ListenerState.FAILED,
                SetupFailedError(f"cannot listen on {host} port {port}", e),
            )
            return

        self.port = sockname[1]
        logger.info(f"Listening on {host}:{self.port} ({self.parameters.describe()})")
        self._transition(ListenerState.READY)

    # Inbound peers

    def _accept_stream(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self.parameters.security == Security.TLS:
            # Bytes read before the upgrade would never reach the handshake
            writer.transport.pause_reading()
        channel = StreamChannel(reader, writer)
        self._offer(Connection.inbound(channel, self.parameters, self.settings))

    def _datagram_received(self, data: bytes, addr: Any) -> None:
        channel = self._flows.get(addr)
        if channel is not None:
            channel.feed(data)
            return

        channel = DatagramChannel(
            self._transport,
            addr,
            writable=self._protocol.writable,
            owned=False,
            on_close=self._forget_flow,
        )
        self._flows[addr] = channel
        # Queued before the offer so the first datagram is not lost
        channel.feed(data)
        self._offer(Connection.inbound(channel, self.parameters, self.settings))

    def _forget_flow(self, channel: DatagramChannel) -> None:
        if self._flows.get(channel.peer) is channel:
            del self._flows[channel.peer]

    def _offer(self, candidate: Connection) -> None:
        """Admission policy: one connection at a time, reject the rest."""
        if self.state != ListenerState.READY:
            candidate.cancel()
            return

        if self.admitted is not None:
            logger.debug(f"Rejecting {candidate.describe()}, already serving {self.admitted.describe()}")
            candidate.cancel()
            return

        self.admitted = candidate
        logger.info(f"Connection from {candidate.describe()}")
        self._on_new_connection(candidate)

    def release(self, connection: Connection) -> None:
        """Free the slot held by a connection that reached cancelled."""
        if self.admitted is connection:
            self.admitted = None
            logger.debug(f"Released {connection.describe()}")

        if self._cancel_requested and self._transport is not None and self.admitted is None:
            self._transport.close()

    # Lifecycle

    def cancel(self) -> None:
        """Stop listening; the admitted connection keeps running."""
        if self._cancel_requested:
            return
        self._cancel_requested = True

        if self._bind_task is not None:
            self._bind_task.cancel()
        if self._server is not None:
            self._server.close()
        # The admitted UDP flow shares the socket, keep it until released
        if self._transport is not None and self.admitted is None:
            self._transport.close()

        if self._loop is None:
            self.state = ListenerState.CANCELLED
            return

        self._transition(ListenerState.CANCELLED)

    def _transition(self, state: ListenerState, error: NetcatError | None = None) -> None:
        if self.state == ListenerState.CANCELLED:
            return

        self.state = state
        self.error = error
        logger.debug(f"Listener -> {state.value}")
        self._loop.call_soon(self._deliver, state, error)

    def _deliver(self, state: ListenerState, error: NetcatError | None) -> None:
        if self._on_state_change is not None:
            self._on_state_change(state, error)
