"""
Transport channels underneath a connection.

A channel moves messages for exactly one peer. Stream channels (TCP, TLS)
sit on asyncio streams; datagram channels (UDP, DTLS) sit on a datagram
transport, either their own or one shared with a listener.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import errno
import logging
import socket
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from nwcat.config import MAX_DATAGRAM_SIZE, NetcatSettings
from nwcat.dtls import DtlsSession
from nwcat.errors import ConnectionStateError, NetcatError
from nwcat.parameters import Security, Transport, TransportParameters

logger = logging.getLogger(__name__)

# Receive maximum that lets the transport hand over whatever it has
RECEIVE_MAXIMUM = 2**32 - 1

# Datagrams queued per peer before new arrivals are dropped
INBOX_SIZE = 256


@dataclass(frozen=True)
class MessageContext:
    """Out-of-band properties of a message."""
    is_final: bool = False  # Last message of the whole exchange


DEFAULT_MESSAGE = MessageContext()
FINAL_MESSAGE = MessageContext(is_final=True)


class ReceiveOutcome(str, Enum):
    """What a receive completion means for the exchange."""
    STREAM_END = "stream_end"      # Peer is done, nothing more will arrive
    DATAGRAM_END = "datagram_end"  # One message done, more may follow
    CONTINUING = "continuing"      # Message continues in the next receive


@dataclass
class ReceivedUnit:
    """One receive completion.

    Payload and end-of-stream may arrive together; the payload always
    belongs to the stream, whatever the outcome.
    """
    payload: bytes = b""
    context: MessageContext | None = None
    is_complete: bool = False
    error: NetcatError | None = None

    @property
    def outcome(self) -> ReceiveOutcome:
        # Message transports mark every datagram complete; only the final
        # context ends the exchange. Stream transports may omit the context.
        if self.is_complete and (self.context is None or self.context.is_final):
            return ReceiveOutcome.STREAM_END
        if self.is_complete:
            return ReceiveOutcome.DATAGRAM_END
        return ReceiveOutcome.CONTINUING


class Channel(ABC):
    """Bidirectional message channel to one peer."""

    peer: Any = None

    @abstractmethod
    async def secure(self, parameters: TransportParameters, server_side: bool, server_hostname: str | None = None) -> None:
        """Run the security handshake, if the parameters ask for one."""

    @abstractmethod
    async def receive(self, minimum: int, maximum: int) -> ReceivedUnit:
        """Wait for the next unit; transport errors propagate as exceptions."""

    @abstractmethod
    async def send(self, data: bytes, context: MessageContext, is_complete: bool) -> None:
        """Send one message."""

    @abstractmethod
    def close(self) -> None:
        """Release the channel; safe to call more than once."""


class StreamChannel(Channel):
    """TCP, optionally TLS, over asyncio streams."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer
        self._send_closed = False
        self.peer = writer.get_extra_info("peername")

    async def secure(self, parameters, server_side, server_hostname=None):
        if parameters.security != Security.TLS:
            return

        if server_side:
            context = parameters.server_ssl_context()
            await self._writer.start_tls(context)
        else:
            context = parameters.client_ssl_context()
            await self._writer.start_tls(context, server_hostname=server_hostname)

        ssl_object = self._writer.get_extra_info("ssl_object")
        if ssl_object is not None:
            logger.debug(f"TLS established: {ssl_object.version()}, {ssl_object.cipher()[0]}")

    async def receive(self, minimum, maximum):
        data = await self._reader.read(maximum)
        if not data:
            return ReceivedUnit(b"", None, True)

        while len(data) < minimum:
            more = await self._reader.read(maximum - len(data))
            if not more:
                break
            data += more

        # EOF already seen behind the data: report both in one completion
        return ReceivedUnit(data, None, self._reader.at_eof())

    async def send(self, data, context, is_complete):
        if self._send_closed:
            raise ConnectionStateError("send side already closed")

        if data:
            self._writer.write(data)
            await self._writer.drain()

        if context.is_final and is_complete:
            self._send_closed = True
            if self._writer.can_write_eof():
                self._writer.write_eof()
                logger.debug("Sent EOF, send side closed")
            else:
                # TLS has no half-close
                logger.debug("Transport cannot half-close, send side marked closed")

    def close(self):
        if not self._writer.is_closing():
            self._writer.close()


class DatagramProtocol(asyncio.DatagramProtocol):
    """Datagram protocol for an outbound UDP socket."""

    def __init__(self):
        self.inbox: asyncio.Queue[bytes] = asyncio.Queue(maxsize=INBOX_SIZE)
        self.writable = asyncio.Event()
        self.writable.set()

    def datagram_received(self, data: bytes, addr: Any) -> None:
        try:
            self.inbox.put_nowait(data)
        except asyncio.QueueFull:
            logger.debug(f"Inbox full, dropped {len(data)} byte datagram from {addr}")

    def error_received(self, exc: Exception) -> None:
        # ICMP errors (port unreachable) are reported, not fatal
        logger.warning(f"Network reported: {exc}")

    def pause_writing(self) -> None:
        self.writable.clear()

    def resume_writing(self) -> None:
        self.writable.set()


class DatagramChannel(Channel):
    """UDP, optionally DTLS, for one peer.

    Each datagram is one message. The receive minimum does not apply: a
    datagram is never merged with the next one.
    """

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        peer: Any,
        inbox: asyncio.Queue | None = None,
        writable: asyncio.Event | None = None,
        owned: bool = True,
        on_close: Callable[["DatagramChannel"], None] | None = None,
    ):
        self._transport = transport
        self._inbox = inbox if inbox is not None else asyncio.Queue(maxsize=INBOX_SIZE)
        self._writable = writable
        self._owned = owned  # False when the socket belongs to a listener
        self._on_close = on_close
        self._session: DtlsSession | None = None
        self._messages: deque[bytes] = deque()
        self._remainder: bytes | None = None
        self._peer_closed = False
        self._send_closed = False
        self._closed = False
        self.peer = peer

    def feed(self, datagram: bytes) -> None:
        """Deliver a datagram demultiplexed by a listener."""
        if self._closed:
            return
        try:
            self._inbox.put_nowait(datagram)
        except asyncio.QueueFull:
            logger.debug(f"Inbox full, dropped {len(datagram)} byte datagram from {self.peer}")

    def _send_raw(self, datagram: bytes) -> None:
        if self._owned:
            self._transport.sendto(datagram)
        else:
            self._transport.sendto(datagram, self.peer)

    async def secure(self, parameters, server_side, server_hostname=None):
        if parameters.security != Security.DTLS:
            return

        session = DtlsSession(parameters.dtls_context(server_side), server_side, server_hostname)
        await session.handshake(self._inbox.get, self._send_raw)
        self._session = session

    async def _next_message(self) -> bytes | None:
        """Next plaintext message, or None once the peer closed."""
        while not self._messages:
            if self._peer_closed:
                return None

            datagram = await self._inbox.get()
            if self._session is None:
                return datagram

            records, closed = self._session.decrypt(datagram)
            for reply in self._session.outgoing():
                self._send_raw(reply)
            self._messages.extend(records)
            if closed:
                logger.debug("Peer sent close_notify")
                self._peer_closed = True

        return self._messages.popleft()

    async def receive(self, minimum, maximum):
        if self._remainder is not None:
            message, self._remainder = self._remainder, None
        else:
            message = await self._next_message()

        if message is None:
            return ReceivedUnit(b"", FINAL_MESSAGE, True)

        if len(message) > maximum:
            self._remainder = message[maximum:]
            return ReceivedUnit(message[:maximum], DEFAULT_MESSAGE, False)

        return ReceivedUnit(message, DEFAULT_MESSAGE, True)

    async def send(self, data, context, is_complete):
        if self._send_closed:
            raise ConnectionStateError("send side already closed")
        if len(data) > MAX_DATAGRAM_SIZE:
            raise OSError(errno.EMSGSIZE, f"message of {len(data)} bytes exceeds one datagram")

        final = context.is_final and is_complete
        if data or not final:
            if self._writable is not None:
                await self._writable.wait()
            if self._session is not None:
                for datagram in self._session.encrypt(data):
                    self._send_raw(datagram)
            else:
                self._send_raw(data)

        if final:
            # Nothing goes on the wire for an empty final message
            self._send_closed = True
            logger.debug("Send side closed")

    def close(self):
        if self._closed:
            return
        self._closed = True

        if self._session is not None and not self._transport.is_closing():
            for datagram in self._session.close():
                self._send_raw(datagram)
        if self._owned:
            self._transport.close()
        if self._on_close is not None:
            self._on_close(self)


async def _connect_stream(
    host: str,
    port: int,
    local_addr: tuple[str, int] | None,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Try each resolved address in turn, keeping the last error intact."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)

    last_error: OSError | None = None
    for family, _, _, _, address in infos:
        try:
            return await asyncio.open_connection(
                address[0], address[1], family=family, local_addr=local_addr
            )
        except OSError as e:
            logger.debug(f"Connect to {address[0]}:{address[1]} failed: {e}")
            last_error = e

    if last_error is None:
        raise OSError(errno.EHOSTUNREACH, f"no addresses for {host}")
    raise last_error


async def open_channel(
    endpoint: Any,
    parameters: TransportParameters,
    settings: NetcatSettings,
) -> Channel:
    """Dial an endpoint and run the client side of the security handshake."""
    host, port = await endpoint.resolve(parameters.transport)
    loop = asyncio.get_running_loop()

    if parameters.transport == Transport.TCP:
        reader, writer = await asyncio.wait_for(
            _connect_stream(host, port, parameters.local_endpoint),
            settings.connect_timeout,
        )
        channel: Channel = StreamChannel(reader, writer)
    else:
        transport, protocol = await loop.create_datagram_endpoint(
            DatagramProtocol,
            remote_addr=(host, port),
            local_addr=parameters.local_endpoint,
        )
        channel = DatagramChannel(
            transport,
            transport.get_extra_info("peername"),
            inbox=protocol.inbox,
            writable=protocol.writable,
        )

    try:
        await asyncio.wait_for(
            channel.secure(parameters, server_side=False, server_hostname=parameters.tls.server_hostname or host),
            settings.connect_timeout,
        )
    except BaseException:
        channel.close()
        raise

    return channel
