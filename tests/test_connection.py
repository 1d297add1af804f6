"""Tests for the connection state machine."""

import asyncio
import errno
import socket
from unittest.mock import AsyncMock, MagicMock

import pytest

from nwcat.channel import DEFAULT_MESSAGE, FINAL_MESSAGE, ReceiveOutcome
from nwcat.connection import Connection, ConnectionState, is_transient
from nwcat.endpoint import Endpoint
from nwcat.errors import (
    ConfigurationError,
    ConnectionCancelledError,
    ConnectionStateError,
    DiscoveryError,
    RuntimeFailedError,
    SetupFailedError,
    SetupWaitingError,
)
from nwcat.parameters import TransportParameters

from conftest import wait_for_state


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def echo_server(port: int = 0) -> asyncio.Server:
    async def handle(reader, writer):
        while data := await reader.read(4096):
            writer.write(data)
            await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, "127.0.0.1", port)


def recorder():
    states = []
    return states, lambda state, error: states.append((state, error))


def mock_channel(**kwargs):
    channel = MagicMock()
    channel.peer = ("192.0.2.7", 6000)
    channel.secure = AsyncMock()
    for name, value in kwargs.items():
        setattr(channel, name, value)
    return channel


class TestSetup:
    @pytest.mark.asyncio
    async def test_tcp_connect_reaches_ready(self, settings):
        server = await echo_server()
        port = server.sockets[0].getsockname()[1]
        states, handler = recorder()
        connection = Connection.create(Endpoint("127.0.0.1", str(port)), TransportParameters.build(), settings)

        connection.start(handler)
        await wait_for_state(states, ConnectionState.READY)

        assert [s for s, _ in states] == [ConnectionState.READY]
        connection.cancel()
        server.close()

    @pytest.mark.asyncio
    async def test_refused_waits_then_recovers(self, settings):
        port = free_port()
        states, handler = recorder()
        connection = Connection.create(Endpoint("127.0.0.1", str(port)), TransportParameters.build(), settings)

        connection.start(handler)
        await wait_for_state(states, ConnectionState.WAITING)
        waiting_error = states[0][1]
        server = await echo_server(port)
        await wait_for_state(states, ConnectionState.READY)

        assert isinstance(waiting_error, SetupWaitingError)
        assert isinstance(waiting_error.cause, ConnectionRefusedError)
        observed = [s for s, _ in states]
        assert observed[0] == ConnectionState.WAITING
        assert observed[-1] == ConnectionState.READY
        assert ConnectionState.SETUP in observed
        assert ConnectionState.FAILED not in observed
        connection.cancel()
        server.close()

    @pytest.mark.asyncio
    async def test_unknown_service_fails(self, settings):
        states, handler = recorder()
        endpoint = Endpoint("127.0.0.1", "no-such-service-here")
        connection = Connection.create(endpoint, TransportParameters.build(), settings)

        connection.start(handler)
        await wait_for_state(states, ConnectionState.FAILED)

        state, error = states[-1]
        assert isinstance(error, SetupFailedError)
        assert isinstance(error.cause, ConfigurationError)

    @pytest.mark.asyncio
    async def test_inbound_handshake_failure_never_waits(self, settings):
        channel = mock_channel(secure=AsyncMock(side_effect=ConnectionRefusedError()))
        states, handler = recorder()
        connection = Connection.inbound(channel, TransportParameters.build(), settings)

        connection.start(handler)
        await wait_for_state(states, ConnectionState.FAILED)

        assert [s for s, _ in states] == [ConnectionState.FAILED]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, settings):
        connection = Connection.inbound(mock_channel(), TransportParameters.build(), settings)
        connection.start(lambda s, e: None)

        with pytest.raises(ConnectionStateError):
            connection.start(lambda s, e: None)
        connection.cancel()

    def test_cancel_before_start(self, settings):
        channel = mock_channel()
        connection = Connection.inbound(channel, TransportParameters.build(), settings)

        connection.cancel()

        assert connection.state == ConnectionState.CANCELLED
        channel.close.assert_called_once_with()
        channel.secure.assert_not_called()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancelled_is_the_last_delivery(self, settings):
        states, handler = recorder()
        connection = Connection.create(Endpoint("127.0.0.1", str(free_port())), TransportParameters.build(), settings)

        connection.start(handler)
        await wait_for_state(states, ConnectionState.WAITING)
        connection.cancel()
        connection.cancel()
        await asyncio.sleep(0.5)

        assert states[-1] == (ConnectionState.CANCELLED, None)
        assert [s for s, _ in states].count(ConnectionState.CANCELLED) == 1

    @pytest.mark.asyncio
    async def test_operations_after_cancel_rejected(self, settings):
        connection = Connection.inbound(mock_channel(), TransportParameters.build(), settings)
        connection.start(lambda s, e: None)
        connection.cancel()

        with pytest.raises(ConnectionCancelledError):
            await connection.receive()
        with pytest.raises(ConnectionCancelledError):
            await connection.send(b"x")

    @pytest.mark.asyncio
    async def test_cancel_aborts_pending_receive(self, settings):
        never = asyncio.Event()

        async def receive(minimum, maximum):
            await never.wait()

        states, handler = recorder()
        connection = Connection.inbound(mock_channel(receive=receive), TransportParameters.build(), settings)
        connection.start(handler)
        await wait_for_state(states, ConnectionState.READY)

        pending = asyncio.create_task(connection.receive())
        await asyncio.sleep(0.01)
        connection.cancel()

        with pytest.raises(asyncio.CancelledError):
            await pending


class TestDataTransfer:
    @pytest.mark.asyncio
    async def test_send_before_ready_rejected(self, settings):
        connection = Connection.create(Endpoint("127.0.0.1", "1"), TransportParameters.build(), settings)

        with pytest.raises(ConnectionStateError):
            await connection.send(b"early")

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, settings):
        server = await echo_server()
        port = server.sockets[0].getsockname()[1]
        states, handler = recorder()
        connection = Connection.create(Endpoint("127.0.0.1", str(port)), TransportParameters.build(), settings)
        connection.start(handler)
        await wait_for_state(states, ConnectionState.READY)

        await connection.send(b"marco", DEFAULT_MESSAGE)
        await connection.send(b"", FINAL_MESSAGE)
        received = b""
        while True:
            unit = await connection.receive()
            received += unit.payload
            if unit.outcome == ReceiveOutcome.STREAM_END:
                break

        assert received == b"marco"
        connection.cancel()
        server.close()

    @pytest.mark.asyncio
    async def test_receive_error_fails_connection(self, settings):
        channel = mock_channel(receive=AsyncMock(side_effect=ConnectionResetError()))
        states, handler = recorder()
        connection = Connection.inbound(channel, TransportParameters.build(), settings)
        connection.start(handler)
        await wait_for_state(states, ConnectionState.READY)

        unit = await connection.receive()
        await wait_for_state(states, ConnectionState.FAILED)

        assert isinstance(unit.error, RuntimeFailedError)
        assert states[-1] == (ConnectionState.FAILED, unit.error)

    @pytest.mark.asyncio
    async def test_send_error_fails_connection(self, settings):
        channel = mock_channel(send=AsyncMock(side_effect=BrokenPipeError()))
        states, handler = recorder()
        connection = Connection.inbound(channel, TransportParameters.build(), settings)
        connection.start(handler)
        await wait_for_state(states, ConnectionState.READY)

        with pytest.raises(RuntimeFailedError):
            await connection.send(b"x")
        await wait_for_state(states, ConnectionState.FAILED)


@pytest.mark.parametrize(
    "error,transient",
    [
        (ConnectionRefusedError(errno.ECONNREFUSED, "refused"), True),
        (OSError(errno.ENETUNREACH, "unreachable"), True),
        (TimeoutError(), True),
        (socket.gaierror(socket.EAI_AGAIN, "try again"), True),
        (socket.gaierror(socket.EAI_NONAME, "unknown"), False),
        (OSError(errno.EACCES, "denied"), False),
        (DiscoveryError("slow", transient=True), True),
        (DiscoveryError("gone"), False),
        (ConfigurationError("bad"), False),
    ],
)
def test_is_transient(error, transient):
    assert is_transient(error) is transient
