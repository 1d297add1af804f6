"""
Netcat session: wires parameters, connection, listener and relay together.

Provides netcat-like functionality with:
- TCP/UDP connections
- TLS over TCP, DTLS over UDP, TLS pre-shared keys
- Listen mode serving one peer at a time
- Connect mode by host/port or discovery-service name
- Hex dump debugging

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass

from rich.console import Console
from rich.markup import escape

from nwcat.config import NetcatSettings, get_settings
from nwcat.connection import Connection, ConnectionState
from nwcat.endpoint import Endpoint, ServiceEndpoint, resolve_port
from nwcat.errors import ConfigurationError, LocalIOError, NetcatError
from nwcat.listener import DEFAULT_BIND_ADDRESS, Listener, ListenerState
from nwcat.parameters import TlsMaterial, Transport, TransportParameters
from nwcat.relay import ByteSink, ByteSource, Relay
from nwcat.stdio import StdinReader, StdoutWriter

logger = logging.getLogger(__name__)

# Exit statuses
EXIT_OK = 0
EXIT_FAILURE = 1


@dataclass
class NetcatConfig:
    """Configuration for one nwcat invocation."""
    # Connection
    host: str | None = None
    port: str | None = None
    udp: bool = False

    # Encryption
    tls: bool = False
    psk: str | None = None
    ssl_cert: str | None = None      # Path to certificate file
    ssl_key: str | None = None       # Path to key file
    ssl_ca: str | None = None        # Path to CA bundle
    ssl_verify: bool = True          # Verify peer certificate
    ssl_hostname: str | None = None  # Override hostname for SNI

    # Behavior
    listen: bool = False             # Listen mode (server)
    discovery: bool = False          # host is a discovery-service name
    source_host: str | None = None   # Source address to bind
    source_port: int | None = None   # Source port to bind

    # Logging
    verbose: bool = False
    hex_dump: bool = False           # Hex dump of relayed data on stderr

    def __post_init__(self):
        self.validate()

    @property
    def transport(self) -> Transport:
        return Transport.UDP if self.udp else Transport.TCP

    def validate(self) -> None:
        if self.listen:
            if self.port is None and not self.discovery:
                raise ConfigurationError("listening needs a port")
        elif self.discovery:
            if not self.host:
                raise ConfigurationError("discovery needs a service name")
        elif not self.host or self.port is None:
            raise ConfigurationError("connecting needs a host and a port")

    def transport_parameters(self, settings: NetcatSettings) -> TransportParameters:
        if self.listen:
            port = resolve_port(self.port, self.transport) if self.port is not None else 0
            local_endpoint = (self.host or DEFAULT_BIND_ADDRESS, port)
        elif self.source_host or self.source_port:
            local_endpoint = (self.source_host or DEFAULT_BIND_ADDRESS, self.source_port or 0)
        else:
            local_endpoint = None

        return TransportParameters.build(
            udp=self.udp,
            secure=self.tls,
            psk=self.psk,
            local_endpoint=local_endpoint,
            tls=TlsMaterial(
                cert=self.ssl_cert,
                key=self.ssl_key,
                ca=self.ssl_ca,
                verify=self.ssl_verify,
                server_hostname=self.ssl_hostname,
            ),
            psk_identity=settings.psk_identity,
        )

    def endpoint(self, settings: NetcatSettings) -> Endpoint | ServiceEndpoint:
        if self.discovery:
            return ServiceEndpoint(
                name=self.host,
                service_type=settings.service_type(self.transport.value),
                domain=settings.discovery_domain,
            )
        return Endpoint(self.host, self.port)


class NetcatSession:
    """
    One nwcat run: dial or listen, then relay a single connection.

    Usage:
        session = NetcatSession(NetcatConfig(host="example.com", port="80"))
        status = await session.run()
    """

    def __init__(
        self,
        config: NetcatConfig,
        settings: NetcatSettings | None = None,
        stdin: ByteSource | None = None,
        stdout: ByteSink | None = None,
        console: Console | None = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.stdin = stdin or StdinReader()
        self.stdout = stdout or StdoutWriter()
        self.console = console or Console(stderr=True)
        self.parameters = config.transport_parameters(self.settings)

        self.connection: Connection | None = None
        self.listener: Listener | None = None
        self.relay: Relay | None = None
        self._exit: asyncio.Future | None = None

    async def run(self) -> int:
        """Run until the peer ends the stream or something fatal happens."""
        self.parameters.check(server_side=self.config.listen)
        self._exit = asyncio.get_running_loop().create_future()

        if self.config.listen:
            self._listen()
        else:
            self.start_connection(Connection.create(
                self.config.endpoint(self.settings), self.parameters, self.settings
            ))

        try:
            return await self._exit
        finally:
            self._teardown()

    def _listen(self) -> None:
        if self.config.discovery:
            logger.warning("Service advertisement is not available, listening without it")
        if self.config.source_host or self.config.source_port:
            logger.warning("Source address options are ignored when listening")

        self.listener = Listener.create(self.parameters, self.settings)
        self.listener.start(self._on_listener_state, self.start_connection)

    def start_connection(self, connection: Connection) -> None:
        """Start procedure shared by outbound and admitted inbound connections."""
        self.connection = connection
        connection.start(functools.partial(self._on_connection_state, connection))

    def finish(self, status: int) -> None:
        if self._exit is not None and not self._exit.done():
            self._exit.set_result(status)

    # State handlers

    def _on_connection_state(self, connection: Connection, state: ConnectionState, error: NetcatError | None) -> None:
        if state == ConnectionState.WAITING:
            self.console.print(f"[yellow]nwcat: {escape(str(error))}[/yellow]")

        elif state == ConnectionState.READY:
            if self.config.verbose:
                self.console.print(
                    f"[green]Connection to {connection.describe()} \\[{self.parameters.describe()}] succeeded![/green]"
                )
            self.relay = Relay(
                connection,
                self.stdin,
                self.stdout,
                chunk_size=self.settings.chunk_size,
                on_finished=self.finish,
                on_error=self._on_relay_error,
                hex_dump=self.config.hex_dump,
            )
            self.relay.start()

        elif state == ConnectionState.FAILED:
            self.console.print(f"[red]nwcat: {escape(str(error))}[/red]")
            connection.cancel()

        elif state == ConnectionState.CANCELLED:
            if self.relay is not None and self.relay.connection is connection:
                self.relay.stop()
                self.relay = None
            if self.connection is connection:
                self.connection = None

            if connection.is_inbound and self.listener is not None:
                self.listener.release(connection)
            # Only failure or teardown cancels a started connection; a clean
            # end of stream has already set the exit status
            self.finish(EXIT_FAILURE)

    def _on_listener_state(self, state: ListenerState, error: NetcatError | None) -> None:
        if state == ListenerState.READY:
            if self.config.verbose:
                host, _ = self.listener.bind_address
                self.console.print(
                    f"[dim]Listening on {host} port {self.listener.port} \\[{self.parameters.describe()}][/dim]"
                )

        elif state == ListenerState.FAILED:
            self.console.print(f"[red]nwcat: {escape(str(error))}[/red]")
            self.listener.cancel()

        elif state == ListenerState.CANCELLED:
            self.finish(EXIT_FAILURE)

    def _on_relay_error(self, error: NetcatError) -> None:
        # Connection failures are reported by the failed state handler
        if isinstance(error, LocalIOError):
            self.console.print(f"[red]nwcat: {escape(str(error))}[/red]")
        else:
            logger.debug(f"Relay stopped: {error}")

    def _teardown(self) -> None:
        if self.relay is not None:
            self.relay.stop()
        if self.connection is not None:
            self.connection.cancel()
        if self.listener is not None:
            self.listener.cancel()
