"""
CLI for nwcat.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import sys

import click
from rich.console import Console
from rich.markup import escape

from nwcat import __version__
from nwcat.config import get_settings
from nwcat.core import NetcatConfig, NetcatSession
from nwcat.errors import ConfigurationError
from nwcat.logging_config import configure_logging

# stdout carries the relayed data
console = Console(stderr=True)

EXIT_INTERRUPTED = 130


def split_arguments(args: tuple[str, ...], listen: bool, discovery: bool) -> tuple[str | None, str | None]:
    """Map ``[host] port`` (or ``name`` with discovery) to (host, port)."""
    if discovery and not listen:
        if len(args) != 1:
            raise click.UsageError("with -b, give exactly one service name")
        return args[0], None

    if len(args) == 1:
        if listen:
            return None, args[0]
        raise click.UsageError("missing port")
    if len(args) == 2:
        return args[0], args[1]
    if not args and listen and discovery:
        return None, None
    raise click.UsageError("expected [host] port")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("args", nargs=-1)
@click.option("--listen", "-l", is_flag=True, help="Listen for one inbound connection")
@click.option("--udp", "-u", is_flag=True, help="Use UDP instead of TCP")
@click.option("--tls", "-t", is_flag=True, help="Use TLS (TCP) or DTLS (UDP)")
@click.option("--discover", "-b", is_flag=True, help="Resolve a discovery-service name instead of host/port")
@click.option("--psk", "-k", help="TLS pre-shared key")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--hex", "-x", "hex_dump", is_flag=True, help="Show hex dump of data")
@click.option("--source", "-s", help="Source address to bind")
@click.option("--source-port", "-p", type=int, help="Source port to bind")
@click.option("--ssl-cert", help="Certificate file (required to listen with TLS/DTLS)")
@click.option("--ssl-key", help="Key file")
@click.option("--ssl-ca", help="CA certificate bundle")
@click.option("--no-verify", is_flag=True, help="Don't verify the peer certificate")
@click.option("--log-file", help="Also write a debug log to this file")
@click.version_option(__version__, "--version")
def main(
    args: tuple[str, ...],
    listen: bool,
    udp: bool,
    tls: bool,
    discover: bool,
    psk: str | None,
    verbose: bool,
    hex_dump: bool,
    source: str | None,
    source_port: int | None,
    ssl_cert: str | None,
    ssl_key: str | None,
    ssl_ca: str | None,
    no_verify: bool,
    log_file: str | None,
):
    """Relay stdin/stdout over one TCP or UDP connection.

    \b
    Examples:
        # Connect to a server
        nwcat example.com 80

        # Connect with TLS
        nwcat -t example.com 443

        # Listen on a UDP port
        nwcat -l -u 9000

        # TLS with a pre-shared key on both ends
        nwcat -l -t -k secret 8443
        nwcat -t -k secret localhost 8443

        # Connect to a discovered service
        nwcat -b printer
    """
    host, port = split_arguments(args, listen, discover)

    try:
        settings = get_settings()
        configure_logging(verbose=verbose, log_file=log_file or settings.log_file)
        config = NetcatConfig(
            host=host,
            port=port,
            udp=udp,
            tls=tls,
            psk=psk,
            ssl_cert=ssl_cert,
            ssl_key=ssl_key,
            ssl_ca=ssl_ca,
            ssl_verify=not no_verify,
            listen=listen,
            discovery=discover,
            source_host=source,
            source_port=source_port,
            verbose=verbose,
            hex_dump=hex_dump,
        )
        session = NetcatSession(config, settings, console=console)
    except ConfigurationError as e:
        raise click.UsageError(str(e))

    async def run():
        try:
            return await session.run()
        except ConfigurationError as e:
            console.print(f"[red]nwcat: {escape(str(e))}[/red]")
            return 2

    try:
        status = asyncio.run(run())
    except KeyboardInterrupt:
        status = EXIT_INTERRUPTED

    sys.exit(status)


if __name__ == "__main__":
    main()
