"""
Relay engine: network to stdout and stdin to network.

Two pumps run against one ready connection. Each issues one operation and
only issues the next once the previous one completed, so at most one unit of
data per direction is in flight.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import logging
import sys
from typing import Callable, Protocol, TextIO

from nwcat.channel import DEFAULT_MESSAGE, FINAL_MESSAGE, RECEIVE_MAXIMUM, ReceiveOutcome
from nwcat.connection import Connection
from nwcat.errors import (
    ConnectionCancelledError,
    ConnectionStateError,
    LocalIOError,
    NetcatError,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 8192


class ByteSource(Protocol):
    async def read(self, size: int) -> bytes: ...


class ByteSink(Protocol):
    async def write(self, data: bytes) -> None: ...


def dump_hex(data: bytes, prefix: str = "", stream: TextIO | None = None) -> None:
    """Print hex dump of data."""
    stream = stream or sys.stderr
    for i in range(0, len(data), 16):
        chunk = data[i:i + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        print(f"{prefix}{i:08x}  {hex_part:<48}  {ascii_part}", file=stream)


class Relay:
    """
    Bidirectional relay between one connection and stdin/stdout.

    The inbound pump ends the session through ``on_finished(0)`` when the
    peer ends the stream. Errors stop only the pump that hit them.
    """

    def __init__(
        self,
        connection: Connection,
        stdin: ByteSource,
        stdout: ByteSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_finished: Callable[[int], None] | None = None,
        on_error: Callable[[NetcatError], None] | None = None,
        hex_dump: bool = False,
    ):
        self.connection = connection
        self.stdin = stdin
        self.stdout = stdout
        self.chunk_size = chunk_size
        self._on_finished = on_finished
        self._on_error = on_error
        self._hex_dump = hex_dump
        self._tasks: list[asyncio.Task] = []

    @property
    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def start(self) -> None:
        if self._tasks:
            raise ConnectionStateError("relay already started")

        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._pump_inbound(), name=f"nwcat-inbound-{self.connection.id}"),
            loop.create_task(self._pump_outbound(), name=f"nwcat-outbound-{self.connection.id}"),
        ]

    def stop(self) -> None:
        for task in self._tasks:
            task.cancel()

    async def wait(self) -> None:
        """Wait for both pumps to stop."""
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _report(self, error: NetcatError) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.error(str(error))

    def _dump(self, data: bytes, prefix: str) -> None:
        if self._hex_dump:
            dump_hex(data, prefix)

    async def _pump_inbound(self) -> None:
        """Network to stdout."""
        while True:
            try:
                unit = await self.connection.receive(1, RECEIVE_MAXIMUM)
            except ConnectionCancelledError:
                return
            except ConnectionStateError as e:
                self._report(e)
                return

            # Data first: a payload that arrives with end of stream still counts
            if unit.payload:
                self._dump(unit.payload, "<<< ")
                try:
                    await self.stdout.write(unit.payload)
                except LocalIOError as e:
                    self._report(e)
                    return

            if unit.outcome == ReceiveOutcome.STREAM_END:
                logger.debug(f"Peer {self.connection.describe()} ended the stream")
                if self._on_finished is not None:
                    self._on_finished(0)
                return

            if unit.error is not None:
                self._report(unit.error)
                return

    async def _pump_outbound(self) -> None:
        """Stdin to network."""
        while True:
            try:
                chunk = await self.stdin.read(self.chunk_size)
            except LocalIOError as e:
                self._report(e)
                return

            try:
                if not chunk:
                    # Half-close: the inbound pump keeps going
                    await self.connection.send(b"", FINAL_MESSAGE, is_complete=True)
                    logger.debug("End of input, send side closed")
                    return

                self._dump(chunk, ">>> ")
                await self.connection.send(chunk, DEFAULT_MESSAGE, is_complete=True)
            except ConnectionCancelledError:
                return
            except NetcatError as e:
                self._report(e)
                return
