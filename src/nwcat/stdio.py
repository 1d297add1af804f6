"""
Asynchronous standard input and output for the relay.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import logging
import os
import select
import sys
from typing import BinaryIO

from nwcat.errors import LocalIOError

logger = logging.getLogger(__name__)


class StdinReader:
    """Reads standard input without blocking the event loop.

    Pipes, terminals and sockets go through a read pipe transport; regular
    files cannot, so they are read in the default executor.
    """

    def __init__(self, stream: BinaryIO | None = None):
        self._stream = stream if stream is not None else sys.stdin.buffer
        self._reader: asyncio.StreamReader | None = None
        self._attached = False
        self._pending: asyncio.Future | None = None

    async def _attach(self) -> asyncio.StreamReader | None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader)
        try:
            await loop.connect_read_pipe(lambda: protocol, self._stream)
        except ValueError:
            logger.debug("stdin is a regular file, reading in executor")
            return None
        return reader

    async def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes; empty at end of input."""
        try:
            if not self._attached:
                self._reader = await self._attach()
                self._attached = True

            if self._reader is not None:
                return await self._reader.read(size)

            # An executor read cannot be cancelled; a cancelled caller leaves
            # it pending so the next read collects its bytes
            if self._pending is None:
                loop = asyncio.get_running_loop()
                self._pending = loop.run_in_executor(None, self._stream.read, size)
            pending = self._pending
            try:
                return await asyncio.shield(pending)
            finally:
                if pending.done():
                    self._pending = None
        except OSError as e:
            raise LocalIOError("reading standard input failed", e) from e


class StdoutWriter:
    """Writes standard output in the default executor.

    Each write returns only once every byte reached the descriptor.
    """

    def __init__(self, fd: int | None = None):
        self._fd = fd

    def _write_all(self, data: bytes) -> None:
        if self._fd is None:
            self._fd = sys.stdout.fileno()

        view = memoryview(data)
        while view:
            try:
                written = os.write(self._fd, view)
            except BlockingIOError:
                # stdin may have put a shared terminal into non-blocking mode
                select.select([], [self._fd], [])
                continue
            view = view[written:]

    async def write(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_all, data)
        except OSError as e:
            raise LocalIOError("writing standard output failed", e) from e
