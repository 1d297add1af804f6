"""
DTLS over an asyncio datagram channel.

pyOpenSSL runs with memory BIOs: datagrams from the network are written into
the session, and whatever the session wants to send comes back as a list of
datagrams for the channel to put on the wire.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from OpenSSL import SSL

logger = logging.getLogger(__name__)

# Path MTU assumed for handshake fragmentation
DTLS_MTU = 1400

# Largest read from the outgoing memory BIO
BIO_READ_SIZE = 65535


class DtlsSession:
    """One DTLS association with a single peer."""

    def __init__(
        self,
        context: SSL.Context,
        server_side: bool,
        server_hostname: str | None = None,
    ):
        self.server_side = server_side
        self.established = False
        self._conn = SSL.Connection(context, None)
        self._conn.set_ciphertext_mtu(DTLS_MTU)

        if server_side:
            self._conn.set_accept_state()
        else:
            self._conn.set_connect_state()
            if server_hostname:
                self._conn.set_tlsext_host_name(server_hostname.encode("idna"))

    def outgoing(self) -> list[bytes]:
        """Collect datagrams the session has queued for the peer."""
        datagrams = []
        while True:
            try:
                chunk = self._conn.bio_read(BIO_READ_SIZE)
            except SSL.WantReadError:
                break
            if not chunk:
                break
            datagrams.append(chunk)
        return datagrams

    def _advance(self) -> list[bytes]:
        try:
            self._conn.do_handshake()
        except SSL.WantReadError:
            pass
        else:
            if not self.established:
                self.established = True
                logger.debug(f"DTLS established: {self._conn.get_protocol_version_name()}, {self._conn.get_cipher_name()}")
        return self.outgoing()

    async def handshake(
        self,
        receive: Callable[[], Awaitable[bytes]],
        send: Callable[[bytes], None],
    ) -> None:
        """Run the handshake to completion.

        Raises SSL.Error when the peer rejects the handshake.
        """
        for datagram in self._advance():
            send(datagram)

        while not self.established:
            # None until the first flight is out (server waiting for a hello)
            timeout = self._conn.DTLSv1_get_timeout()
            try:
                datagram = await asyncio.wait_for(receive(), timeout)
            except TimeoutError:
                logger.debug("DTLS handshake timer expired, retransmitting")
                self._conn.DTLSv1_handle_timeout()
                for datagram in self.outgoing():
                    send(datagram)
                continue

            self._conn.bio_write(datagram)
            for reply in self._advance():
                send(reply)

    def encrypt(self, data: bytes) -> list[bytes]:
        """Protect one message; returns the datagrams carrying it."""
        self._conn.send(data)
        return self.outgoing()

    def decrypt(self, datagram: bytes) -> tuple[list[bytes], bool]:
        """Feed one datagram; returns (plaintext records, peer closed)."""
        self._conn.bio_write(datagram)
        records = []
        while True:
            try:
                records.append(self._conn.recv(BIO_READ_SIZE))
            except SSL.WantReadError:
                return records, False
            except SSL.ZeroReturnError:
                return records, True

    def close(self) -> list[bytes]:
        """Send close_notify; returns the alert datagrams."""
        try:
            self._conn.shutdown()
        except SSL.Error as e:
            logger.debug(f"DTLS shutdown: {e}")
        return self.outgoing()
