"""
Transport parameters: which transport and security layer a connection uses.

Parameters are immutable once built and shared by reference between a
listener and every connection it admits.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import ssl
from dataclasses import dataclass, field
from enum import Enum

from OpenSSL import SSL

from nwcat.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Transport(str, Enum):
    """Network transport."""
    TCP = "tcp"
    UDP = "udp"


class Security(str, Enum):
    """Security layer on top of the transport."""
    NONE = "none"
    TLS = "tls"      # over TCP
    DTLS = "dtls"    # over UDP


@dataclass(frozen=True)
class TlsMaterial:
    """Certificate material handed over by the CLI."""
    cert: str | None = None            # Path to certificate (chain) file
    key: str | None = None             # Path to key file
    ca: str | None = None              # Path to CA bundle
    verify: bool = True                # Verify the peer certificate
    server_hostname: str | None = None  # Override hostname for SNI


@dataclass(frozen=True)
class TransportParameters:
    """Immutable description of transport, security and key material."""
    transport: Transport = Transport.TCP
    security: Security = Security.NONE
    pre_shared_key: bytes | None = None
    local_endpoint: tuple[str, int] | None = None
    tls: TlsMaterial = field(default_factory=TlsMaterial)
    psk_identity: str = "nwcat"

    def __post_init__(self):
        if self.security == Security.TLS and self.transport != Transport.TCP:
            raise ConfigurationError("TLS requires TCP; use DTLS over UDP")
        if self.security == Security.DTLS and self.transport != Transport.UDP:
            raise ConfigurationError("DTLS requires UDP; use TLS over TCP")
        if self.pre_shared_key is not None:
            if self.security == Security.NONE:
                raise ConfigurationError("a pre-shared key needs TLS (-t)")
            if self.security == Security.DTLS:
                raise ConfigurationError("pre-shared keys are only supported for TLS over TCP")
            if not self.pre_shared_key:
                raise ConfigurationError("pre-shared key must not be empty")

    @classmethod
    def build(
        cls,
        udp: bool = False,
        secure: bool = False,
        psk: str | None = None,
        local_endpoint: tuple[str, int] | None = None,
        tls: TlsMaterial | None = None,
        psk_identity: str = "nwcat",
    ) -> "TransportParameters":
        """Build parameters from CLI-style flags.

        ``secure`` selects TLS over TCP and DTLS over UDP.
        """
        transport = Transport.UDP if udp else Transport.TCP
        if not secure:
            security = Security.NONE
        elif transport == Transport.UDP:
            security = Security.DTLS
        else:
            security = Security.TLS

        return cls(
            transport=transport,
            security=security,
            pre_shared_key=psk.encode() if psk is not None else None,
            local_endpoint=local_endpoint,
            tls=tls or TlsMaterial(),
            psk_identity=psk_identity,
        )

    @property
    def is_secure(self) -> bool:
        return self.security != Security.NONE

    def describe(self) -> str:
        """Short label such as ``tcp`` or ``udp+dtls``."""
        if self.is_secure:
            return f"{self.transport.value}+{self.security.value}"
        return self.transport.value

    def check(self, server_side: bool) -> None:
        """Build the security context once so bad material fails early."""
        if self.security == Security.TLS:
            if server_side:
                self.server_ssl_context()
            else:
                self.client_ssl_context()
        elif self.security == Security.DTLS:
            self.dtls_context(server_side)

    # TLS (stdlib ssl)

    def client_ssl_context(self) -> ssl.SSLContext:
        """TLS context for outbound connections."""
        if self.pre_shared_key is not None:
            return self._psk_context(server_side=False)

        try:
            context = ssl.create_default_context(cafile=self.tls.ca)
            if not self.tls.verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                logger.warning("TLS certificate verification disabled")
            if self.tls.cert:
                context.load_cert_chain(self.tls.cert, keyfile=self.tls.key)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError("cannot load TLS material", e) from e
        return context

    def server_ssl_context(self) -> ssl.SSLContext:
        """TLS context for inbound connections."""
        if self.pre_shared_key is not None:
            return self._psk_context(server_side=True)

        if not self.tls.cert:
            raise ConfigurationError("listening with TLS requires a certificate (--ssl-cert) or a pre-shared key (-k)")

        try:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.load_cert_chain(self.tls.cert, keyfile=self.tls.key)
            if self.tls.ca:
                context.load_verify_locations(cafile=self.tls.ca)
                context.verify_mode = ssl.CERT_REQUIRED
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError("cannot load TLS material", e) from e
        return context

    def _psk_context(self, server_side: bool) -> ssl.SSLContext:
        if not hasattr(ssl.SSLContext, "set_psk_client_callback"):
            raise ConfigurationError("pre-shared keys need Python 3.13 or newer")

        key = self.pre_shared_key
        identity = self.psk_identity

        if server_side:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        else:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        # PSK cipher suites only exist up to TLS 1.2
        context.maximum_version = ssl.TLSVersion.TLSv1_2
        context.set_ciphers("PSK")

        if server_side:
            def server_callback(client_identity: str | None) -> bytes:
                if client_identity != identity:
                    logger.warning(f"Rejecting unknown PSK identity {client_identity!r}")
                    return b""
                return key

            context.set_psk_server_callback(server_callback)
        else:
            context.set_psk_client_callback(lambda hint: (identity, key))

        return context

    # DTLS (pyOpenSSL)

    def dtls_context(self, server_side: bool) -> SSL.Context:
        """DTLS context; the stdlib ssl module has no DTLS support."""
        try:
            context = SSL.Context(SSL.DTLS_METHOD)
            # MTU comes from the channel, never from the kernel
            context.set_options(SSL.OP_NO_QUERY_MTU)

            if server_side:
                if not self.tls.cert:
                    raise ConfigurationError("listening with DTLS requires a certificate (--ssl-cert)")
                context.use_certificate_chain_file(self.tls.cert)
                context.use_privatekey_file(self.tls.key or self.tls.cert)
                context.check_privatekey()
                if self.tls.ca:
                    context.load_verify_locations(self.tls.ca)
                    context.set_verify(SSL.VERIFY_PEER | SSL.VERIFY_FAIL_IF_NO_PEER_CERT)
            else:
                if self.tls.verify:
                    if self.tls.ca:
                        context.load_verify_locations(self.tls.ca)
                    else:
                        context.set_default_verify_paths()
                    context.set_verify(SSL.VERIFY_PEER)
                else:
                    context.set_verify(SSL.VERIFY_NONE)
                    logger.warning("DTLS certificate verification disabled")
                if self.tls.cert:
                    context.use_certificate_chain_file(self.tls.cert)
                    context.use_privatekey_file(self.tls.key or self.tls.cert)
        except (OSError, SSL.Error) as e:
            raise ConfigurationError("cannot load DTLS material", e) from e
        return context
