"""
Endpoints: where a connection goes or where a listener binds.

Host names are left to asyncio's getaddrinfo; only service names and
discovery-service names are resolved here.

Copyright (c) 2025 DNS Science.io, an After Dark Systems, LLC company.
All rights reserved.
"""

import logging
import socket
from dataclasses import dataclass

import dns.asyncresolver
import dns.exception
import dns.resolver

from nwcat.errors import ConfigurationError, DiscoveryError
from nwcat.parameters import Transport

logger = logging.getLogger(__name__)


def resolve_port(port: str, transport: Transport) -> int:
    """Turn a port number or service name (``http``) into a port number."""
    if port.isdigit():
        number = int(port)
        if not 0 <= number <= 65535:
            raise ConfigurationError(f"port out of range: {port}")
        return number

    try:
        return socket.getservbyname(port, transport.value)
    except OSError as e:
        raise ConfigurationError(f"unknown service {port!r} for {transport.value}", e) from e


@dataclass(frozen=True)
class Endpoint:
    """A host-or-address and port-or-service pair."""
    host: str
    port: str

    async def resolve(self, transport: Transport) -> tuple[str, int]:
        return self.host, resolve_port(self.port, transport)

    def describe(self) -> str:
        return f"{self.host} port {self.port}"


@dataclass(frozen=True)
class ServiceEndpoint:
    """A DNS-SD service instance, e.g. ``printer._nwcat._tcp.example.com``."""
    name: str
    service_type: str
    domain: str

    @property
    def qname(self) -> str:
        domain = self.domain if self.domain.endswith(".") else f"{self.domain}."
        return f"{self.name}.{self.service_type}.{domain}"

    async def resolve(self, transport: Transport) -> tuple[str, int]:
        """Look up the SRV record of the instance.

        Lowest priority wins, then highest weight.
        """
        resolver = dns.asyncresolver.Resolver()
        try:
            answers = await resolver.resolve(self.qname, "SRV")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer) as e:
            raise DiscoveryError(f"no such service {self.qname}", e) from e
        except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
            raise DiscoveryError(f"discovery of {self.qname} unavailable", e, transient=True) from e

        records = sorted(answers, key=lambda r: (r.priority, -r.weight))
        best = records[0]
        host = str(best.target).rstrip(".")
        logger.debug(f"Discovered {self.qname} at {host}:{best.port}")
        return host, best.port

    def describe(self) -> str:
        return f"service {self.qname}"
