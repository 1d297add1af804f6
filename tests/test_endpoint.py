"""Tests for endpoints and discovery-service resolution."""

from types import SimpleNamespace

import dns.asyncresolver
import dns.exception
import dns.resolver
import pytest

from nwcat.endpoint import Endpoint, ServiceEndpoint, resolve_port
from nwcat.errors import ConfigurationError, DiscoveryError
from nwcat.parameters import Transport


def fake_resolver(answer=None, error=None):
    """Resolver class double answering every query the same way."""
    queries = []

    class Resolver:
        async def resolve(self, qname, rdtype):
            queries.append((qname, rdtype))
            if error is not None:
                raise error
            return answer

    Resolver.queries = queries
    return Resolver


def srv(priority, weight, port, target):
    return SimpleNamespace(priority=priority, weight=weight, port=port, target=target)


class TestResolvePort:
    def test_numeric(self):
        assert resolve_port("8080", Transport.TCP) == 8080

    def test_out_of_range(self):
        with pytest.raises(ConfigurationError, match="out of range"):
            resolve_port("70000", Transport.TCP)

    def test_service_name(self, monkeypatch):
        monkeypatch.setattr("socket.getservbyname", lambda name, proto: {"http": 80}[name])

        assert resolve_port("http", Transport.TCP) == 80

    def test_unknown_service(self):
        with pytest.raises(ConfigurationError, match="unknown service"):
            resolve_port("no-such-service-here", Transport.UDP)


class TestEndpoint:
    @pytest.mark.asyncio
    async def test_resolve_keeps_host(self):
        assert await Endpoint("example.com", "443").resolve(Transport.TCP) == ("example.com", 443)

    def test_describe(self):
        assert Endpoint("localhost", "9000").describe() == "localhost port 9000"


class TestServiceEndpoint:
    def test_qname_adds_trailing_dot(self):
        endpoint = ServiceEndpoint("printer", "_nwcat._tcp", "example.com")

        assert endpoint.qname == "printer._nwcat._tcp.example.com."
        assert endpoint.describe() == "service printer._nwcat._tcp.example.com."

    @pytest.mark.asyncio
    async def test_lowest_priority_then_highest_weight_wins(self, monkeypatch):
        resolver = fake_resolver([
            srv(20, 100, 1000, "backup.example.com."),
            srv(10, 5, 2000, "light.example.com."),
            srv(10, 50, 3000, "heavy.example.com."),
        ])
        monkeypatch.setattr(dns.asyncresolver, "Resolver", resolver)

        result = await ServiceEndpoint("printer", "_nwcat._tcp", "local.").resolve(Transport.TCP)

        assert result == ("heavy.example.com", 3000)
        assert resolver.queries == [("printer._nwcat._tcp.local.", "SRV")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
    async def test_missing_service_is_permanent(self, monkeypatch, error):
        monkeypatch.setattr(dns.asyncresolver, "Resolver", fake_resolver(error=error))

        with pytest.raises(DiscoveryError) as excinfo:
            await ServiceEndpoint("gone", "_nwcat._udp", "local.").resolve(Transport.UDP)

        assert excinfo.value.transient is False

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, monkeypatch):
        monkeypatch.setattr(dns.asyncresolver, "Resolver", fake_resolver(error=dns.exception.Timeout()))

        with pytest.raises(DiscoveryError) as excinfo:
            await ServiceEndpoint("slow", "_nwcat._tcp", "local.").resolve(Transport.TCP)

        assert excinfo.value.transient is True
