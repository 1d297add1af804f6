"""Shared fixtures and test doubles for nwcat tests."""

import asyncio
import datetime
import ipaddress
import logging
from collections import deque

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from hypothesis import settings as hypothesis_settings

from nwcat.config import NetcatSettings, set_settings
from nwcat.channel import ReceivedUnit

# Create a profile named "no_deadline" with deadline disabled.
hypothesis_settings.register_profile("no_deadline", deadline=None)
hypothesis_settings.load_profile("no_deadline")


@pytest.fixture(autouse=True)
def reset_globals():
    """Keep global settings and logger handlers from leaking between tests."""
    yield
    set_settings(None)
    logging.getLogger("nwcat").handlers.clear()


@pytest.fixture
def settings():
    """Settings with short retry delays."""
    return NetcatSettings(
        connect_timeout=2.0,
        retry_interval=0.05,
        retry_max_interval=0.2,
    )


@pytest.fixture
def certificate(tmp_path):
    """Self-signed certificate for localhost; returns (cert_path, key_path)."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    return str(cert_path), str(key_path)


# Test doubles


class FakeStdin:
    """Serves ``data`` in reads of at most ``max_read`` bytes, then EOF."""

    def __init__(self, data: bytes = b"", max_read: int | None = None, block_at_eof: bool = False):
        self.data = data
        self.max_read = max_read
        self.block_at_eof = block_at_eof
        self.offset = 0

    async def read(self, size: int) -> bytes:
        if self.offset >= len(self.data) and self.block_at_eof:
            await asyncio.Event().wait()
        if self.max_read is not None:
            size = min(size, self.max_read)
        chunk = self.data[self.offset:self.offset + size]
        self.offset += len(chunk)
        return chunk


class FakeStdout:
    """Collects everything written."""

    def __init__(self, events: list | None = None):
        self.chunks: list[bytes] = []
        self.events = events
        self.written = asyncio.Event()

    async def write(self, data: bytes) -> None:
        await asyncio.sleep(0)
        self.chunks.append(data)
        if self.events is not None:
            self.events.append(("write", data))
        self.written.set()

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)


class FakeConnection:
    """Connection double: scripted receive units, recorded sends."""

    id = 1

    def __init__(self, units=()):
        self.units: deque[ReceivedUnit] = deque(units)
        self.sent: list[tuple[bytes, object, bool]] = []

    def describe(self) -> str:
        return "fake peer"

    async def receive(self, minimum: int, maximum: int) -> ReceivedUnit:
        if not self.units:
            await asyncio.Event().wait()
        return self.units.popleft()

    async def send(self, data: bytes, context, is_complete: bool) -> None:
        await asyncio.sleep(0)
        self.sent.append((data, context, is_complete))


async def wait_for_state(states: list, wanted, timeout: float = 3.0) -> None:
    """Poll a recorded state list until ``wanted`` shows up."""
    async def poll():
        while wanted not in [s for s, _ in states]:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)
