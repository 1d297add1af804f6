"""
Configuration management for nwcat.

Loads tunables from environment variables or a .env file.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from nwcat.errors import ConfigurationError

# Largest payload a single UDP datagram can carry over IPv4
MAX_DATAGRAM_SIZE = 65507

# Check common locations for .env
ENV_LOCATIONS = [
    Path.home() / ".nwcat" / ".env",
    Path.home() / ".config" / "nwcat" / ".env",
    Path.cwd() / ".env",
]


def load_env_file() -> Path | None:
    """Load the first .env file found, returning its path."""
    for env_path in ENV_LOCATIONS:
        if env_path.exists():
            load_dotenv(env_path)
            return env_path
    return None


@dataclass
class NetcatSettings:
    """Runtime tunables."""

    # Relay
    chunk_size: int = 8192  # stdin read bound, must fit one datagram

    # Connection setup
    connect_timeout: float = 10.0
    retry_interval: float = 1.0       # First delay after entering waiting
    retry_max_interval: float = 30.0  # Backoff ceiling

    # Discovery (-b)
    discovery_domain: str = "local."
    service_name: str = "_nwcat"

    # TLS pre-shared key identity
    psk_identity: str = "nwcat"

    # Logging
    log_file: str | None = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Reject settings the relay cannot work with."""
        if not 0 < self.chunk_size <= MAX_DATAGRAM_SIZE:
            raise ConfigurationError(
                f"chunk size must be between 1 and {MAX_DATAGRAM_SIZE} bytes, got {self.chunk_size}"
            )
        if self.connect_timeout <= 0:
            raise ConfigurationError("connect timeout must be positive")
        if self.retry_interval <= 0 or self.retry_max_interval < self.retry_interval:
            raise ConfigurationError("retry interval must be positive and not exceed its maximum")
        if not self.psk_identity:
            raise ConfigurationError("PSK identity must not be empty")

    def service_type(self, transport: str) -> str:
        """DNS-SD service type for a transport, e.g. ``_nwcat._tcp``."""
        return f"{self.service_name}._{transport}"

    @classmethod
    def from_env(cls) -> "NetcatSettings":
        """Load settings from environment variables."""
        try:
            return cls(
                chunk_size=int(os.getenv("NWCAT_CHUNK_SIZE", "8192")),
                connect_timeout=float(os.getenv("NWCAT_CONNECT_TIMEOUT", "10")),
                retry_interval=float(os.getenv("NWCAT_RETRY_INTERVAL", "1")),
                retry_max_interval=float(os.getenv("NWCAT_RETRY_MAX_INTERVAL", "30")),
                discovery_domain=os.getenv("NWCAT_DISCOVERY_DOMAIN", "local."),
                service_name=os.getenv("NWCAT_SERVICE_NAME", "_nwcat"),
                psk_identity=os.getenv("NWCAT_PSK_IDENTITY", "nwcat"),
                log_file=os.getenv("NWCAT_LOG_FILE") or None,
            )
        except ValueError as e:
            raise ConfigurationError("invalid numeric setting in environment", e) from e


# Global settings instance
_settings: NetcatSettings | None = None


def get_settings() -> NetcatSettings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        load_env_file()
        _settings = NetcatSettings.from_env()
    return _settings


def set_settings(settings: NetcatSettings | None) -> None:
    """Set (or with None, reset) the global settings instance."""
    global _settings
    _settings = settings
