"""Client configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .transport.base import TransportConfig

DEFAULT_BASE_URL = "wss://conjure.chucky.cloud/ws"

_TRUTHY = ("1", "true", "yes", "on")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


@dataclass
class ClientConfig:
    """Configuration shared by every session a client creates.

    Durations are in seconds.
    """

    base_url: str = DEFAULT_BASE_URL
    token: str = ""
    debug: bool = False

    timeout: float = 60.0
    keepalive_interval: float = 300.0
    auto_reconnect: bool = False
    max_reconnect_attempts: int = 5

    # Bound on waiting for the ready acknowledgement after ``init``
    init_timeout: float = 30.0

    @classmethod
    def from_env(cls, **overrides: object) -> ClientConfig:
        """Build a config from ``CHUCKY_*`` environment variables.

        Keyword arguments that are not None take precedence.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        config = cls(
            base_url=os.getenv("CHUCKY_URL", DEFAULT_BASE_URL),
            token=os.getenv("CHUCKY_TOKEN", ""),
            debug=_env_flag("CHUCKY_DEBUG", False),
            auto_reconnect=_env_flag("CHUCKY_AUTO_RECONNECT", False),
        )
        if timeout := os.getenv("CHUCKY_TIMEOUT"):
            config.timeout = float(timeout)
        if attempts := os.getenv("CHUCKY_MAX_RECONNECT_ATTEMPTS"):
            config.max_reconnect_attempts = int(attempts)

        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise TypeError(f"Unknown config option: {key}")
            setattr(config, key, value)
        return config

    def transport_config(self) -> TransportConfig:
        """Transport settings for one session connection."""
        return TransportConfig(
            url=self.base_url,
            token=self.token,
            timeout=self.timeout,
            keepalive_interval=self.keepalive_interval,
            auto_reconnect=self.auto_reconnect,
            max_reconnect_attempts=self.max_reconnect_attempts,
            debug=self.debug,
        )
