"""
Configuration and path management for webshield.
"""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .retry import RetryPolicy

# High-traffic hosts whose rules are kept in the pinned cache
DEFAULT_PINNED_HOSTS = [
    "www.google.com",
    "www.youtube.com",
    "www.facebook.com",
    "www.amazon.com",
    "www.reddit.com",
    "x.com",
]

CONFIG_ENV = "WEBSHIELD_CONFIG"


@dataclass
class ShieldConfig:
    """Main configuration."""

    # Rule cache
    cache_max_size: int = 1000
    cache_ttl: float = 300.0  # 5 minutes
    pinned_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_PINNED_HOSTS))
    refresh_pinned_on_update: bool = True

    # Fetching from the engine
    max_attempts: int = 3
    retry_base_delay: float = 0.15
    retry_jitter: float = 0.1
    max_parallel_fetches: int = 6
    engine_timeout: float = 10.0
    engine_reconnect_delay: float = 5.0

    # Sockets
    engine_socket: str = "engine"
    delivery_socket: str = "delivery"

    # Page side
    gateway_timeout: float = 10.0
    extended_css_path: str | None = None  # None = rely on a page-provided ExtendedCss
    verbose: bool = False

    # Engine host
    chunk_size: int = 32768

    @classmethod
    def load(cls, path: Path | None = None) -> "ShieldConfig":
        """Load configuration from file."""
        if path is None:
            path = get_config_path()

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        defaults = cls()
        return cls(
            cache_max_size=data.get("cache_max_size", defaults.cache_max_size),
            cache_ttl=data.get("cache_ttl", defaults.cache_ttl),
            pinned_hosts=data.get("pinned_hosts", defaults.pinned_hosts),
            refresh_pinned_on_update=data.get(
                "refresh_pinned_on_update", defaults.refresh_pinned_on_update
            ),
            max_attempts=data.get("max_attempts", defaults.max_attempts),
            retry_base_delay=data.get("retry_base_delay", defaults.retry_base_delay),
            retry_jitter=data.get("retry_jitter", defaults.retry_jitter),
            max_parallel_fetches=data.get("max_parallel_fetches", defaults.max_parallel_fetches),
            engine_timeout=data.get("engine_timeout", defaults.engine_timeout),
            engine_reconnect_delay=data.get(
                "engine_reconnect_delay", defaults.engine_reconnect_delay
            ),
            engine_socket=data.get("engine_socket", defaults.engine_socket),
            delivery_socket=data.get("delivery_socket", defaults.delivery_socket),
            gateway_timeout=data.get("gateway_timeout", defaults.gateway_timeout),
            extended_css_path=data.get("extended_css_path"),
            verbose=data.get("verbose", defaults.verbose),
            chunk_size=data.get("chunk_size", defaults.chunk_size),
        )

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = get_config_path()

        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "cache_max_size": self.cache_max_size,
            "cache_ttl": self.cache_ttl,
            "pinned_hosts": self.pinned_hosts,
            "refresh_pinned_on_update": self.refresh_pinned_on_update,
            "max_attempts": self.max_attempts,
            "retry_base_delay": self.retry_base_delay,
            "retry_jitter": self.retry_jitter,
            "max_parallel_fetches": self.max_parallel_fetches,
            "engine_timeout": self.engine_timeout,
            "engine_reconnect_delay": self.engine_reconnect_delay,
            "engine_socket": self.engine_socket,
            "delivery_socket": self.delivery_socket,
            "gateway_timeout": self.gateway_timeout,
            "extended_css_path": self.extended_css_path,
            "verbose": self.verbose,
            "chunk_size": self.chunk_size,
        }

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def retry_policy(self) -> RetryPolicy:
        """Build the backoff policy shared by the coordinator and the gateway."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_jitter=self.retry_jitter,
        )


def get_config_dir() -> Path:
    """Get config directory following platform conventions."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

    return base / "webshield"


def get_config_path() -> Path:
    """Get the config file path.

    Priority:
    1. WEBSHIELD_CONFIG environment variable
    2. config.json in the platform config directory
    """
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        return Path(env_path).expanduser()
    return get_config_dir() / "config.json"
