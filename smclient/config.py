"""
Client Configuration
Centralized configuration for the multiworld client.
"""
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Dict, Any
import logging
import os

import yaml

from protocol.constants import (
    DEFAULT_SNI_ADDRESS,
    DEVICE_REQUEST_TIMEOUT,
    DEVICE_REDISCOVER_DELAY,
    RECONNECT_DELAY,
    MAX_RECONNECT_ATTEMPTS,
    BOUNCE_INTERVAL,
)

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class DeviceConfig:
    """SNI device configuration."""
    sni_address: str = DEFAULT_SNI_ADDRESS
    device_name: Optional[str] = None  # None = first device SNI reports
    request_timeout: float = DEVICE_REQUEST_TIMEOUT
    rediscover_delay: float = DEVICE_REDISCOVER_DELAY


@dataclass
class SessionConfig:
    """Session server connection configuration."""
    server_address: Optional[str] = None
    password: Optional[str] = None
    reconnect_delay: float = RECONNECT_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS


@dataclass
class WatcherConfig:
    """Reconciliation loop configuration."""
    tick_interval: float = 0.125  # Seconds between ticks
    bounce_interval: float = BOUNCE_INTERVAL


@dataclass
class ClientConfig:
    """Main configuration for the client."""
    device: DeviceConfig = field(default_factory=DeviceConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)

    data_dir: str = str(Path.home() / ".smclient")

    # Enable/disable features
    receive_items: bool = True
    enable_console: bool = True

    debug_mode: bool = False

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables."""
        return cls(
            device=DeviceConfig(
                sni_address=os.getenv("SNI_ADDRESS", DEFAULT_SNI_ADDRESS),
                device_name=os.getenv("SNI_DEVICE"),
                request_timeout=float(os.getenv("SNI_REQUEST_TIMEOUT", str(DEVICE_REQUEST_TIMEOUT))),
                rediscover_delay=float(os.getenv("SNI_REDISCOVER_DELAY", str(DEVICE_REDISCOVER_DELAY)))
            ),
            session=SessionConfig(
                server_address=os.getenv("SERVER_ADDRESS"),
                password=os.getenv("SERVER_PASSWORD"),
                reconnect_delay=float(os.getenv("SERVER_RECONNECT_DELAY", str(RECONNECT_DELAY))),
                max_reconnect_attempts=int(os.getenv("SERVER_MAX_RECONNECTS", str(MAX_RECONNECT_ATTEMPTS)))
            ),
            watcher=WatcherConfig(
                tick_interval=float(os.getenv("WATCHER_TICK_INTERVAL", "0.125")),
                bounce_interval=float(os.getenv("WATCHER_BOUNCE_INTERVAL", str(BOUNCE_INTERVAL)))
            ),
            data_dir=os.getenv("CLIENT_DATA_DIR", str(Path.home() / ".smclient")),
            receive_items=_env_bool("RECEIVE_ITEMS", "true"),
            enable_console=_env_bool("ENABLE_CONSOLE", "true"),
            debug_mode=_env_bool("DEBUG_MODE", "false")
        )

    def merge_yaml(self, path: str) -> "ClientConfig":
        """
        Overlay values from a YAML file.

        The file mirrors the dataclass layout:

            device: {sni_address: ..., device_name: ...}
            session: {server_address: ..., password: ...}
            watcher: {tick_interval: ...}
            receive_items: true

        Args:
            path: Path to the YAML file.

        Returns:
            New ClientConfig with the file's values applied.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        sections = {
            "device": self.device,
            "session": self.session,
            "watcher": self.watcher,
        }
        updates: Dict[str, Any] = {}
        for name, section in sections.items():
            values = data.pop(name, None) or {}
            known = {f.name for f in fields(section)}
            unknown = set(values) - known
            if unknown:
                logger.warning(f"[CONFIG] Ignoring unknown {name} keys: {sorted(unknown)}")
            updates[name] = replace(section, **{k: v for k, v in values.items() if k in known})

        top_level = {f.name for f in fields(self)} - set(sections)
        for key, value in data.items():
            if key in top_level:
                updates[key] = value
            else:
                logger.warning(f"[CONFIG] Ignoring unknown key: {key}")

        return replace(self, **updates)


# Default configuration instance
default_config = ClientConfig()


def get_config(path: Optional[str] = None) -> ClientConfig:
    """Get configuration (from env if available, else default), overlaid with a YAML file."""
    try:
        config = ClientConfig.from_env()
    except ValueError as e:
        logger.warning(f"[CONFIG] Invalid environment value ({e}), using defaults")
        config = default_config

    if path:
        config = config.merge_yaml(path)
    return config
