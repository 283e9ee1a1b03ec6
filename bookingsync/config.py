"""Configuration loading for bookingsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 5050
    observer_queue_size: int = 256
    default_group: str = "dashboard"


@dataclass
class StoreConfig:
    """Configuration for the in-memory record store."""

    tombstone_retention_seconds: int = 3600  # 0 disables deletion tombstones


@dataclass
class ClientConfig:
    """Configuration for the synchronizing client."""

    server_url: str = "http://127.0.0.1:5050"
    ws_path: str = "/ws"
    reconnect_delays: list[float] = field(
        default_factory=lambda: [0.0, 2.0, 5.0, 10.0, 15.0, 30.0]
    )
    final_retry_interval_seconds: float = 30.0
    max_reconnect_attempts: int | None = None  # None retries forever
    catchup_timeout_seconds: float = 10.0
    keepalive_interval_seconds: float = 15.0
    server_timeout_seconds: float = 60.0
    sync_overlap_seconds: float = 60.0
    focus_check_delay_seconds: float = 0.1

    @property
    def ws_url(self) -> str:
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{self.ws_path}"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with BOOKINGSYNC_ prefix."""
    return os.environ.get(f"BOOKINGSYNC_{key}", default)


def _parse_delays(value: str | list) -> list[float]:
    """Parse reconnect delays from a list or a comma-separated string."""
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    return [float(v) for v in value]


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if queue_size := _get_env("SERVER_OBSERVER_QUEUE_SIZE"):
        config.server.observer_queue_size = int(queue_size)

    # Store overrides
    if retention := _get_env("STORE_TOMBSTONE_RETENTION"):
        config.store.tombstone_retention_seconds = int(retention)

    # Client overrides
    if server_url := _get_env("CLIENT_SERVER_URL"):
        config.client.server_url = server_url
    if delays := _get_env("CLIENT_RECONNECT_DELAYS"):
        config.client.reconnect_delays = _parse_delays(delays)
    if final_interval := _get_env("CLIENT_FINAL_RETRY_INTERVAL"):
        config.client.final_retry_interval_seconds = float(final_interval)
    if max_attempts := _get_env("CLIENT_MAX_RECONNECT_ATTEMPTS"):
        config.client.max_reconnect_attempts = int(max_attempts) or None
    if timeout := _get_env("CLIENT_CATCHUP_TIMEOUT"):
        config.client.catchup_timeout_seconds = float(timeout)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    observer_queue_size=server_data.get(
                        "observer_queue_size", config.server.observer_queue_size
                    ),
                    default_group=server_data.get(
                        "default_group", config.server.default_group
                    ),
                )

            # Parse store config
            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    tombstone_retention_seconds=store_data.get(
                        "tombstone_retention_seconds",
                        config.store.tombstone_retention_seconds,
                    ),
                )

            # Parse client config
            if "client" in data:
                client_data = data["client"]
                defaults = ClientConfig()
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", defaults.server_url),
                    ws_path=client_data.get("ws_path", defaults.ws_path),
                    reconnect_delays=_parse_delays(
                        client_data.get("reconnect_delays", defaults.reconnect_delays)
                    ),
                    final_retry_interval_seconds=client_data.get(
                        "final_retry_interval_seconds",
                        defaults.final_retry_interval_seconds,
                    ),
                    max_reconnect_attempts=client_data.get(
                        "max_reconnect_attempts", defaults.max_reconnect_attempts
                    ),
                    catchup_timeout_seconds=client_data.get(
                        "catchup_timeout_seconds", defaults.catchup_timeout_seconds
                    ),
                    keepalive_interval_seconds=client_data.get(
                        "keepalive_interval_seconds",
                        defaults.keepalive_interval_seconds,
                    ),
                    server_timeout_seconds=client_data.get(
                        "server_timeout_seconds", defaults.server_timeout_seconds
                    ),
                    sync_overlap_seconds=client_data.get(
                        "sync_overlap_seconds", defaults.sync_overlap_seconds
                    ),
                    focus_check_delay_seconds=client_data.get(
                        "focus_check_delay_seconds",
                        defaults.focus_check_delay_seconds,
                    ),
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
