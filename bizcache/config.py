"""Configuration loading for bizcache."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ClientConfig:
    name: str = "bizcache-client"


@dataclass
class CacheConfig:
    """Configuration for the local cache."""

    db_path: str = "~/.bizcache/cache.db"
    prefer_cache: bool = False  # Serve stale cache first, refresh in background


@dataclass
class RemoteConfig:
    """Configuration for the remote data store API."""

    base_url: str = ""
    api_key: str | None = None
    timeout_seconds: float = 10.0
    max_retries: int = 3
    version_path: str = "/data_version"
    categories_path: str = "/categories"
    businesses_path: str = "/businesses"

    @property
    def headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}


@dataclass
class FeedConfig:
    """Configuration for the realtime change feed (MQTT)."""

    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    topic: str = "bizcache/changes"
    username: str | None = None
    password: str | None = None
    connect_timeout_seconds: float = 5.0


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with BIZCACHE_ prefix."""
    return os.environ.get(f"BIZCACHE_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if name := _get_env("CLIENT_NAME"):
        config.client.name = name

    # Cache overrides
    if db_path := _get_env("CACHE_DB_PATH"):
        config.cache.db_path = db_path
    if prefer_cache := _get_env("CACHE_PREFER_CACHE"):
        config.cache.prefer_cache = _as_bool(prefer_cache)

    # Remote overrides
    if url := _get_env("REMOTE_URL"):
        config.remote.base_url = url
    if api_key := _get_env("REMOTE_API_KEY"):
        config.remote.api_key = api_key
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(retries)

    # Feed overrides
    if feed_enabled := _get_env("FEED_ENABLED"):
        config.feed.enabled = _as_bool(feed_enabled)
    if broker := _get_env("FEED_BROKER"):
        config.feed.broker = broker
    if port := _get_env("FEED_PORT"):
        config.feed.port = int(port)
    if topic := _get_env("FEED_TOPIC"):
        config.feed.topic = topic
    if username := _get_env("FEED_USERNAME"):
        config.feed.username = username
    if password := _get_env("FEED_PASSWORD"):
        config.feed.password = password

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

            if "client" in data:
                config.client = ClientConfig(
                    name=data["client"].get("name", config.client.name)
                )

            if "cache" in data:
                cache_data = data["cache"]
                config.cache = CacheConfig(
                    db_path=cache_data.get("db_path", config.cache.db_path),
                    prefer_cache=cache_data.get(
                        "prefer_cache", config.cache.prefer_cache
                    ),
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    api_key=remote_data.get("api_key"),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    version_path=remote_data.get(
                        "version_path", config.remote.version_path
                    ),
                    categories_path=remote_data.get(
                        "categories_path", config.remote.categories_path
                    ),
                    businesses_path=remote_data.get(
                        "businesses_path", config.remote.businesses_path
                    ),
                )

            if "feed" in data:
                feed_data = data["feed"]
                config.feed = FeedConfig(
                    enabled=feed_data.get("enabled", config.feed.enabled),
                    broker=feed_data.get("broker", config.feed.broker),
                    port=feed_data.get("port", config.feed.port),
                    topic=feed_data.get("topic", config.feed.topic),
                    username=feed_data.get("username"),
                    password=feed_data.get("password"),
                    connect_timeout_seconds=feed_data.get(
                        "connect_timeout_seconds", config.feed.connect_timeout_seconds
                    ),
                )

    return _apply_env_overrides(config)
