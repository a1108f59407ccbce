"""
Configuration module for the DeviceLink limb.

Loads configuration from environment variables. Every node runs its own
limb, so the node identity is part of the controller configuration.
"""

import json
import os
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [p.strip() for p in value.split(",") if p.strip()] if value else []


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "octopus"
    user: str = "octopus"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set. "
                "Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "octopus"),
            user=os.getenv("DB_USER", "octopus"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
        )


@dataclass
class ControllerConfig:
    """Limb reconciliation configuration."""

    node_name: str = ""
    reconcile_interval: int = 60  # seconds between full resyncs
    max_concurrent_reconciles: int = 5

    # Exponential backoff for requeued links
    backoff_base_delay: float = 1.0  # seconds
    backoff_max_delay: float = 300.0  # seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    # Resolve status.nodeName and ModelExisted in-process
    resolver_enabled: bool = True

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        node_name = os.getenv("NODE_NAME", "") or socket.gethostname()
        return cls(
            node_name=node_name,
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            resolver_enabled=_env_bool("RESOLVER_ENABLED", "true"),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=_env_bool("CORS_ENABLED"),
            cors_origins=_env_list("CORS_ORIGINS") or ["*"],
        )


@dataclass
class MetricsConfig:
    """Prometheus metrics endpoint configuration."""

    enabled: bool = False
    port: int = 9090

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=_env_bool("METRICS_ENABLED"),
            port=int(os.getenv("METRICS_PORT", "9090")),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Enabled plugin names (empty = use all registered plugins)
    enabled_adaptor_plugins: List[str] = field(default_factory=list)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        plugin_configs = {}
        raw = os.getenv("PLUGIN_CONFIGS")
        if raw:
            try:
                plugin_configs = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"PLUGIN_CONFIGS is not valid JSON: {e}") from e

        return cls(
            enabled_adaptor_plugins=_env_list("ENABLED_ADAPTOR_PLUGINS"),
            enabled_input_plugins=_env_list("ENABLED_INPUT_PLUGINS"),
            plugin_configs=plugin_configs,
        )

    def get_plugin_config(self, plugin_name: str) -> Dict[str, Any]:
        """Get configuration for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


@dataclass
class Config:
    """Main configuration object."""

    database: DatabaseConfig
    controller: ControllerConfig
    api: APIConfig
    metrics: MetricsConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            metrics=MetricsConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            metrics=MetricsConfig(),
            plugins=PluginConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
