"""
Configuration module for the groupwise operator.

Loads configuration from environment variables. The application builds a
single Config at startup and passes it to the components that need it.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from finalizers import FINALIZER_RESOURCES

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "groupwise"
    user: str = "operator"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 5
    max_pool_size: int = 20
    command_timeout: float = 60.0

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
            database=os.getenv("DB_NAME", "groupwise"),
            user=os.getenv("DB_USER", "operator"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "5")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "20")),
            command_timeout=float(os.getenv("DB_COMMAND_TIMEOUT", "60")),
        )


@dataclass
class ControllerConfig:
    """Controller workers, scheduling and backoff configuration."""

    max_concurrent_reconciles: int = 3
    resync_interval: int = 300  # seconds between full resyncs
    reconcile_timeout: float = 900.0  # deadline for a single reconcile

    # Exponential backoff configuration
    backoff_base_delay: float = 1.0  # base delay in seconds
    backoff_max_delay: float = 1000.0  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    finalizer: str = FINALIZER_RESOURCES

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "3")),
            resync_interval=int(os.getenv("RESYNC_INTERVAL", "300")),
            reconcile_timeout=float(os.getenv("RECONCILE_TIMEOUT", "900")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "1")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "1000")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            finalizer=os.getenv("FINALIZER_NAME", FINALIZER_RESOURCES),
        )


@dataclass
class APIConfig:
    """API server and logging configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Convergence engine used by this process
    engine_plugin: str = "github_actions"

    # List of enabled input plugin names (empty = use all registered plugins)
    enabled_input_plugins: List[str] = field(default_factory=list)

    # Plugin-specific configurations keyed by plugin name
    plugin_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_inputs_str = os.getenv("ENABLED_INPUT_PLUGINS", "")
        enabled_inputs = [p.strip() for p in enabled_inputs_str.split(",") if p.strip()]

        # Load plugin configs from JSON environment variable
        plugin_configs = {}
        if os.getenv("PLUGIN_CONFIGS"):
            try:
                plugin_configs = json.loads(os.getenv("PLUGIN_CONFIGS"))
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PLUGIN_CONFIGS: {e}")

        return cls(
            engine_plugin=os.getenv("ENGINE_PLUGIN", "github_actions"),
            enabled_input_plugins=enabled_inputs,
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
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            controller=ControllerConfig.from_env(),
            api=APIConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            database=DatabaseConfig(),
            controller=ControllerConfig(),
            api=APIConfig(),
            plugins=PluginConfig(),
        )
