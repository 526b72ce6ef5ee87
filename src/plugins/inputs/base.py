"""
Input Plugin Base - Abstract interface for record input sources.

Input plugins let users write resources and resource groups into the
store. They never talk to the controller directly: every write reaches
the controller through the store's change notifications.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    The application hands each plugin the store and event bus through the
    setters below before calling start().
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self) -> None:
        """Start serving; runs until stop() is called."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the input plugin gracefully."""
        pass

    @abstractmethod
    async def health_check(self) -> Tuple[bool, str]:
        """
        Check if the input plugin is healthy.

        Returns:
            Tuple of (is_healthy, status_message).
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}

    def set_store(self, store: Any) -> None:
        """Give the plugin the DatabaseManager it writes records to."""
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """Give the plugin the EventBus it streams diagnostics from."""
        pass
