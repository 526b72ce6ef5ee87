"""
Convergence Engine Base - Abstract interface for provisioning backends.

A convergence engine makes the external system match a resource's spec and
removes whatever it created when the resource is deleted. The controller
runs exactly one engine per process.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from store import ManagedResource


class ConvergenceEngine(ABC):
    """
    Abstract base class for convergence engines.

    Both operations must be idempotent and safe to call again after a
    partial failure. Failures are reported by raising; every error is
    treated as retryable by the controller.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this engine (e.g., 'github_actions')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Engine version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the engine with configuration.

        Called once when the engine is loaded.

        Args:
            config: Engine-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def converge(self, resource: ManagedResource) -> None:
        """
        Make external state match ``resource.spec``.

        Called on every reconcile of a live, finalized resource, so it must
        be a no-op when nothing has changed.

        Args:
            resource: The resource to converge

        Raises:
            Exception: Any failure; the resource is retried with backoff.
        """
        pass

    @abstractmethod
    async def teardown(self, resource: ManagedResource) -> None:
        """
        Remove whatever external state ``converge`` created.

        Must succeed when converge never completed and when there is nothing
        left to remove.

        Args:
            resource: The resource being deleted

        Raises:
            Exception: Any failure; the finalizer is kept and the resource
                is retried with backoff.
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the engine."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load engine-specific configuration from environment variables.

        Override this method in subclasses to define how the engine
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this engine.
        """
        return {}
