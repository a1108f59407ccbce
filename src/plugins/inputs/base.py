"""
Input Plugin Base - Abstract interface for DeviceLink input sources.

Input plugins let users submit DeviceLinks and device models:
- HTTP API: REST endpoints
- GitOps: Watch Git repositories of manifests
- File watcher: Watch local manifest files

Writes go straight to the resource store; the store announces them on the
event bus, which is what drives reconciliation.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict

from models import NamespacedName

# Callback asking the limb to reconcile a link now
ReconcileCallback = Callable[[NamespacedName], Awaitable[None]]


class InputPlugin(ABC):
    """
    Abstract base class for input plugins.

    Input plugins are responsible for receiving DeviceLinks from external
    sources and writing them to the resource store.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'http', 'gitops')."""
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

        Called once when the plugin is loaded.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def start(self, request_reconcile: ReconcileCallback) -> None:
        """
        Start the input plugin.

        Args:
            request_reconcile: Callback to enqueue a link for an immediate
                reconcile pass, bypassing the watch filter.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop the input plugin gracefully.

        This should cleanly shut down any servers, watchers, or connections.
        """
        pass

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
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

    def set_db_manager(self, db_manager: Any) -> None:
        """
        Set the database manager for plugins that need database access.

        Args:
            db_manager: The DatabaseManager instance
        """
        pass

    def set_event_bus(self, event_bus: Any) -> None:
        """
        Set the event bus for plugins that stream watch events.

        Args:
            event_bus: The EventBus instance
        """
        pass
