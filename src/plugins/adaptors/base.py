"""
Adaptor Plugin Base - Abstract interface for device adaptors.

An adaptor bridges the limb to physical or virtual devices over its own
protocol. The limb opens one connection per DeviceLink through the
adaptor named in the link, sends the device representation over it, and
receives status notifications back.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from models import DeviceLink, ModelReference
from plugins.base import NotifyCallback


class AdaptorError(Exception):
    """Raised when an adaptor rejects or fails a request."""


class Connection(ABC):
    """A live session between the limb and an adaptor for one link."""

    @abstractmethod
    async def send(self, model: ModelReference, device: Dict[str, Any]) -> None:
        """
        Send the device representation to the adaptor.

        Args:
            model: The device model the representation conforms to
            device: The device representation

        Raises:
            Exception: If the adaptor could not accept the device.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the session. Closing twice must be harmless."""
        pass


class AdaptorPlugin(ABC):
    """
    Abstract base class for adaptor plugins.

    Adaptor plugins open connections for DeviceLinks whose
    ``spec.adaptor.name`` matches :attr:`name`.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Adaptor name as used in links (e.g., 'adaptors.edge.cattle.io/dummy')."""
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
    async def connect(self, link: DeviceLink, notify: NotifyCallback) -> Connection:
        """
        Open a connection for a link.

        Args:
            link: The link being connected; its adaptor parameters are
                passed through to the adaptor untouched.
            notify: Callback for status data and close notifications.

        Returns:
            The open Connection.
        """
        pass

    async def shutdown(self) -> None:
        """Release plugin-wide resources. Connections are closed before this."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this plugin.
        """
        return {}
