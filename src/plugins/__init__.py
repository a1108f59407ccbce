"""
Plugin system for the DeviceLink limb.

This package provides the plugin architecture for device adaptors and
input sources.
"""

from plugins.base import ConnectionNotification, NotifyCallback
from plugins.adaptors.base import AdaptorError, AdaptorPlugin, Connection
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ConnectionNotification",
    "NotifyCallback",
    "AdaptorError",
    "AdaptorPlugin",
    "Connection",
    "PluginRegistry",
    "get_registry",
]
