"""
Plugin Registry - Discovery and registration of plugins.

This module provides the central registry for adaptor and input plugins,
handling discovery, registration, and instantiation.
"""

from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import logger
from plugins.adaptors.base import AdaptorPlugin
from plugins.inputs.base import InputPlugin

ADAPTOR_ENTRY_POINT_GROUP = "limb.adaptors"


class PluginRegistry:
    """
    Central registry for all plugins.

    Handles discovery, registration, and instantiation of adaptor and
    input plugins.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._adaptor_plugins: Dict[str, Type[AdaptorPlugin]] = {}
        self._input_plugins: Dict[str, Type[InputPlugin]] = {}

        # Cached plugin metadata (name, version) to avoid repeated instantiation
        self._adaptor_plugin_info: Dict[str, Dict[str, str]] = {}
        self._input_plugin_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized plugin instances
        self._adaptor_instances: Dict[str, AdaptorPlugin] = {}
        self._input_instances: Dict[str, InputPlugin] = {}

        # Plugin configurations loaded from environment
        self._adaptor_plugin_configs: Dict[str, Dict[str, Any]] = {}
        self._input_plugin_configs: Dict[str, Dict[str, Any]] = {}

    # Registration methods

    def register_adaptor_plugin(self, plugin_class: Type[AdaptorPlugin]) -> None:
        """
        Register an adaptor plugin class.

        Args:
            plugin_class: The AdaptorPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._adaptor_plugins:
            logger.warning(f"Overwriting existing adaptor plugin: {name}")

        self._adaptor_plugins[name] = plugin_class
        self._adaptor_plugin_info[name] = {"name": name, "version": version}
        self._adaptor_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered adaptor plugin: {name} v{version}")

    def register_input_plugin(self, plugin_class: Type[InputPlugin]) -> None:
        """
        Register an input plugin class.

        Args:
            plugin_class: The InputPlugin subclass to register
        """
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._input_plugins:
            logger.warning(f"Overwriting existing input plugin: {name}")

        self._input_plugins[name] = plugin_class
        self._input_plugin_info[name] = {"name": name, "version": version}
        self._input_plugin_configs[name] = plugin_class.load_config_from_env()
        logger.info(f"Registered input plugin: {name} v{version}")

    # Instantiation methods

    async def get_adaptor_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> AdaptorPlugin:
        """
        Get an initialized adaptor plugin instance.

        Args:
            name: The adaptor name to retrieve
            config: Optional configuration to pass to initialize(); the
                configuration loaded from the environment is used otherwise

        Returns:
            An initialized AdaptorPlugin instance

        Raises:
            ValueError: If the adaptor name is not registered
        """
        if name not in self._adaptor_plugins:
            available = ", ".join(self._adaptor_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown adaptor plugin: {name}. Available plugins: {available}"
            )

        if name not in self._adaptor_instances:
            plugin = self._adaptor_plugins[name]()
            merged = {**self._adaptor_plugin_configs.get(name, {}), **(config or {})}
            await plugin.initialize(merged)
            self._adaptor_instances[name] = plugin
            logger.info(f"Initialized adaptor plugin: {name}")

        return self._adaptor_instances[name]

    async def get_input_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> InputPlugin:
        """
        Get an initialized input plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized InputPlugin instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._input_plugins:
            available = ", ".join(self._input_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown input plugin: {name}. Available plugins: {available}"
            )

        if name not in self._input_instances:
            plugin = self._input_plugins[name]()
            merged = {**self._input_plugin_configs.get(name, {}), **(config or {})}
            await plugin.initialize(merged)
            self._input_instances[name] = plugin
            logger.info(f"Initialized input plugin: {name}")

        return self._input_instances[name]

    # Discovery methods

    def list_adaptor_plugins(self) -> List[str]:
        """List all registered adaptor plugin names."""
        return list(self._adaptor_plugins.keys())

    def list_input_plugins(self) -> List[str]:
        """List all registered input plugin names."""
        return list(self._input_plugins.keys())

    def has_adaptor_plugin(self, name: str) -> bool:
        """Check if an adaptor plugin is registered."""
        return name in self._adaptor_plugins

    def has_input_plugin(self, name: str) -> bool:
        """Check if an input plugin is registered."""
        return name in self._input_plugins

    def get_adaptor_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Get 'name' and 'version' of a registered adaptor plugin."""
        return self._adaptor_plugin_info.get(name)

    def get_input_plugin_info(self, name: str) -> Optional[Dict[str, str]]:
        """Get 'name' and 'version' of a registered input plugin."""
        return self._input_plugin_info.get(name)

    def get_adaptor_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for an adaptor plugin, or an empty dict."""
        return self._adaptor_plugin_configs.get(name, {})

    def get_input_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for an input plugin, or an empty dict."""
        return self._input_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins() -> None:
    """
    Register all built-in plugins and discover adaptor plugins via
    entry points.

    This function is called during application startup to register
    the plugins that ship with the limb and any installed adaptors.
    """
    registry = get_registry()

    from plugins.adaptors import DummyAdaptor, HTTPAdaptor

    registry.register_adaptor_plugin(DummyAdaptor)
    registry.register_adaptor_plugin(HTTPAdaptor)

    from plugins.inputs.http import HTTPInputPlugin

    registry.register_input_plugin(HTTPInputPlugin)

    # Discover and register third-party adaptors via entry points
    discovered = entry_points(group=ADAPTOR_ENTRY_POINT_GROUP)
    for ep in discovered:
        try:
            adaptor_class = ep.load()
            registry.register_adaptor_plugin(adaptor_class)
        except Exception as e:
            logger.warning(f"Could not load adaptor plugin {ep.name}: {e}")
