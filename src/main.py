"""
Main entry point for the DeviceLink limb.

This module wires the store, the adaptor connections, the reconciler and
the input plugins together and runs them until shutdown.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import get_config
from connection import AdaptorConnectionManager
from controller import LimbController
from db import DatabaseManager
from devicelink import DeviceLinkReconciler
from events import EventBus, EventRecorder
from metrics import LimbMetrics, start_metrics_server
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins
from resolver import DeviceLinkResolver

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the limb and its plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.event_bus: Optional[EventBus] = None
        self.connections: Optional[AdaptorConnectionManager] = None
        self.controller: Optional[LimbController] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False

    async def initialize(self):
        """Initialize all components."""
        node_name = self.config.controller.node_name
        logger.info(f"Initializing DeviceLink limb for node {node_name}")

        register_builtin_plugins()
        registry = get_registry()

        self.event_bus = EventBus()

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=self.event_bus,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        metrics = LimbMetrics()
        if self.config.metrics.enabled:
            start_metrics_server(self.config.metrics.port, metrics.registry)

        self.connections = AdaptorConnectionManager()
        reconciler = DeviceLinkReconciler(
            db=self.db,
            connections=self.connections,
            recorder=EventRecorder(self.db, component=f"limb/{node_name}"),
            metrics=metrics,
            node_name=node_name,
        )
        resolver = None
        if self.config.controller.resolver_enabled:
            resolver = DeviceLinkResolver(self.db, node_name)

        self.controller = LimbController(
            db_manager=self.db,
            reconciler=reconciler,
            connections=self.connections,
            event_bus=self.event_bus,
            config=self.config.controller,
            resolver=resolver,
        )

        # Adaptors register after the controller so their registration
        # notifications reach the reconciler.
        enabled_adaptors = (
            self.config.plugins.enabled_adaptor_plugins
            or registry.list_adaptor_plugins()
        )
        for adaptor_name in enabled_adaptors:
            if not registry.has_adaptor_plugin(adaptor_name):
                logger.warning(f"Adaptor plugin '{adaptor_name}' not found, skipping")
                continue
            adaptor = await registry.get_adaptor_plugin(
                adaptor_name, self.config.plugins.get_plugin_config(adaptor_name)
            )
            await self.connections.register_adaptor(adaptor)

        enabled_inputs = (
            self.config.plugins.enabled_input_plugins or registry.list_input_plugins()
        )
        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin = await registry.get_input_plugin(
                plugin_name, self.config.plugins.get_plugin_config(plugin_name)
            )
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin_name}")

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting DeviceLink limb")

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(self.controller.enqueue)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping DeviceLink limb")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.connections:
            await self.connections.close_all()

        if self.db:
            await self.db.close()

        logger.info("DeviceLink limb stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
