"""
Connection Manager - owns the live adaptor connections of this limb.

The reconciler only decides *when* to connect, disconnect and send; this
module keeps the connection table (one entry per DeviceLink) and makes
connect/disconnect for the same link mutually exclusive and idempotent.

A table entry is only ever removed by :meth:`disconnect`. Connections that
die underneath (adaptor unregistered, closed by the adaptor) stay in the
table as closed entries until the reconciler disconnects or reconnects
the link, so the reconciler's bookkeeping of live connections stays
balanced.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from models import DeviceLink, NamespacedName
from plugins.adaptors.base import AdaptorError, AdaptorPlugin, Connection
from plugins.base import ConnectionNotification

logger = logging.getLogger(__name__)

# (adaptor_name, registered) -> None
AdaptorHandler = Callable[[str, bool], Awaitable[None]]
# (link key, notification) -> None
ConnectionHandler = Callable[[NamespacedName, ConnectionNotification], Awaitable[None]]


class ConnectionManager(ABC):
    """Contract the reconciler relies on."""

    @abstractmethod
    async def adaptor_exists(self, name: str) -> bool:
        """Whether an adaptor with this name is registered."""
        pass

    @abstractmethod
    async def connect(self, link: DeviceLink) -> bool:
        """
        Open (or reopen) the connection of a link.

        Returns:
            True if a connection for the link already existed and was
            replaced, False if this is a fresh connection.

        Raises:
            AdaptorError: If the adaptor is unknown or refused the connection.
        """
        pass

    @abstractmethod
    async def disconnect(self, link: DeviceLink) -> bool:
        """
        Close the connection of a link. Safe to call when none exists.

        Returns:
            True if a connection existed.
        """
        pass

    @abstractmethod
    async def send(self, device: Dict[str, Any], link: DeviceLink) -> None:
        """
        Send the device representation over the link's connection.

        Raises:
            AdaptorError: If there is no usable connection or the adaptor
                rejected the device.
        """
        pass

    @abstractmethod
    def connected_keys(self) -> List[NamespacedName]:
        """Keys of every link that has an entry in the connection table."""
        pass

    @abstractmethod
    def register_adaptor_handler(self, handler: AdaptorHandler) -> None:
        """Be told when adaptors are registered or unregistered."""
        pass

    @abstractmethod
    def register_connection_handler(self, handler: ConnectionHandler) -> None:
        """Be told about notifications pushed by connections."""
        pass


class AdaptorConnectionManager(ConnectionManager):
    """Connection manager backed by in-process adaptor plugins."""

    def __init__(self):
        self._adaptors: Dict[str, AdaptorPlugin] = {}
        self._connections: Dict[NamespacedName, Tuple[str, Connection]] = {}
        self._locks: Dict[NamespacedName, asyncio.Lock] = {}
        self._lock_users: Dict[NamespacedName, int] = {}
        self._adaptor_handlers: List[AdaptorHandler] = []
        self._connection_handlers: List[ConnectionHandler] = []

    @asynccontextmanager
    async def _lock(self, key: NamespacedName):
        """Hold the per-link lock; it is dropped once nobody holds or awaits it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    # Adaptors

    async def register_adaptor(self, adaptor: AdaptorPlugin) -> None:
        """Make an adaptor available and tell the adaptor handlers."""
        self._adaptors[adaptor.name] = adaptor
        logger.info(f"Adaptor {adaptor.name} registered")
        await self._notify_adaptor(adaptor.name, True)

    async def unregister_adaptor(self, name: str) -> None:
        """
        Remove an adaptor, closing every connection it serves.

        The closed connections stay in the table until their links are
        disconnected.
        """
        adaptor = self._adaptors.pop(name, None)
        if adaptor is None:
            return

        for key, (adaptor_name, connection) in list(self._connections.items()):
            if adaptor_name != name:
                continue
            async with self._lock(key):
                await self._close(key, connection)

        await adaptor.shutdown()
        logger.info(f"Adaptor {name} unregistered")
        await self._notify_adaptor(name, False)

    async def adaptor_exists(self, name: str) -> bool:
        return name in self._adaptors

    def list_adaptors(self) -> List[str]:
        return list(self._adaptors.keys())

    # Connections

    async def connect(self, link: DeviceLink) -> bool:
        key = link.key
        adaptor_name = link.spec.adaptor.name

        async with self._lock(key):
            adaptor = self._adaptors.get(adaptor_name)
            if adaptor is None:
                raise AdaptorError(f"adaptor {adaptor_name} is not registered")

            connection = await adaptor.connect(link, self._on_notification)
            previous = self._connections.get(key)
            self._connections[key] = (adaptor_name, connection)
            if previous is not None:
                await self._close(key, previous[1])
                logger.debug(f"Replaced connection of {key}")
            return previous is not None

    async def disconnect(self, link: DeviceLink) -> bool:
        key = link.key
        async with self._lock(key):
            entry = self._connections.pop(key, None)
            if entry is None:
                return False
            await self._close(key, entry[1])
            logger.debug(f"Disconnected {key} from {entry[0]}")
            return True

    async def send(self, device: Dict[str, Any], link: DeviceLink) -> None:
        entry = self._connections.get(link.key)
        if entry is None:
            raise AdaptorError("the connection is not established")
        await entry[1].send(link.status.model, device)

    def get_adaptor_name(self, key: NamespacedName) -> Optional[str]:
        """Adaptor serving the link's connection, if it has one."""
        entry = self._connections.get(key)
        return entry[0] if entry else None

    def connected_keys(self) -> List[NamespacedName]:
        return list(self._connections.keys())

    def connection_count(self) -> int:
        return len(self._connections)

    async def close_all(self) -> None:
        """Close every connection and forget them (shutdown)."""
        for key in list(self._connections.keys()):
            async with self._lock(key):
                entry = self._connections.pop(key, None)
                if entry is not None:
                    await self._close(key, entry[1])

    async def _close(self, key: NamespacedName, connection: Connection) -> None:
        try:
            await connection.close()
        except Exception as e:
            logger.warning(f"Error closing connection of {key}: {e}")

    # Handlers

    def register_adaptor_handler(self, handler: AdaptorHandler) -> None:
        self._adaptor_handlers.append(handler)

    def register_connection_handler(self, handler: ConnectionHandler) -> None:
        self._connection_handlers.append(handler)

    async def _notify_adaptor(self, name: str, registered: bool) -> None:
        for handler in self._adaptor_handlers:
            try:
                await handler(name, registered)
            except Exception as e:
                logger.error(f"Adaptor handler failed for {name}: {e}", exc_info=True)

    async def _on_notification(self, notification: ConnectionNotification) -> None:
        for handler in self._connection_handlers:
            try:
                await handler(notification.key, notification)
            except Exception as e:
                logger.error(
                    f"Connection handler failed for {notification.key}: {e}",
                    exc_info=True,
                )
