"""
Dummy adaptor.

Runs in-process and reflects every device it is sent back as the device's
status. Useful for trying links end to end without a real adaptor.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from models import DeviceLink, ModelReference
from plugins.adaptors.base import AdaptorPlugin, Connection
from plugins.base import ConnectionNotification, NotifyCallback

logger = logging.getLogger(__name__)

DUMMY_ADAPTOR_NAME = "adaptors.edge.cattle.io/dummy"


class DummyConnection(Connection):
    def __init__(self, link: DeviceLink, notify: NotifyCallback):
        self.key = link.key
        self.parameters = link.spec.adaptor.parameters
        self._notify = notify
        self.closed = False
        self.sent = 0

    async def send(self, model: ModelReference, device: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError(f"connection for {self.key} is closed")
        self.sent += 1
        status = dict(device.get("spec") or {})
        status["observedAt"] = datetime.now(timezone.utc).isoformat()
        await self._notify(ConnectionNotification(key=self.key, data=status))

    async def close(self) -> None:
        self.closed = True


class DummyAdaptor(AdaptorPlugin):
    """Echo adaptor that keeps no external state."""

    @property
    def name(self) -> str:
        return DUMMY_ADAPTOR_NAME

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    async def connect(self, link: DeviceLink, notify: NotifyCallback) -> Connection:
        logger.debug(f"Dummy connection opened for {link.key}")
        return DummyConnection(link, notify)
