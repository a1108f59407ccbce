"""
HTTP adaptor - relays links to an adaptor process over HTTP.

The remote adaptor exposes:

- ``POST {base}/connections`` - open a connection, returns ``{"id": ...}``
- ``POST {base}/connections/{id}/device`` - receive a device, may return
  ``{"status": {...}}`` which is relayed back as device status
- ``DELETE {base}/connections/{id}`` - close the connection
"""

import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from models import DeviceLink, ModelReference
from plugins.adaptors.base import AdaptorError, AdaptorPlugin, Connection
from plugins.base import ConnectionNotification, NotifyCallback

logger = logging.getLogger(__name__)

HTTP_ADAPTOR_NAME = "adaptors.edge.cattle.io/http"


class HTTPConnection(Connection):
    def __init__(
        self,
        adaptor: "HTTPAdaptor",
        link: DeviceLink,
        connection_id: str,
        notify: NotifyCallback,
    ):
        self._adaptor = adaptor
        self.key = link.key
        self.connection_id = connection_id
        self._notify = notify
        self.closed = False

    @property
    def url(self) -> str:
        return f"{self._adaptor.base_url}/connections/{self.connection_id}"

    async def send(self, model: ModelReference, device: Dict[str, Any]) -> None:
        if self.closed:
            raise AdaptorError(f"connection {self.connection_id} is closed")

        payload = {"model": model.to_dict(), "device": device}
        async with aiohttp.ClientSession(timeout=self._adaptor.client_timeout) as session:
            async with session.post(
                f"{self.url}/device",
                headers=self._adaptor.get_headers(),
                json=payload,
            ) as response:
                if response.status == 410:
                    self.closed = True
                    await self._notify(
                        ConnectionNotification(
                            key=self.key,
                            closed=True,
                            error="the adaptor closed the connection",
                        )
                    )
                    raise AdaptorError(f"connection {self.connection_id} is gone")
                if response.status not in (200, 202, 204):
                    raise AdaptorError(
                        f"adaptor rejected device: {response.status} - "
                        f"{await response.text()}"
                    )
                if response.status == 204:
                    return
                body = await response.json()

        status = body.get("status") if isinstance(body, dict) else None
        if status:
            await self._notify(ConnectionNotification(key=self.key, data=status))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        async with aiohttp.ClientSession(timeout=self._adaptor.client_timeout) as session:
            async with session.delete(
                self.url, headers=self._adaptor.get_headers()
            ) as response:
                if response.status not in (200, 204, 404):
                    logger.warning(
                        f"Failed to close adaptor connection {self.connection_id}: "
                        f"{response.status} - {await response.text()}"
                    )


class HTTPAdaptor(AdaptorPlugin):
    """
    Adaptor plugin for adaptor processes reachable over HTTP.

    Link parameters are passed to the remote adaptor verbatim.
    """

    def __init__(self):
        self.base_url: str = "http://localhost:8080"
        self.token: Optional[str] = None
        self.timeout: int = 30

    @property
    def name(self) -> str:
        return HTTP_ADAPTOR_NAME

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP adaptor configuration from environment variables."""
        return {
            "base_url": os.getenv("HTTP_ADAPTOR_URL", "http://localhost:8080"),
            "token": os.getenv("HTTP_ADAPTOR_TOKEN", ""),
            "timeout": int(os.getenv("HTTP_ADAPTOR_TIMEOUT", "30")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.base_url = config.get("base_url", self.base_url).rstrip("/")
        self.token = config.get("token") or None
        self.timeout = config.get("timeout", self.timeout)
        logger.debug(
            f"HTTP adaptor initialized: base_url={self.base_url}, "
            f"timeout={self.timeout}s"
        )

    @property
    def client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout)

    def get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def connect(self, link: DeviceLink, notify: NotifyCallback) -> Connection:
        parameters = link.spec.adaptor.parameters
        payload = {
            "namespace": link.metadata.namespace,
            "name": link.metadata.name,
            "uid": link.metadata.uid,
            "parameters": (
                parameters.decode("utf-8", errors="replace")
                if parameters is not None
                else None
            ),
        }

        async with aiohttp.ClientSession(timeout=self.client_timeout) as session:
            async with session.post(
                f"{self.base_url}/connections",
                headers=self.get_headers(),
                json=payload,
            ) as response:
                if response.status not in (200, 201):
                    raise AdaptorError(
                        f"adaptor refused connection: {response.status} - "
                        f"{await response.text()}"
                    )
                body = await response.json()

        connection_id = body.get("id")
        if not connection_id:
            raise AdaptorError("adaptor did not return a connection id")

        logger.info(f"Opened HTTP adaptor connection {connection_id} for {link.key}")
        return HTTPConnection(self, link, str(connection_id), notify)
