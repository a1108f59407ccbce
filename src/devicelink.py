"""
DeviceLink Reconciler - drives one DeviceLink towards its declared state.

Each call to :meth:`DeviceLinkReconciler.reconcile` is a single,
level-triggered pass over one link:

    fetch -> node affinity -> ModelExisted -> deletion/finalizer
          -> AdaptorExisted -> DeviceCreated -> DeviceConnected

A pass advances at most one stage that needs a write, writes at most once,
and reports whether it wants to be requeued. Later stages are only
evaluated while every earlier condition is True; a gate that does not
hold ends the pass early. Whenever the node, the model, the adaptor or its
parameters change, or the link is deleted, the link's connection is
dropped before anything else happens, so a link never holds more than one
connection.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from conditions import (
    ADAPTOR_EXISTED,
    DEVICE_CONNECTED,
    DEVICE_CREATED,
    MODEL_EXISTED,
    REASON_MODEL_NOT_REGISTERED,
    fail_on,
    get_status,
    success_on,
    to_check,
)
from connection import ConnectionManager
from db import (
    AlreadyExistsError,
    ConflictError,
    NoKindMatchError,
    NotFoundError,
    StoreError,
)
from events import (
    REASON_CONNECTED,
    REASON_CREATED,
    REASON_FAILED_CONNECTED,
    REASON_FAILED_CREATED,
    REASON_FAILED_SENT,
    EventRecorder,
)
from metrics import LimbMetrics
from models import ConditionStatus, DeviceAdaptor, DeviceLink, NamespacedName
from plugins.base import ConnectionNotification
from template import TemplateError, construct_device, is_active, update_device

logger = logging.getLogger(__name__)

FINALIZER = "edge.cattle.io/octopus-limb"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    requeue: bool = False
    message: str = ""


def parameters_changed(declared: DeviceAdaptor, recorded: Optional[bytes]) -> bool:
    """
    Compare declared adaptor parameters with the recorded copy.

    Only two non-empty payloads with different bytes count as a change;
    adding or removing the parameters altogether does not.
    """
    if not declared.parameters or not recorded:
        return False
    return declared.parameters != recorded


class DeviceLinkReconciler:
    """Reconciles DeviceLinks bound to one node."""

    def __init__(
        self,
        db: Any,
        connections: ConnectionManager,
        recorder: EventRecorder,
        metrics: LimbMetrics,
        node_name: str,
    ):
        self.db = db
        self.connections = connections
        self.recorder = recorder
        self.metrics = metrics
        self.node_name = node_name
        self._enqueue: Optional[Callable[[NamespacedName], Awaitable[None]]] = None

    def set_enqueue(self, enqueue: Callable[[NamespacedName], Awaitable[None]]) -> None:
        """Set the callback handlers use to ask for a reconcile pass."""
        self._enqueue = enqueue

    async def reconcile(self, key: NamespacedName) -> ReconcileResult:
        """
        Run one reconcile pass for a link.

        Args:
            key: Identity of the link

        Returns:
            ReconcileResult telling the dispatcher whether to requeue.
        """
        try:
            link = await self.db.get_link(key)
        except NotFoundError:
            return ReconcileResult(message="not found")
        except StoreError as e:
            logger.error(f"Unable to fetch DeviceLink {key}: {e}")
            return ReconcileResult(requeue=True, message=str(e))

        status = link.status

        # Only the node the link is bound to may hold its connection.
        if status.node_name != self.node_name:
            await self._disconnect(link)
            return ReconcileResult(message="bound to another node")

        if get_status(status, MODEL_EXISTED) != ConditionStatus.TRUE:
            await self._disconnect(link)
            return ReconcileResult(message="model not resolved")

        if link.is_deleted():
            if not link.has_finalizer(FINALIZER):
                return ReconcileResult(message="deleted")
            await self._disconnect(link)
            link.remove_finalizer(FINALIZER)
            return await self._update_link(link, "remove finalizer from")

        if not link.has_finalizer(FINALIZER):
            link.add_finalizer(FINALIZER)
            return await self._update_link(link, "add finalizer to")

        result = await self._reconcile_adaptor(link)
        if result is not None:
            return result

        device, result = await self._reconcile_device(link)
        if result is not None:
            return result

        return await self._reconcile_connection(link, device)

    # Stages. Each returns None to fall through to the next stage.

    async def _reconcile_adaptor(self, link: DeviceLink) -> Optional[ReconcileResult]:
        spec_adaptor = link.spec.adaptor
        status = link.status
        state = get_status(status, ADAPTOR_EXISTED)

        if state == ConditionStatus.FALSE:
            if (
                await self.connections.adaptor_exists(spec_adaptor.name)
                or status.adaptor_name != spec_adaptor.name
                or parameters_changed(spec_adaptor, status.adaptor_parameters)
            ):
                to_check(status, ADAPTOR_EXISTED)
                return await self._update_status(link)
            return ReconcileResult(message="adaptor not found")

        if state == ConditionStatus.TRUE:
            if (
                not await self.connections.adaptor_exists(spec_adaptor.name)
                or status.adaptor_name != spec_adaptor.name
                or parameters_changed(spec_adaptor, status.adaptor_parameters)
            ):
                await self._disconnect(link)
                to_check(status, ADAPTOR_EXISTED)
                return await self._update_status(link)
            return None

        if await self.connections.adaptor_exists(spec_adaptor.name):
            success_on(status, ADAPTOR_EXISTED)
        else:
            fail_on(status, ADAPTOR_EXISTED, "the adaptor is not registered")
        status.adaptor_name = spec_adaptor.name
        status.adaptor_parameters = spec_adaptor.parameters
        return await self._update_status(link)

    async def _reconcile_device(self, link: DeviceLink):
        status = link.status
        state = get_status(status, DEVICE_CREATED)

        if state == ConditionStatus.FALSE:
            return None, ReconcileResult(message="device not created")

        if state == ConditionStatus.TRUE:
            model = status.model
            device: Optional[Dict[str, Any]] = None
            try:
                device = await self.db.get_device(model.api_version, model.kind, link.key)
            except (NotFoundError, NoKindMatchError):
                device = None
            except StoreError as e:
                logger.error(f"Unable to fetch the device of DeviceLink {link.key}: {e}")
                return None, ReconcileResult(requeue=True, message=str(e))

            if not is_active(device):
                to_check(status, DEVICE_CREATED)
                return None, await self._update_status(link)

            try:
                updated = update_device(link, device)
            except TemplateError as e:
                fail_on(status, DEVICE_CREATED, "unable to update device from template")
                await self.recorder.warning(
                    link,
                    REASON_FAILED_CREATED,
                    f"cannot update device from template: {e}",
                )
                return None, await self._update_status(link)

            if updated:
                try:
                    device = await self.db.update_device(device)
                except StoreError as e:
                    logger.error(f"Failed to update device of {link.key}: {e}")
                    return None, ReconcileResult(requeue=True, message=str(e))
            return device, None

        try:
            device = construct_device(link)
        except TemplateError as e:
            fail_on(status, DEVICE_CREATED, "unable to construct device from template")
            await self.recorder.warning(
                link,
                REASON_FAILED_CREATED,
                f"cannot create device from template: {e}",
            )
            return None, await self._update_status(link)

        try:
            await self.db.create_device(device)
        except AlreadyExistsError:
            pass
        except NoKindMatchError:
            fail_on(
                status,
                DEVICE_CREATED,
                "unable to construct device from template",
                reason=REASON_MODEL_NOT_REGISTERED,
            )
            await self.recorder.warning(
                link,
                REASON_FAILED_CREATED,
                "cannot create device from template: the model is not registered",
            )
            return None, await self._update_status(link)
        except StoreError as e:
            logger.error(f"Unable to create the device of DeviceLink {link.key}: {e}")
            return None, ReconcileResult(requeue=True, message=str(e))

        success_on(status, DEVICE_CREATED)
        await self.recorder.normal(link, REASON_CREATED, "device instance is created")
        return None, await self._update_status(link)

    async def _reconcile_connection(
        self, link: DeviceLink, device: Dict[str, Any]
    ) -> ReconcileResult:
        status = link.status
        adaptor_name = status.adaptor_name
        state = get_status(status, DEVICE_CONNECTED)

        if state == ConditionStatus.FALSE:
            # Recovery is pushed by the connection manager, not probed here.
            return ReconcileResult(message="connection unhealthy")

        if state == ConditionStatus.TRUE:
            started = time.monotonic()
            try:
                await self.connections.send(device, link)
            except Exception as e:
                self.metrics.increase_send_errors(adaptor_name)
                fail_on(status, DEVICE_CONNECTED, "cannot send data to adaptor")
                await self.recorder.warning(
                    link, REASON_FAILED_SENT, f"cannot send data to adaptor: {e}"
                )
                return await self._update_status(link)
            finally:
                self.metrics.observe_send_latency(
                    adaptor_name, time.monotonic() - started
                )
            return ReconcileResult(message="sent")

        try:
            overwrote = await self.connections.connect(link)
        except Exception as e:
            self.metrics.increase_connect_errors(adaptor_name)
            fail_on(status, DEVICE_CONNECTED, "unable to connect to adaptor")
            await self.recorder.warning(
                link, REASON_FAILED_CONNECTED, f"cannot connect to adaptor: {e}"
            )
        else:
            if not overwrote:
                self.metrics.increase_connections(adaptor_name)
            success_on(status, DEVICE_CONNECTED)
            await self.recorder.normal(link, REASON_CONNECTED, "connected to adaptor")
        return await self._update_status(link)

    # Writes

    async def _disconnect(self, link: DeviceLink) -> None:
        if await self.connections.disconnect(link):
            self.metrics.decrease_connections(link.status.adaptor_name)

    async def _update_link(self, link: DeviceLink, action: str) -> ReconcileResult:
        try:
            await self.db.update_link(link)
        except NotFoundError:
            return ReconcileResult(message="not found")
        except StoreError as e:
            logger.error(f"Unable to {action} DeviceLink {link.key}: {e}")
            return ReconcileResult(requeue=True, message=str(e))
        return ReconcileResult()

    async def _update_status(self, link: DeviceLink) -> ReconcileResult:
        try:
            await self.db.update_link_status(link)
        except NotFoundError:
            return ReconcileResult(message="not found")
        except ConflictError as e:
            logger.info(f"Status of DeviceLink {link.key} is stale, requeueing: {e}")
            return ReconcileResult(requeue=True, message=str(e))
        except StoreError as e:
            logger.error(f"Unable to change the status of DeviceLink {link.key}: {e}")
            return ReconcileResult(requeue=True, message=str(e))
        return ReconcileResult()

    # Connection manager handlers

    async def on_adaptor_status(self, adaptor_name: str, registered: bool) -> None:
        """
        React to an adaptor being registered or unregistered.

        Links served by the adaptor are reconciled again. On registration,
        links whose connection had failed are re-opened so they connect anew.
        """
        try:
            links = await self.db.list_links(
                node_name=self.node_name, adaptor_name=adaptor_name
            )
        except StoreError as e:
            logger.error(f"Unable to list DeviceLinks of adaptor {adaptor_name}: {e}")
            return

        for link in links:
            if registered and (
                get_status(link.status, DEVICE_CONNECTED) == ConditionStatus.FALSE
            ):
                to_check(link.status, DEVICE_CONNECTED)
                await self._update_status(link)
            if self._enqueue is not None:
                await self._enqueue(link.key)

    async def on_connection_status(
        self, key: NamespacedName, notification: ConnectionNotification
    ) -> None:
        """
        React to a notification pushed by a link's connection.

        A connection closed with an error fails DeviceConnected; status
        data is written to the device.
        """
        try:
            link = await self.db.get_link(key)
        except StoreError as e:
            logger.warning(f"Dropping notification for DeviceLink {key}: {e}")
            return

        if notification.closed:
            if notification.error is None:
                return
            if get_status(link.status, DEVICE_CONNECTED) != ConditionStatus.TRUE:
                return
            fail_on(link.status, DEVICE_CONNECTED, "the connection is closed")
            await self.recorder.warning(
                link,
                REASON_FAILED_CONNECTED,
                f"connection closed: {notification.error}",
            )
            await self._update_status(link)
            return

        if not notification.data:
            return
        model = link.status.model
        try:
            await self.db.update_device_status(
                model.api_version, model.kind, key, notification.data
            )
        except StoreError as e:
            logger.warning(f"Unable to record device status of {key}: {e}")
