"""
DeviceLink Resolver - binds links to nodes and resolves their models.

The reconciler only acts on links whose ``status.nodeName`` names its node
and whose ModelExisted condition is True. The resolver produces both: it
copies the declared node into status and checks the declared model
against the device model registry. Like the reconciler, it writes at most
once per pass.
"""

import logging
from typing import Any, Optional

from conditions import MODEL_EXISTED, fail_on, get_status, success_on, to_check
from db import NotFoundError, StoreError
from devicelink import ReconcileResult
from models import ConditionStatus, ModelReference, NamespacedName

logger = logging.getLogger(__name__)


class DeviceLinkResolver:
    """Resolves node binding and model of links declared for one node."""

    def __init__(self, db: Any, node_name: str):
        self.db = db
        self.node_name = node_name

    async def resolve(self, key: NamespacedName) -> Optional[ReconcileResult]:
        """
        Advance the link's binding by one step.

        Returns:
            None if nothing needed resolving, otherwise the result of the
            write (or failed read) this pass made.
        """
        try:
            link = await self.db.get_link(key)
        except NotFoundError:
            return ReconcileResult(message="not found")
        except StoreError as e:
            logger.error(f"Unable to fetch DeviceLink {key}: {e}")
            return ReconcileResult(requeue=True, message=str(e))

        if link.is_deleted() or link.spec.adaptor.node != self.node_name:
            return None

        status = link.status
        declared = link.spec.model

        if status.node_name != link.spec.adaptor.node:
            logger.info(f"Binding DeviceLink {key} to node {link.spec.adaptor.node}")
            status.node_name = link.spec.adaptor.node
            to_check(status, MODEL_EXISTED)
        elif status.model != declared:
            status.model = ModelReference(declared.api_version, declared.kind)
            to_check(status, MODEL_EXISTED)
        else:
            state = get_status(status, MODEL_EXISTED)
            if state == ConditionStatus.TRUE:
                return None

            try:
                model = await self.db.get_device_model(
                    declared.api_version, declared.kind
                )
            except StoreError as e:
                logger.error(f"Unable to look up model of DeviceLink {key}: {e}")
                return ReconcileResult(requeue=True, message=str(e))

            if state == ConditionStatus.FALSE:
                if model is None:
                    return None
                to_check(status, MODEL_EXISTED)
            elif model is not None:
                success_on(status, MODEL_EXISTED)
            else:
                fail_on(
                    status,
                    MODEL_EXISTED,
                    f"the model {declared.api_version}/{declared.kind} is not registered",
                )

        try:
            await self.db.update_link_status(link)
        except NotFoundError:
            return ReconcileResult(message="not found")
        except StoreError as e:
            logger.info(f"Unable to resolve DeviceLink {key}, requeueing: {e}")
            return ReconcileResult(requeue=True, message=str(e))
        return ReconcileResult(message="resolved")
