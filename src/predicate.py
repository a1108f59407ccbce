"""
Watch filter for the DeviceLink limb.

Decides from before/after snapshots whether a change is worth a reconcile
pass on this node. The checks are pure functions over the snapshots.
"""

from typing import Optional

from events import EventType, WatchEvent
from models import DeviceLink


def _on_node(link: Optional[DeviceLink], node_name: str) -> bool:
    if link is None:
        return False
    return link.status.node_name == node_name or link.spec.adaptor.node == node_name


def _condition_statuses(link: DeviceLink):
    return {c.type: c.status for c in link.status.conditions}


def changed(old: DeviceLink, new: DeviceLink) -> bool:
    """Whether any field the reconciler reads differs between snapshots."""
    if old.metadata.generation != new.metadata.generation:
        return True
    if old.metadata.finalizers != new.metadata.finalizers:
        return True
    if old.is_deleted() != new.is_deleted():
        return True

    old_status, new_status = old.status, new.status
    if old_status.node_name != new_status.node_name:
        return True
    if old_status.adaptor_name != new_status.adaptor_name:
        return True
    if old_status.adaptor_parameters != new_status.adaptor_parameters:
        return True
    if old_status.model != new_status.model:
        return True
    return _condition_statuses(old) != _condition_statuses(new)


class DeviceLinkChangedPredicate:
    """Filters watch events down to the ones relevant to one node."""

    def __init__(self, node_name: str):
        self.node_name = node_name

    def create(self, link: DeviceLink) -> bool:
        return _on_node(link, self.node_name)

    def delete(self, link: Optional[DeviceLink]) -> bool:
        # The connection for a deleted link may still be held here.
        return True

    def update(self, old: Optional[DeviceLink], new: Optional[DeviceLink]) -> bool:
        if old is None or new is None:
            return True
        if not (_on_node(old, self.node_name) or _on_node(new, self.node_name)):
            return False
        return changed(old, new)

    def generic(self, link: Optional[DeviceLink]) -> bool:
        return True

    def __call__(self, event: WatchEvent) -> bool:
        if event.event_type == EventType.ADDED:
            return event.new is not None and self.create(event.new)
        if event.event_type == EventType.DELETED:
            return self.delete(event.old)
        if event.event_type == EventType.MODIFIED:
            return self.update(event.old, event.new)
        return self.generic(event.object)
