"""Unit tests for predicate.py - Watch filter."""

from datetime import datetime, timezone

import pytest

from events import EventType, WatchEvent
from models import ConditionStatus, ModelReference, NamespacedName
from predicate import DeviceLinkChangedPredicate, changed

from conftest import connected_link, make_link

KEY = NamespacedName("default", "living-room-light")


@pytest.fixture
def predicate():
    return DeviceLinkChangedPredicate("edge-1")


class TestChanged:
    """Tests for the snapshot comparison."""

    def test_identical(self):
        assert changed(connected_link(), connected_link()) is False

    def test_resource_version_alone_is_ignored(self):
        old, new = connected_link(), connected_link()
        new.metadata.resource_version += 1
        assert changed(old, new) is False

    def test_labels_alone_are_ignored(self):
        old, new = connected_link(), connected_link()
        new.metadata.labels["team"] = "ops"
        assert changed(old, new) is False

    def test_generation(self):
        old, new = connected_link(), connected_link()
        new.metadata.generation += 1
        assert changed(old, new) is True

    def test_finalizers(self):
        old, new = connected_link(), connected_link()
        new.metadata.finalizers = []
        assert changed(old, new) is True

    def test_deletion(self):
        old, new = connected_link(), connected_link()
        new.metadata.deletion_timestamp = datetime.now(timezone.utc)
        assert changed(old, new) is True

    def test_status_node(self):
        old, new = connected_link(), connected_link()
        new.status.node_name = "edge-2"
        assert changed(old, new) is True

    def test_status_adaptor(self):
        old, new = connected_link(), connected_link()
        new.status.adaptor_name = "adaptors.edge.cattle.io/http"
        assert changed(old, new) is True

    def test_status_parameters(self):
        old, new = connected_link(), connected_link()
        new.status.adaptor_parameters = b'{"ip":"10.0.0.1"}'
        assert changed(old, new) is True

    def test_status_model(self):
        old, new = connected_link(), connected_link()
        new.status.model = ModelReference("v2", "Other")
        assert changed(old, new) is True

    def test_condition_status(self):
        old, new = connected_link(), connected_link()
        new.status.conditions[3].status = ConditionStatus.FALSE
        assert changed(old, new) is True

    def test_condition_message_alone_is_ignored(self):
        old, new = connected_link(), connected_link()
        new.status.conditions[3].message = "different"
        assert changed(old, new) is False


class TestDeviceLinkChangedPredicate:
    """Tests for the per-node event filter."""

    def test_create_on_node(self, predicate):
        assert predicate.create(make_link()) is True

    def test_create_other_node(self, predicate):
        assert predicate.create(make_link(node="edge-9")) is False

    def test_create_bound_here(self, predicate):
        link = make_link(node="edge-9")
        link.status.node_name = "edge-1"
        assert predicate.create(link) is True

    def test_delete_always(self, predicate):
        assert predicate.delete(make_link(node="edge-9")) is True
        assert predicate.delete(None) is True

    def test_update_missing_snapshot(self, predicate):
        assert predicate.update(None, make_link()) is True

    def test_update_other_node(self, predicate):
        old, new = make_link(node="edge-9"), make_link(node="edge-9")
        new.metadata.generation += 1
        assert predicate.update(old, new) is False

    def test_update_moved_away(self, predicate):
        old = connected_link()
        new = connected_link(node="edge-9")
        new.status.node_name = "edge-9"
        assert predicate.update(old, new) is True

    def test_update_unchanged(self, predicate):
        assert predicate.update(connected_link(), connected_link()) is False

    def test_generic(self, predicate):
        assert predicate.generic(make_link()) is True

    def test_call_dispatches_by_event_type(self, predicate):
        here, there = make_link(), make_link(node="edge-9")

        assert predicate(WatchEvent.create(EventType.ADDED, KEY, new=here)) is True
        assert predicate(WatchEvent.create(EventType.ADDED, KEY, new=there)) is False
        assert predicate(WatchEvent.create(EventType.DELETED, KEY, old=there)) is True
        assert (
            predicate(WatchEvent.create(EventType.MODIFIED, KEY, old=here, new=here))
            is False
        )
        assert predicate(WatchEvent.create(EventType.GENERIC, KEY, new=there)) is True
