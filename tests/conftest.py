"""Pytest configuration and fixtures."""

import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

from conditions import ADAPTOR_EXISTED, DEVICE_CONNECTED, DEVICE_CREATED, MODEL_EXISTED
from models import Condition, ConditionStatus, DeviceLink, ModelReference

NODE = "edge-1"
MODEL_API_VERSION = "devices.edge.cattle.io/v1alpha1"
MODEL_KIND = "DummyDevice"
ADAPTOR = "adaptors.edge.cattle.io/dummy"


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def pool_with(mock_connection):
    """A mock pool whose acquire() yields ``mock_connection``."""
    pool = AsyncMock()

    @asynccontextmanager
    async def acquire():
        yield mock_connection

    pool.acquire = acquire
    return pool


def make_link_dict(
    name="living-room-light",
    namespace="default",
    node=NODE,
    adaptor=ADAPTOR,
    parameters=None,
    template_spec=None,
):
    """Manifest-shaped DeviceLink dict."""
    return {
        "apiVersion": "edge.cattle.io/v1alpha1",
        "kind": "DeviceLink",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "6b1f1a8e-2f6b-4d4f-9e0c-1a2b3c4d5e6f",
            "resourceVersion": 3,
            "generation": 1,
            "finalizers": [],
        },
        "spec": {
            "adaptor": {
                "node": node,
                "name": adaptor,
                "parameters": parameters if parameters is not None else {"ip": "192.168.1.20"},
            },
            "model": {"apiVersion": MODEL_API_VERSION, "kind": MODEL_KIND},
            "template": {
                "metadata": {"labels": {"room": "living"}},
                "spec": template_spec if template_spec is not None else {"on": True},
            },
        },
    }


def make_link(**kwargs) -> DeviceLink:
    return DeviceLink.from_dict(make_link_dict(**kwargs))


def set_conditions(link: DeviceLink, **statuses) -> DeviceLink:
    """Set conditions by type name, e.g. ``ModelExisted="True"``."""
    link.status.conditions = [
        Condition(type=name, status=ConditionStatus(value))
        for name, value in statuses.items()
    ]
    return link


def bound_link(**kwargs) -> DeviceLink:
    """A link bound to NODE with a resolved model."""
    link = make_link(**kwargs)
    link.status.node_name = link.spec.adaptor.node
    link.status.model = ModelReference(link.spec.model.api_version, link.spec.model.kind)
    return link


def connected_link(**kwargs) -> DeviceLink:
    """A link that has gone all the way through to DeviceConnected=True."""
    link = bound_link(**kwargs)
    link.add_finalizer("edge.cattle.io/octopus-limb")
    link.status.adaptor_name = link.spec.adaptor.name
    link.status.adaptor_parameters = link.spec.adaptor.parameters
    return set_conditions(
        link,
        **{
            MODEL_EXISTED: "True",
            ADAPTOR_EXISTED: "True",
            DEVICE_CREATED: "True",
            DEVICE_CONNECTED: "True",
        },
    )


@pytest.fixture
def sample_link():
    return make_link()


@pytest.fixture
def sample_device_model():
    """Sample device model row."""
    return {
        "id": 1,
        "api_version": MODEL_API_VERSION,
        "kind": MODEL_KIND,
        "description": "Dummy device for testing",
        "schema": {
            "type": "object",
            "properties": {"on": {"type": "boolean"}},
        },
    }
