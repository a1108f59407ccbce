"""Unit tests for the HTTP input plugin REST API."""

import asyncio
import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from db import AlreadyExistsError, ConflictError, NoKindMatchError, NotFoundError, StoreError
from models import NamespacedName
from plugins.inputs.http import HTTPInputPlugin
from plugins.inputs.http.api import DeviceLinkManifest, validate_name_format
from plugins.registry import reset_registry

from conftest import MODEL_API_VERSION, MODEL_KIND, bound_link, make_link, make_link_dict

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)
LINKS = "/api/v1/namespaces/default/devicelinks"


def model_row(schema=None):
    return {
        "id": 1,
        "api_version": MODEL_API_VERSION,
        "kind": MODEL_KIND,
        "schema": schema or {},
        "description": "Dummy device",
        "created_at": NOW,
        "updated_at": NOW,
    }


def manifest(**kwargs):
    data = make_link_dict(**kwargs)
    data["metadata"] = {"name": data["metadata"]["name"], "labels": {"team": "home"}}
    return data


@pytest.fixture
def mock_db():
    db = AsyncMock()
    db.get_device_model = AsyncMock(return_value=None)
    return db


@pytest.fixture
def plugin(mock_db):
    plugin = HTTPInputPlugin()
    asyncio.run(plugin.initialize({"host": "127.0.0.1", "port": 8080}))
    plugin.set_db_manager(mock_db)
    plugin._request_reconcile = AsyncMock()
    plugin._setup_routes()
    return plugin


@pytest.fixture
def client(plugin):
    return TestClient(plugin.app)


class TestManifest:
    """Tests for manifest validation."""

    def test_valid_manifest(self):
        link = DeviceLinkManifest(**manifest()).to_link("kitchen")
        assert link.key == NamespacedName("kitchen", "living-room-light")
        assert link.spec.adaptor.parameters == b'{"ip":"192.168.1.20"}'

    def test_wrong_kind(self):
        with pytest.raises(ValueError, match="kind must be DeviceLink"):
            DeviceLinkManifest(**{**manifest(), "kind": "Device"})

    def test_missing_adaptor_name(self):
        data = manifest()
        data["spec"]["adaptor"]["name"] = ""
        with pytest.raises(ValueError, match="spec.adaptor.name is required"):
            DeviceLinkManifest(**data)

    def test_missing_model(self):
        data = manifest()
        del data["spec"]["model"]
        with pytest.raises(ValueError, match="spec.model"):
            DeviceLinkManifest(**data)

    def test_name_format(self):
        assert validate_name_format("porch-light", "name") == "porch-light"
        with pytest.raises(ValueError, match="cannot be empty"):
            validate_name_format("", "name")
        with pytest.raises(ValueError, match="lowercase"):
            validate_name_format("Porch_Light", "name")
        with pytest.raises(ValueError, match="63"):
            validate_name_format("a" * 64, "name")


class TestPluginConfig:
    def test_load_config_from_env(self):
        env_vars = {
            "API_HOST": "127.0.0.1",
            "API_PORT": "9000",
            "LOG_LEVEL": "DEBUG",
            "CORS_ENABLED": "true",
            "CORS_ORIGINS": "http://ui.local",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            config = HTTPInputPlugin.load_config_from_env()
        assert config["host"] == "127.0.0.1"
        assert config["port"] == 9000
        assert config["log_level"] == "debug"
        assert config["cors_enabled"] is True
        assert config["cors_origins"] == ["http://ui.local"]

    def test_cors(self, mock_db):
        plugin = HTTPInputPlugin()
        asyncio.run(
            plugin.initialize({"cors_enabled": True, "cors_origins": ["http://ui.local"]})
        )
        plugin.set_db_manager(mock_db)
        plugin._setup_routes()

        response = TestClient(plugin.app).get("/", headers={"Origin": "http://ui.local"})

        assert response.headers["access-control-allow-origin"] == "http://ui.local"

    def test_routes_need_app(self):
        with pytest.raises(RuntimeError, match="App not initialized"):
            HTTPInputPlugin()._setup_routes()

    def test_health_check_not_running(self, plugin):
        assert asyncio.run(plugin.health_check()) == (False, "HTTP API is not running")


class TestModelEndpoints:
    def test_health(self, client):
        assert client.get("/").json() == {"status": "ok", "service": "devicelink-limb"}

    def test_register(self, client, mock_db):
        mock_db.create_device_model.return_value = model_row({"type": "object"})

        response = client.post(
            "/api/v1/models",
            json={"apiVersion": MODEL_API_VERSION, "kind": MODEL_KIND, "schema": {"type": "object"}},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["apiVersion"] == MODEL_API_VERSION
        assert body["schema"] == {"type": "object"}
        assert mock_db.create_device_model.call_args.kwargs["schema"] == {"type": "object"}

    def test_register_invalid_schema(self, client, mock_db):
        response = client.post(
            "/api/v1/models",
            json={"apiVersion": MODEL_API_VERSION, "kind": MODEL_KIND, "schema": {"type": "bulb"}},
        )
        assert response.status_code == 422
        mock_db.create_device_model.assert_not_called()

    def test_register_duplicate(self, client, mock_db):
        mock_db.create_device_model.side_effect = AlreadyExistsError("exists")
        response = client.post(
            "/api/v1/models", json={"apiVersion": MODEL_API_VERSION, "kind": MODEL_KIND}
        )
        assert response.status_code == 409

    def test_list(self, client, mock_db):
        mock_db.list_device_models.return_value = [model_row()]
        response = client.get("/api/v1/models")
        assert response.status_code == 200
        assert response.json()[0]["kind"] == MODEL_KIND

    def test_delete(self, client, mock_db):
        mock_db.delete_device_model.return_value = True

        response = client.delete(f"/api/v1/models/{MODEL_API_VERSION}/{MODEL_KIND}")

        assert response.status_code == 204
        mock_db.delete_device_model.assert_awaited_once_with(MODEL_API_VERSION, MODEL_KIND)

    def test_delete_missing(self, client, mock_db):
        mock_db.delete_device_model.return_value = False
        response = client.delete(f"/api/v1/models/{MODEL_API_VERSION}/{MODEL_KIND}")
        assert response.status_code == 404

    def test_without_database(self, plugin, client):
        plugin.set_db_manager(None)
        assert client.get("/api/v1/models").status_code == 503


class TestDeviceLinkEndpoints:
    def test_create(self, client, mock_db):
        mock_db.create_link.side_effect = lambda link: link

        response = client.post(LINKS, json=manifest())

        assert response.status_code == 201
        created = mock_db.create_link.call_args[0][0]
        assert created.key == NamespacedName("default", "living-room-light")
        assert created.metadata.labels == {"team": "home"}
        assert response.json()["spec"]["adaptor"]["parameters"] == {"ip": "192.168.1.20"}

    def test_create_invalid_name(self, client, mock_db):
        response = client.post(LINKS, json=manifest(name="Living_Room"))
        assert response.status_code == 422
        mock_db.create_link.assert_not_called()

    def test_create_checks_template_against_schema(self, client, mock_db):
        mock_db.get_device_model.return_value = model_row(
            {"type": "object", "properties": {"on": {"type": "boolean"}}}
        )

        response = client.post(LINKS, json=manifest(template_spec={"on": "yes"}))

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Template validation failed: on:")
        mock_db.create_link.assert_not_called()

    def test_create_duplicate(self, client, mock_db):
        mock_db.create_link.side_effect = AlreadyExistsError("exists")
        assert client.post(LINKS, json=manifest()).status_code == 409

    def test_list(self, client, mock_db):
        mock_db.list_links.return_value = [make_link(name="a"), make_link(name="b")]

        response = client.get(LINKS, params={"node": "edge-1", "adaptor": "x"})

        assert [i["metadata"]["name"] for i in response.json()["items"]] == ["a", "b"]
        mock_db.list_links.assert_awaited_once_with(
            namespace="default", node_name="edge-1", adaptor_name="x", limit=500
        )

    def test_get(self, client, mock_db):
        mock_db.get_link.return_value = bound_link()
        response = client.get(f"{LINKS}/living-room-light")
        assert response.status_code == 200
        assert response.json()["status"]["nodeName"] == "edge-1"

    def test_get_missing(self, client, mock_db):
        mock_db.get_link.side_effect = NotFoundError("gone")
        assert client.get(f"{LINKS}/living-room-light").status_code == 404

    def test_update_keeps_finalizers(self, client, mock_db):
        current = make_link()
        current.metadata.finalizers = ["edge.cattle.io/octopus-limb"]
        mock_db.get_link.return_value = current
        mock_db.update_link.side_effect = lambda link: link
        data = manifest(adaptor="adaptors.edge.cattle.io/http")

        response = client.put(f"{LINKS}/living-room-light", json=data)

        assert response.status_code == 200
        updated = mock_db.update_link.call_args[0][0]
        assert updated.spec.adaptor.name == "adaptors.edge.cattle.io/http"
        assert updated.metadata.finalizers == ["edge.cattle.io/octopus-limb"]
        assert updated.metadata.resource_version == current.metadata.resource_version
        assert updated.metadata.uid == current.metadata.uid

    def test_update_with_resource_version(self, client, mock_db):
        mock_db.get_link.return_value = make_link()
        mock_db.update_link.side_effect = ConflictError("stale")
        data = manifest()
        data["metadata"]["resourceVersion"] = 1

        response = client.put(f"{LINKS}/living-room-light", json=data)

        assert response.status_code == 409
        assert mock_db.update_link.call_args[0][0].metadata.resource_version == 1

    def test_update_name_mismatch(self, client):
        response = client.put(f"{LINKS}/porch-light", json=manifest())
        assert response.status_code == 400

    def test_update_releasing_last_finalizer(self, client, mock_db):
        mock_db.get_link.return_value = make_link()
        mock_db.update_link.return_value = None
        data = manifest()
        data["metadata"]["finalizers"] = []

        response = client.put(f"{LINKS}/living-room-light", json=data)

        assert response.json()["message"] == "DeviceLink removed"

    def test_update_missing(self, client, mock_db):
        mock_db.get_link.side_effect = NotFoundError("gone")
        assert client.put(f"{LINKS}/living-room-light", json=manifest()).status_code == 404

    def test_delete(self, client, mock_db):
        mock_db.delete_link.return_value = None
        response = client.delete(f"{LINKS}/living-room-light")
        assert response.status_code == 202
        assert response.json()["message"] == "DeviceLink deleted"

    def test_delete_with_finalizer(self, client, mock_db):
        marked = make_link()
        marked.metadata.finalizers = ["edge.cattle.io/octopus-limb"]
        mock_db.delete_link.return_value = marked

        response = client.delete(f"{LINKS}/living-room-light")

        assert response.json() == {
            "message": "DeviceLink marked for deletion",
            "name": "living-room-light",
            "finalizers": ["edge.cattle.io/octopus-limb"],
        }

    def test_delete_missing(self, client, mock_db):
        mock_db.delete_link.side_effect = NotFoundError("gone")
        assert client.delete(f"{LINKS}/living-room-light").status_code == 404

    def test_events(self, client, mock_db):
        mock_db.list_link_events.return_value = [{"reason": "Created"}]
        response = client.get(f"{LINKS}/living-room-light/events")
        assert response.json() == {"items": [{"reason": "Created"}]}

    def test_reconcile(self, plugin, client, mock_db):
        mock_db.get_link.return_value = make_link()

        response = client.post(f"{LINKS}/living-room-light/reconcile")

        assert response.status_code == 202
        plugin._request_reconcile.assert_awaited_once_with(
            NamespacedName("default", "living-room-light")
        )

    def test_reconcile_missing(self, plugin, client, mock_db):
        mock_db.get_link.side_effect = NotFoundError("gone")
        assert client.post(f"{LINKS}/living-room-light/reconcile").status_code == 404
        plugin._request_reconcile.assert_not_called()


class TestDeviceEndpoints:
    def test_list(self, client, mock_db):
        mock_db.list_devices.return_value = [{"kind": MODEL_KIND}]
        response = client.get("/api/v1/namespaces/default/devices")
        assert response.json() == {"items": [{"kind": MODEL_KIND}]}

    def test_get(self, client, mock_db):
        mock_db.get_link.return_value = bound_link()
        mock_db.get_device.return_value = {"kind": MODEL_KIND, "spec": {"on": True}}

        response = client.get("/api/v1/namespaces/default/devices/living-room-light")

        assert response.json()["spec"] == {"on": True}
        mock_db.get_device.assert_awaited_once_with(
            MODEL_API_VERSION, MODEL_KIND, NamespacedName("default", "living-room-light")
        )

    def test_get_unresolved_model(self, client, mock_db):
        mock_db.get_link.return_value = make_link()
        response = client.get("/api/v1/namespaces/default/devices/living-room-light")
        assert response.status_code == 404

    def test_get_unregistered_model(self, client, mock_db):
        mock_db.get_link.return_value = bound_link()
        mock_db.get_device.side_effect = NoKindMatchError("no matches")
        response = client.get("/api/v1/namespaces/default/devices/living-room-light")
        assert response.status_code == 404

    def test_list_error(self, client, mock_db):
        mock_db.list_devices.side_effect = StoreError("db down")
        assert client.get("/api/v1/namespaces/default/devices").status_code == 500


class TestDiscoveryAndWatch:
    @pytest.fixture(autouse=True)
    def clean_registry(self):
        reset_registry()
        yield
        reset_registry()

    def test_adaptor_plugins(self, client):
        from plugins.adaptors.dummy import DummyAdaptor
        from plugins.registry import get_registry

        get_registry().register_adaptor_plugin(DummyAdaptor)

        response = client.get("/api/v1/plugins/adaptors")

        assert response.json() == [
            {"name": "adaptors.edge.cattle.io/dummy", "version": "1.0.0"}
        ]

    def test_input_plugins(self, client):
        from plugins.registry import get_registry

        get_registry().register_input_plugin(HTTPInputPlugin)

        assert client.get("/api/v1/plugins/inputs").json()[0]["name"] == "http"

    def test_watch_without_event_bus(self, client):
        assert client.get("/api/v1/watch/devicelinks").status_code == 503
