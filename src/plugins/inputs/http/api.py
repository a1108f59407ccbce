"""
HTTP Input Plugin - REST API for DeviceLinks and device models.

This plugin provides a FastAPI-based REST API for declaring DeviceLinks,
registering device models, inspecting devices, and watching link changes.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import APIConfig
from db import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from events import EventBus, WatchEvent
from models import DEVICE_LINK_API_VERSION, DEVICE_LINK_KIND, DeviceLink, NamespacedName
from plugins.inputs.base import InputPlugin, ReconcileCallback
from validation import validate_link_template, validate_model_schema

logger = logging.getLogger(__name__)

# Validation constants
# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for a link spec


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(value: Dict[str, Any], field_name: str) -> Dict[str, Any]:
    """Validate that JSON data doesn't exceed size limits."""
    if len(json.dumps(value)) > MAX_SPEC_SIZE:
        raise ValueError(f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB")
    return value


# Device model models


class DeviceModelCreate(BaseModel):
    """Request model for registering a device model."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(
        ...,
        alias="apiVersion",
        description="Model group/version",
        examples=["devices.edge.cattle.io/v1alpha1"],
    )
    kind: str = Field(..., description="Model kind", examples=["DummyDevice"])
    device_schema: Optional[Dict[str, Any]] = Field(
        None, alias="schema", description="JSON Schema for device specs"
    )
    description: Optional[str] = Field(None, description="Description of the model")

    @field_validator("device_schema")
    @classmethod
    def validate_schema(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if v:
            is_valid, error = validate_model_schema(v)
            if not is_valid:
                raise ValueError(error)
        return v


class DeviceModelResponse(BaseModel):
    """Response model for a device model."""

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: int
    api_version: str = Field(..., serialization_alias="apiVersion")
    kind: str
    device_schema: Dict[str, Any] = Field(
        default_factory=dict, validation_alias="schema", serialization_alias="schema"
    )
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# DeviceLink models


class DeviceLinkManifest(BaseModel):
    """A DeviceLink as submitted by a declarer."""

    apiVersion: str = DEVICE_LINK_API_VERSION
    kind: str = DEVICE_LINK_KIND
    metadata: Dict[str, Any]
    spec: Dict[str, Any]

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != DEVICE_LINK_KIND:
            raise ValueError(f"kind must be {DEVICE_LINK_KIND}")
        return v

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        validate_name_format(v.get("name", ""), "metadata.name")
        return v

    @field_validator("spec")
    @classmethod
    def validate_spec(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        adaptor = v.get("adaptor") or {}
        if not adaptor.get("name"):
            raise ValueError("spec.adaptor.name is required")
        model = v.get("model") or {}
        if not model.get("apiVersion") or not model.get("kind"):
            raise ValueError("spec.model.apiVersion and spec.model.kind are required")
        return validate_json_size(v, "spec")

    def to_link(self, namespace: str) -> DeviceLink:
        metadata = dict(self.metadata)
        metadata["namespace"] = namespace
        return DeviceLink.from_dict({"metadata": metadata, "spec": self.spec})


class PluginInfo(BaseModel):
    """Information about a registered plugin."""

    name: str
    version: str


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for DeviceLinks.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.server = None
        self._request_reconcile: Optional[ReconcileCallback] = None
        self._db_manager = None
        self._event_bus: Optional[EventBus] = None
        self._config: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        api = APIConfig.from_env()
        return {
            "host": api.host,
            "port": api.port,
            "log_level": api.log_level.lower(),
            "cors_enabled": api.cors_enabled,
            "cors_origins": api.cors_origins,
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the HTTP API plugin."""
        self._config = config
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)

        self.app = FastAPI(
            title="DeviceLink Limb API",
            description="Declare DeviceLinks and register device models",
            version="1.0.0",
        )

        if config.get("cors_enabled"):
            self.app.add_middleware(
                CORSMiddleware,
                allow_origins=config.get("cors_origins", ["*"]),
                allow_methods=["*"],
                allow_headers=["*"],
            )

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_db_manager(self, db_manager) -> None:
        """Set the database manager instance."""
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the event bus instance for streaming watch events."""
        self._event_bus = event_bus

    def _require_db(self):
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    async def _check_template(self, link: DeviceLink) -> None:
        """Refuse links whose template violates their model's schema."""
        model = await self._db_manager.get_device_model(
            link.spec.model.api_version, link.spec.model.kind
        )
        if not model:
            return
        is_valid, error = validate_link_template(link, model.get("schema"))
        if not is_valid:
            raise HTTPException(
                status_code=400, detail=f"Template validation failed: {error}"
            )

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        Configures the following endpoint groups:
        - Health check: GET /
        - Device models: /api/v1/models
        - DeviceLinks: /api/v1/namespaces/{namespace}/devicelinks
        - Devices: /api/v1/namespaces/{namespace}/devices
        - Watch: GET /api/v1/watch/devicelinks
        - Plugin discovery: /api/v1/plugins/{adaptors,inputs}

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "devicelink-limb"}

        # ==================== Device Model Endpoints ====================

        @self.app.post(
            "/api/v1/models",
            response_model=DeviceModelResponse,
            response_model_by_alias=True,
            status_code=201,
        )
        async def create_device_model(model: DeviceModelCreate):
            """Register a device model."""
            db = self._require_db()
            try:
                created = await db.create_device_model(
                    api_version=model.api_version,
                    kind=model.kind,
                    schema=model.device_schema,
                    description=model.description,
                )
                return DeviceModelResponse.model_validate(created)
            except AlreadyExistsError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error registering device model: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/models",
            response_model=List[DeviceModelResponse],
            response_model_by_alias=True,
        )
        async def list_device_models(limit: int = 100):
            """List registered device models."""
            db = self._require_db()
            try:
                models = await db.list_device_models(limit=limit)
                return [DeviceModelResponse.model_validate(m) for m in models]
            except Exception as e:
                logger.error(f"Error listing device models: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/models/{api_version:path}/{kind}", status_code=204)
        async def delete_device_model(api_version: str, kind: str):
            """Unregister a device model."""
            db = self._require_db()
            try:
                deleted = await db.delete_device_model(api_version, kind)
            except Exception as e:
                logger.error(f"Error deleting device model: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            if not deleted:
                raise HTTPException(status_code=404, detail="Device model not found")

        # ==================== DeviceLink Endpoints ====================

        @self.app.post("/api/v1/namespaces/{namespace}/devicelinks", status_code=201)
        async def create_devicelink(namespace: str, manifest: DeviceLinkManifest):
            """Create a DeviceLink."""
            db = self._require_db()
            try:
                link = manifest.to_link(namespace)
                await self._check_template(link)
                created = await db.create_link(link)
                return created.to_dict()
            except HTTPException:
                raise
            except AlreadyExistsError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error creating DeviceLink: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/namespaces/{namespace}/devicelinks")
        async def list_devicelinks(
            namespace: str,
            node: Optional[str] = None,
            adaptor: Optional[str] = None,
            limit: int = 500,
        ):
            """List DeviceLinks in a namespace."""
            db = self._require_db()
            try:
                links = await db.list_links(
                    namespace=namespace,
                    node_name=node,
                    adaptor_name=adaptor,
                    limit=limit,
                )
                return {"items": [link.to_dict() for link in links]}
            except Exception as e:
                logger.error(f"Error listing DeviceLinks: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/namespaces/{namespace}/devicelinks/{name}")
        async def get_devicelink(namespace: str, name: str):
            """Get a DeviceLink."""
            db = self._require_db()
            try:
                link = await db.get_link(NamespacedName(namespace, name))
                return link.to_dict()
            except NotFoundError:
                raise HTTPException(status_code=404, detail="DeviceLink not found")
            except Exception as e:
                logger.error(f"Error getting DeviceLink: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put("/api/v1/namespaces/{namespace}/devicelinks/{name}")
        async def update_devicelink(
            namespace: str, name: str, manifest: DeviceLinkManifest
        ):
            """
            Replace a DeviceLink's metadata and spec.

            A ``metadata.resourceVersion`` in the manifest makes the update
            conditional on it; finalizers are kept unless the manifest
            lists them.
            """
            db = self._require_db()
            if manifest.metadata.get("name") != name:
                raise HTTPException(
                    status_code=400, detail="metadata.name does not match the path"
                )
            key = NamespacedName(namespace, name)
            try:
                current = await db.get_link(key)
                desired = manifest.to_link(namespace)
                await self._check_template(desired)

                updated = current.deep_copy()
                updated.metadata.labels = desired.metadata.labels
                updated.metadata.annotations = desired.metadata.annotations
                if "finalizers" in manifest.metadata:
                    updated.metadata.finalizers = desired.metadata.finalizers
                if manifest.metadata.get("resourceVersion"):
                    updated.metadata.resource_version = desired.metadata.resource_version
                updated.spec = desired.spec

                result = await db.update_link(updated)
                if result is None:
                    return {"message": "DeviceLink removed", "name": name}
                return result.to_dict()
            except HTTPException:
                raise
            except NotFoundError:
                raise HTTPException(status_code=404, detail="DeviceLink not found")
            except ConflictError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error updating DeviceLink: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete(
            "/api/v1/namespaces/{namespace}/devicelinks/{name}", status_code=202
        )
        async def delete_devicelink(namespace: str, name: str):
            """Delete a DeviceLink (disconnects it before it goes away)."""
            db = self._require_db()
            try:
                marked = await db.delete_link(NamespacedName(namespace, name))
            except NotFoundError:
                raise HTTPException(status_code=404, detail="DeviceLink not found")
            except Exception as e:
                logger.error(f"Error deleting DeviceLink: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if marked is None:
                return {"message": "DeviceLink deleted", "name": name}
            return {
                "message": "DeviceLink marked for deletion",
                "name": name,
                "finalizers": marked.metadata.finalizers,
            }

        @self.app.get("/api/v1/namespaces/{namespace}/devicelinks/{name}/events")
        async def list_devicelink_events(namespace: str, name: str, limit: int = 50):
            """Get recorded events of a DeviceLink, newest first."""
            db = self._require_db()
            try:
                events = await db.list_link_events(
                    NamespacedName(namespace, name), limit=limit
                )
                return {"items": events}
            except Exception as e:
                logger.error(f"Error listing DeviceLink events: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.post(
            "/api/v1/namespaces/{namespace}/devicelinks/{name}/reconcile",
            status_code=202,
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Manually trigger a reconcile pass for a DeviceLink."""
            db = self._require_db()
            key = NamespacedName(namespace, name)
            try:
                await db.get_link(key)
            except NotFoundError:
                raise HTTPException(status_code=404, detail="DeviceLink not found")
            except StoreError as e:
                raise HTTPException(status_code=500, detail=str(e))

            if self._request_reconcile:
                await self._request_reconcile(key)
            return {"message": "Reconciliation triggered", "name": str(key)}

        # ==================== Device Endpoints ====================

        @self.app.get("/api/v1/namespaces/{namespace}/devices")
        async def list_devices(namespace: str, limit: int = 100):
            """List devices in a namespace."""
            db = self._require_db()
            try:
                return {"items": await db.list_devices(namespace=namespace, limit=limit)}
            except Exception as e:
                logger.error(f"Error listing devices: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/namespaces/{namespace}/devices/{name}")
        async def get_device(namespace: str, name: str):
            """Get the device rendered from the DeviceLink of the same name."""
            db = self._require_db()
            key = NamespacedName(namespace, name)
            try:
                link = await db.get_link(key)
                model = link.status.model
                if model.is_empty():
                    raise NotFoundError(f"DeviceLink {key} has no resolved model")
                return await db.get_device(model.api_version, model.kind, key)
            except NotFoundError:
                raise HTTPException(status_code=404, detail="Device not found")
            except StoreError as e:
                raise HTTPException(status_code=404, detail=str(e))
            except Exception as e:
                logger.error(f"Error getting device: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Plugin Discovery Endpoints ====================

        @self.app.get("/api/v1/plugins/adaptors", response_model=List[PluginInfo])
        async def list_adaptor_plugins():
            """List registered adaptor plugins."""
            from plugins.registry import get_registry

            registry = get_registry()
            return [
                PluginInfo(**registry.get_adaptor_plugin_info(name))
                for name in registry.list_adaptor_plugins()
            ]

        @self.app.get("/api/v1/plugins/inputs", response_model=List[PluginInfo])
        async def list_input_plugins():
            """List registered input plugins."""
            from plugins.registry import get_registry

            registry = get_registry()
            return [
                PluginInfo(**registry.get_input_plugin_info(name))
                for name in registry.list_input_plugins()
            ]

        # ==================== Watch Endpoint ====================

        @self.app.get("/api/v1/watch/devicelinks")
        async def watch_devicelinks(namespace: Optional[str] = None):
            """SSE stream of DeviceLink changes, optionally within a namespace."""
            if not self._event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if namespace:

                def filter_fn(event: WatchEvent) -> bool:
                    return event.key.namespace == namespace

            else:
                filter_fn = None

            subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self._event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self, request_reconcile: ReconcileCallback) -> None:
        """Start the HTTP server."""
        self._request_reconcile = request_reconcile
        self._setup_routes()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self._config.get("log_level", "info"),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
