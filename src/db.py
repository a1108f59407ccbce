"""
Database Manager - PostgreSQL-backed resource store.

Stores DeviceLinks, the devices rendered from them, the registry of device
models, and recorded link events. Link and device writes use optimistic
concurrency on ``resource_version``: a write carrying a stale version is
rejected with :class:`ConflictError`, never merged.

Every link write is announced on the event bus as a watch event carrying
the before/after snapshots.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from events import EventBus, EventType, WatchEvent
from migrate import run_migrations
from models import (
    Condition,
    DeviceAdaptor,
    DeviceLink,
    DeviceLinkSpec,
    DeviceLinkStatus,
    DeviceTemplate,
    ModelReference,
    NamespacedName,
    ObjectMeta,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for resource store errors."""


class NotFoundError(StoreError):
    """The requested record does not exist."""


class ConflictError(StoreError):
    """A write carried a stale resource version."""


class AlreadyExistsError(StoreError):
    """A record with the same identity already exists."""


class NoKindMatchError(StoreError):
    """The requested device kind is not a registered model."""


def _load_json(value: Any, default: Any) -> Any:
    """Decode a JSONB column (asyncpg hands them back as text)."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class DatabaseManager:
    """Manages PostgreSQL operations for the limb's resource store."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None
        self._event_bus = event_bus

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    def set_event_bus(self, event_bus: EventBus) -> None:
        """Set the bus that link watch events are published on."""
        self._event_bus = event_bus

    async def _publish(
        self,
        event_type: EventType,
        key: NamespacedName,
        old: Optional[DeviceLink] = None,
        new: Optional[DeviceLink] = None,
    ) -> None:
        if self._event_bus:
            await self._event_bus.publish(WatchEvent.create(event_type, key, old, new))

    # ==================== Device Model Methods ====================

    async def create_device_model(
        self,
        api_version: str,
        kind: str,
        schema: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register a device model.

        Args:
            api_version: Model group/version (e.g. 'devices.edge.cattle.io/v1alpha1')
            kind: Model kind (e.g. 'DummyDevice')
            schema: Optional JSON Schema for device specs of this kind
            description: Optional description

        Raises:
            AlreadyExistsError: If the model is already registered.
        """
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO device_models (api_version, kind, schema, description)
                    VALUES ($1, $2, $3, $4)
                    RETURNING *
                    """,
                    api_version,
                    kind,
                    json.dumps(schema or {}),
                    description,
                )
            except asyncpg.UniqueViolationError as e:
                raise AlreadyExistsError(
                    f"Device model {api_version}/{kind} already exists"
                ) from e

        logger.info(f"Registered device model {api_version}/{kind}")
        return self._parse_model_row(row)

    async def get_device_model(
        self, api_version: str, kind: str
    ) -> Optional[Dict[str, Any]]:
        """Get a registered device model."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM device_models WHERE api_version = $1 AND kind = $2",
                api_version,
                kind,
            )
            if not row:
                return None
            return self._parse_model_row(row)

    async def list_device_models(self, limit: int = 100) -> List[Dict[str, Any]]:
        """List registered device models."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM device_models ORDER BY api_version, kind LIMIT $1",
                limit,
            )
            return [self._parse_model_row(row) for row in rows]

    async def delete_device_model(self, api_version: str, kind: str) -> bool:
        """Unregister a device model. Returns False if it was not registered."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM device_models
                WHERE api_version = $1 AND kind = $2
                RETURNING id
                """,
                api_version,
                kind,
            )
        if result:
            logger.info(f"Unregistered device model {api_version}/{kind}")
            return True
        return False

    def _parse_model_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a device model row, converting JSON fields."""
        result = dict(row)
        result["schema"] = _load_json(result.get("schema"), {})
        return result

    # ==================== DeviceLink Methods ====================

    async def create_link(self, link: DeviceLink) -> DeviceLink:
        """
        Create a DeviceLink. Status on the input is ignored.

        Raises:
            AlreadyExistsError: If a link with the same identity exists.
        """
        meta = link.metadata
        spec = link.spec
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO device_links (
                        namespace, name, labels, annotations, finalizers,
                        adaptor_node, adaptor_name, adaptor_parameters,
                        model_api_version, model_kind,
                        template_labels, template_annotations, template_spec
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    RETURNING *
                    """,
                    meta.namespace,
                    meta.name,
                    json.dumps(meta.labels),
                    json.dumps(meta.annotations),
                    json.dumps(meta.finalizers),
                    spec.adaptor.node,
                    spec.adaptor.name,
                    spec.adaptor.parameters,
                    spec.model.api_version,
                    spec.model.kind,
                    json.dumps(spec.template.labels),
                    json.dumps(spec.template.annotations),
                    spec.template.spec,
                )
            except asyncpg.UniqueViolationError as e:
                raise AlreadyExistsError(f"DeviceLink {link.key} already exists") from e

        created = self._parse_link_row(row)
        logger.info(f"Created DeviceLink {created.key} ({created.metadata.uid})")
        await self._publish(EventType.ADDED, created.key, new=created)
        return created

    async def get_link(self, key: NamespacedName) -> DeviceLink:
        """
        Get a DeviceLink by identity.

        Raises:
            NotFoundError: If the link does not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM device_links WHERE namespace = $1 AND name = $2",
                key.namespace,
                key.name,
            )
        if not row:
            raise NotFoundError(f"DeviceLink {key} not found")
        return self._parse_link_row(row)

    async def list_links(
        self,
        namespace: Optional[str] = None,
        node_name: Optional[str] = None,
        adaptor_name: Optional[str] = None,
        limit: int = 1000,
    ) -> List[DeviceLink]:
        """
        List DeviceLinks with optional filters.

        ``node_name`` matches links bound to or targeting the node;
        ``adaptor_name`` matches the adaptor recorded in status.
        """
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM device_links WHERE 1=1"
            params: List[Any] = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if node_name:
                param_count += 1
                query += (
                    f" AND (status_node_name = ${param_count}"
                    f" OR adaptor_node = ${param_count})"
                )
                params.append(node_name)

            if adaptor_name:
                param_count += 1
                query += f" AND status_adaptor_name = ${param_count}"
                params.append(adaptor_name)

            param_count += 1
            query += f" ORDER BY namespace, name LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_link_row(row) for row in rows]

    async def update_link(self, link: DeviceLink) -> Optional[DeviceLink]:
        """
        Update a link's metadata and spec. Status is left untouched.

        The generation moves only when the spec changed. A soft-deleted link
        whose finalizers are now empty is removed from the store, together
        with its devices.

        Returns:
            The updated link, or None if the update removed it.

        Raises:
            NotFoundError: If the link does not exist.
            ConflictError: If ``link.metadata.resource_version`` is stale.
        """
        removed = False
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                old = await self._lock_link(conn, link.key)
                if old.metadata.resource_version != link.metadata.resource_version:
                    raise ConflictError(
                        f"DeviceLink {link.key} was modified "
                        f"(have {link.metadata.resource_version}, "
                        f"store has {old.metadata.resource_version})"
                    )

                if old.is_deleted() and not link.metadata.finalizers:
                    await conn.execute(
                        "DELETE FROM device_links WHERE uid = $1", old.metadata.uid
                    )
                    removed = True
                else:
                    generation = old.metadata.generation
                    if link.spec != old.spec:
                        generation += 1
                    meta = link.metadata
                    spec = link.spec
                    row = await conn.fetchrow(
                        """
                        UPDATE device_links
                        SET labels = $2,
                            annotations = $3,
                            finalizers = $4,
                            adaptor_node = $5,
                            adaptor_name = $6,
                            adaptor_parameters = $7,
                            model_api_version = $8,
                            model_kind = $9,
                            template_labels = $10,
                            template_annotations = $11,
                            template_spec = $12,
                            generation = $13,
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE uid = $1
                        RETURNING *
                        """,
                        old.metadata.uid,
                        json.dumps(meta.labels),
                        json.dumps(meta.annotations),
                        json.dumps(meta.finalizers),
                        spec.adaptor.node,
                        spec.adaptor.name,
                        spec.adaptor.parameters,
                        spec.model.api_version,
                        spec.model.kind,
                        json.dumps(spec.template.labels),
                        json.dumps(spec.template.annotations),
                        spec.template.spec,
                        generation,
                    )

        if removed:
            logger.info(f"Removed DeviceLink {link.key}: finalizers cleared")
            await self._publish(EventType.DELETED, link.key, old=old)
            return None

        updated = self._parse_link_row(row)
        await self._publish(EventType.MODIFIED, updated.key, old=old, new=updated)
        return updated

    async def update_link_status(self, link: DeviceLink) -> DeviceLink:
        """
        Write a link's status. Metadata and spec are left untouched.

        Raises:
            NotFoundError: If the link does not exist.
            ConflictError: If ``link.metadata.resource_version`` is stale.
        """
        status = link.status
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                old = await self._lock_link(conn, link.key)
                if old.metadata.resource_version != link.metadata.resource_version:
                    raise ConflictError(
                        f"DeviceLink {link.key} status was modified "
                        f"(have {link.metadata.resource_version}, "
                        f"store has {old.metadata.resource_version})"
                    )
                row = await conn.fetchrow(
                    """
                    UPDATE device_links
                    SET status_node_name = $2,
                        status_adaptor_name = $3,
                        status_adaptor_parameters = $4,
                        status_model_api_version = $5,
                        status_model_kind = $6,
                        conditions = $7,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE uid = $1
                    RETURNING *
                    """,
                    old.metadata.uid,
                    status.node_name,
                    status.adaptor_name,
                    status.adaptor_parameters,
                    status.model.api_version,
                    status.model.kind,
                    json.dumps([c.to_dict() for c in status.conditions]),
                )

        updated = self._parse_link_row(row)
        await self._publish(EventType.MODIFIED, updated.key, old=old, new=updated)
        return updated

    async def delete_link(self, key: NamespacedName) -> Optional[DeviceLink]:
        """
        Delete a link.

        A link without finalizers is removed at once. Otherwise it is marked
        with a deletion timestamp and stays until its finalizers are cleared.

        Returns:
            The marked link, or None if it was removed.

        Raises:
            NotFoundError: If the link does not exist.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                old = await self._lock_link(conn, key)
                if not old.metadata.finalizers:
                    await conn.execute(
                        "DELETE FROM device_links WHERE uid = $1", old.metadata.uid
                    )
                    row = None
                elif old.is_deleted():
                    return old
                else:
                    row = await conn.fetchrow(
                        """
                        UPDATE device_links
                        SET deletion_timestamp = NOW(),
                            resource_version = resource_version + 1,
                            updated_at = NOW()
                        WHERE uid = $1
                        RETURNING *
                        """,
                        old.metadata.uid,
                    )

        if row is None:
            logger.info(f"Removed DeviceLink {key}")
            await self._publish(EventType.DELETED, key, old=old)
            return None

        marked = self._parse_link_row(row)
        logger.info(
            f"Marked DeviceLink {key} for deletion, "
            f"waiting on: {marked.metadata.finalizers}"
        )
        await self._publish(EventType.MODIFIED, key, old=old, new=marked)
        return marked

    async def _lock_link(
        self, conn: asyncpg.Connection, key: NamespacedName
    ) -> DeviceLink:
        """Read a link row FOR UPDATE inside the caller's transaction."""
        row = await conn.fetchrow(
            """
            SELECT * FROM device_links
            WHERE namespace = $1 AND name = $2
            FOR UPDATE
            """,
            key.namespace,
            key.name,
        )
        if not row:
            raise NotFoundError(f"DeviceLink {key} not found")
        return self._parse_link_row(row)

    def _parse_link_row(self, row: asyncpg.Record) -> DeviceLink:
        """
        Parse a device_links row into a DeviceLink.

        Args:
            row: An asyncpg.Record from a database query

        Returns:
            The DeviceLink, with JSON fields decoded and raw payloads as bytes
        """
        data = dict(row)

        def raw(column: str) -> Optional[bytes]:
            value = data.get(column)
            return bytes(value) if value is not None else None

        return DeviceLink(
            metadata=ObjectMeta(
                name=data["name"],
                namespace=data["namespace"],
                uid=str(data["uid"]) if data.get("uid") else None,
                resource_version=data.get("resource_version", 0),
                generation=data.get("generation", 0),
                labels=_load_json(data.get("labels"), {}),
                annotations=_load_json(data.get("annotations"), {}),
                finalizers=_load_json(data.get("finalizers"), []),
                deletion_timestamp=data.get("deletion_timestamp"),
                creation_timestamp=data.get("created_at"),
            ),
            spec=DeviceLinkSpec(
                adaptor=DeviceAdaptor(
                    node=data.get("adaptor_node", ""),
                    name=data.get("adaptor_name", ""),
                    parameters=raw("adaptor_parameters"),
                ),
                model=ModelReference(
                    api_version=data.get("model_api_version", ""),
                    kind=data.get("model_kind", ""),
                ),
                template=DeviceTemplate(
                    labels=_load_json(data.get("template_labels"), {}),
                    annotations=_load_json(data.get("template_annotations"), {}),
                    spec=raw("template_spec"),
                ),
            ),
            status=DeviceLinkStatus(
                node_name=data.get("status_node_name", ""),
                adaptor_name=data.get("status_adaptor_name", ""),
                adaptor_parameters=raw("status_adaptor_parameters"),
                model=ModelReference(
                    api_version=data.get("status_model_api_version", ""),
                    kind=data.get("status_model_kind", ""),
                ),
                conditions=[
                    Condition.from_dict(c)
                    for c in _load_json(data.get("conditions"), [])
                ],
            ),
        )

    # ==================== Device Methods ====================

    async def _require_model(
        self, conn: asyncpg.Connection, api_version: str, kind: str
    ) -> None:
        exists = await conn.fetchval(
            "SELECT 1 FROM device_models WHERE api_version = $1 AND kind = $2",
            api_version,
            kind,
        )
        if not exists:
            raise NoKindMatchError(
                f"no matches for kind {kind!r} in version {api_version!r}"
            )

    async def get_device(
        self, api_version: str, kind: str, key: NamespacedName
    ) -> Dict[str, Any]:
        """
        Get a device by model and identity.

        Raises:
            NoKindMatchError: If the model is not registered.
            NotFoundError: If the device does not exist.
        """
        async with self.pool.acquire() as conn:
            await self._require_model(conn, api_version, kind)
            row = await conn.fetchrow(
                """
                SELECT * FROM devices
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                """,
                api_version,
                kind,
                key.namespace,
                key.name,
            )
        if not row:
            raise NotFoundError(f"{kind} {key} not found")
        return self._parse_device_row(row)

    async def create_device(self, device: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a device from its representation.

        Raises:
            NoKindMatchError: If the model is not registered.
            AlreadyExistsError: If the device already exists.
            NotFoundError: If the owning link no longer exists.
        """
        metadata = device.get("metadata") or {}
        owner_references = metadata.get("ownerReferences") or []
        owner_uid = next(
            (ref.get("uid") for ref in owner_references if ref.get("controller")),
            None,
        )

        async with self.pool.acquire() as conn:
            await self._require_model(conn, device["apiVersion"], device["kind"])
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO devices (
                        api_version, kind, namespace, name, labels, annotations,
                        owner_references, owner_uid, spec
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    RETURNING *
                    """,
                    device["apiVersion"],
                    device["kind"],
                    metadata.get("namespace") or "default",
                    metadata["name"],
                    json.dumps(metadata.get("labels") or {}),
                    json.dumps(metadata.get("annotations") or {}),
                    json.dumps(owner_references),
                    owner_uid,
                    json.dumps(device.get("spec")),
                )
            except asyncpg.UniqueViolationError as e:
                raise AlreadyExistsError(
                    f"{device['kind']} {metadata.get('namespace')}/{metadata['name']} "
                    f"already exists"
                ) from e
            except asyncpg.ForeignKeyViolationError as e:
                raise NotFoundError(
                    f"owner {owner_uid} of {metadata['name']} no longer exists"
                ) from e

        created = self._parse_device_row(row)
        logger.info(
            f"Created {created['kind']} "
            f"{created['metadata']['namespace']}/{created['metadata']['name']}"
        )
        return created

    async def update_device(self, device: Dict[str, Any]) -> Dict[str, Any]:
        """
        Write a device's labels, annotations and spec.

        Raises:
            NoKindMatchError: If the model is not registered.
            NotFoundError: If the device does not exist.
            ConflictError: If ``metadata.resourceVersion`` is stale.
        """
        metadata = device.get("metadata") or {}
        key = NamespacedName(metadata.get("namespace") or "default", metadata["name"])

        async with self.pool.acquire() as conn:
            await self._require_model(conn, device["apiVersion"], device["kind"])
            row = await conn.fetchrow(
                """
                UPDATE devices
                SET labels = $6,
                    annotations = $7,
                    spec = $8,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                  AND resource_version = $5
                RETURNING *
                """,
                device["apiVersion"],
                device["kind"],
                key.namespace,
                key.name,
                int(metadata.get("resourceVersion") or 0),
                json.dumps(metadata.get("labels") or {}),
                json.dumps(metadata.get("annotations") or {}),
                json.dumps(device.get("spec")),
            )
            if not row:
                exists = await conn.fetchval(
                    """
                    SELECT 1 FROM devices
                    WHERE api_version = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    """,
                    device["apiVersion"],
                    device["kind"],
                    key.namespace,
                    key.name,
                )
                if not exists:
                    raise NotFoundError(f"{device['kind']} {key} not found")
                raise ConflictError(f"{device['kind']} {key} was modified")

        return self._parse_device_row(row)

    async def update_device_status(
        self,
        api_version: str,
        kind: str,
        key: NamespacedName,
        status: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Replace a device's status as reported by its adaptor.

        Raises:
            NotFoundError: If the device does not exist.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE devices
                SET status = $5,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                RETURNING *
                """,
                api_version,
                kind,
                key.namespace,
                key.name,
                json.dumps(status),
            )
        if not row:
            raise NotFoundError(f"{kind} {key} not found")
        return self._parse_device_row(row)

    async def list_devices(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """List devices of every kind, optionally within a namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM devices WHERE namespace = $1
                    ORDER BY name LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM devices ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_device_row(row) for row in rows]

    def _parse_device_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """Parse a devices row into its generic representation."""
        data = dict(row)
        created_at = data.get("created_at")
        deletion_timestamp = data.get("deletion_timestamp")
        return {
            "apiVersion": data["api_version"],
            "kind": data["kind"],
            "metadata": {
                "name": data["name"],
                "namespace": data["namespace"],
                "uid": str(data["uid"]) if data.get("uid") else None,
                "resourceVersion": data.get("resource_version", 0),
                "labels": _load_json(data.get("labels"), {}),
                "annotations": _load_json(data.get("annotations"), {}),
                "ownerReferences": _load_json(data.get("owner_references"), []),
                "creationTimestamp": created_at.isoformat() if created_at else None,
                "deletionTimestamp": (
                    deletion_timestamp.isoformat() if deletion_timestamp else None
                ),
            },
            "spec": _load_json(data.get("spec"), None),
            "status": _load_json(data.get("status"), {}),
        }

    # ==================== Link Event Methods ====================

    async def record_link_event(
        self,
        key: NamespacedName,
        link_uid: Optional[str],
        event_type: str,
        reason: str,
        message: str,
        component: str = "",
    ) -> None:
        """Append a recorded event to a link's history."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO device_link_events (
                    link_uid, namespace, name, event_type, reason, message, component
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                link_uid,
                key.namespace,
                key.name,
                event_type,
                reason,
                message,
                component,
            )

    async def list_link_events(
        self, key: NamespacedName, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get the most recent recorded events of a link."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM device_link_events
                WHERE namespace = $1 AND name = $2
                ORDER BY created_at DESC, id DESC
                LIMIT $3
                """,
                key.namespace,
                key.name,
                limit,
            )
            return [dict(row) for row in rows]
