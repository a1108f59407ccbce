"""
DeviceLink resource types.

A DeviceLink binds a node, an adaptor, a device model and a device template
into one managed connection. The declarer owns ``metadata`` and ``spec``;
the controller owns ``status`` and its finalizer.

Raw payloads (adaptor parameters, template spec) are kept as bytes so that
change detection can compare them byte-for-byte.
"""

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

DEVICE_LINK_API_VERSION = "edge.cattle.io/v1alpha1"
DEVICE_LINK_KIND = "DeviceLink"


@dataclass(frozen=True)
class NamespacedName:
    """Identity of a namespaced record."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: str = "default"):
        """Parse ``namespace/name`` (or a bare name in the default namespace)."""
        namespace, sep, name = value.partition("/")
        if not sep:
            return cls(default_namespace, value)
        return cls(namespace, name)


class ConditionStatus(Enum):
    """Tri-state value of a status condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


def encode_raw(value: Any) -> Optional[bytes]:
    """
    Turn a manifest value into a raw payload.

    Bytes and strings are taken verbatim; anything else is serialized as
    compact JSON. ``None`` stays ``None`` (no payload).
    """
    if value is None:
        return None
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def decode_raw(raw: Optional[bytes]) -> Any:
    """Render a raw payload for display: parsed JSON when possible."""
    if raw is None:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class Condition:
    """A single status condition."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_update_time: Optional[str] = None
    last_transition_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastUpdateTime": self.last_update_time,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_update_time=data.get("lastUpdateTime"),
            last_transition_time=data.get("lastTransitionTime"),
        )


@dataclass
class DeviceAdaptor:
    """Reference to the adaptor serving a link."""

    node: str = ""
    name: str = ""
    parameters: Optional[bytes] = None


@dataclass
class ModelReference:
    """Type reference (apiVersion + kind) of the device representation."""

    api_version: str = ""
    kind: str = ""

    def is_empty(self) -> bool:
        return not self.api_version and not self.kind

    def to_dict(self) -> Dict[str, str]:
        return {"apiVersion": self.api_version, "kind": self.kind}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelReference":
        data = data or {}
        return cls(api_version=data.get("apiVersion", ""), kind=data.get("kind", ""))


@dataclass
class DeviceTemplate:
    """Template the device representation is rendered from."""

    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    spec: Optional[bytes] = None


@dataclass
class DeviceLinkSpec:
    """Declared state of a DeviceLink."""

    adaptor: DeviceAdaptor = field(default_factory=DeviceAdaptor)
    model: ModelReference = field(default_factory=ModelReference)
    template: DeviceTemplate = field(default_factory=DeviceTemplate)


@dataclass
class DeviceLinkStatus:
    """Observed state of a DeviceLink, owned by the controllers."""

    node_name: str = ""
    adaptor_name: str = ""
    adaptor_parameters: Optional[bytes] = None
    model: ModelReference = field(default_factory=ModelReference)
    conditions: List[Condition] = field(default_factory=list)


@dataclass
class ObjectMeta:
    """Record metadata."""

    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: int = 0
    generation: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    creation_timestamp: Optional[datetime] = None


@dataclass
class DeviceLink:
    """The DeviceLink record."""

    metadata: ObjectMeta
    spec: DeviceLinkSpec = field(default_factory=DeviceLinkSpec)
    status: DeviceLinkStatus = field(default_factory=DeviceLinkStatus)

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.metadata.namespace, self.metadata.name)

    def is_deleted(self) -> bool:
        """Whether the record carries the soft-delete marker."""
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [
            f for f in self.metadata.finalizers if f != finalizer
        ]

    def deep_copy(self) -> "DeviceLink":
        return copy.deepcopy(self)

    def owner_reference(self) -> Dict[str, Any]:
        """Controlling owner reference pointing at this link."""
        return {
            "apiVersion": DEVICE_LINK_API_VERSION,
            "kind": DEVICE_LINK_KIND,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Render the link as a manifest-shaped dict."""
        meta = self.metadata
        return {
            "apiVersion": DEVICE_LINK_API_VERSION,
            "kind": DEVICE_LINK_KIND,
            "metadata": {
                "name": meta.name,
                "namespace": meta.namespace,
                "uid": meta.uid,
                "resourceVersion": meta.resource_version,
                "generation": meta.generation,
                "labels": dict(meta.labels),
                "annotations": dict(meta.annotations),
                "finalizers": list(meta.finalizers),
                "deletionTimestamp": _format_time(meta.deletion_timestamp),
                "creationTimestamp": _format_time(meta.creation_timestamp),
            },
            "spec": {
                "adaptor": {
                    "node": self.spec.adaptor.node,
                    "name": self.spec.adaptor.name,
                    "parameters": decode_raw(self.spec.adaptor.parameters),
                },
                "model": self.spec.model.to_dict(),
                "template": {
                    "metadata": {
                        "labels": dict(self.spec.template.labels),
                        "annotations": dict(self.spec.template.annotations),
                    },
                    "spec": decode_raw(self.spec.template.spec),
                },
            },
            "status": {
                "nodeName": self.status.node_name,
                "adaptorName": self.status.adaptor_name,
                "adaptor": {"parameters": decode_raw(self.status.adaptor_parameters)},
                "model": self.status.model.to_dict(),
                "conditions": [c.to_dict() for c in self.status.conditions],
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceLink":
        """
        Build a link from a manifest-shaped dict.

        ``spec.adaptor.parameters`` and ``spec.template.spec`` go through
        :func:`encode_raw`, so a string is kept verbatim.
        """
        metadata = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        adaptor = spec.get("adaptor") or {}
        template = spec.get("template") or {}
        template_meta = template.get("metadata") or {}
        status_adaptor = status.get("adaptor") or {}

        return cls(
            metadata=ObjectMeta(
                name=metadata["name"],
                namespace=metadata.get("namespace") or "default",
                uid=metadata.get("uid"),
                resource_version=int(metadata.get("resourceVersion") or 0),
                generation=int(metadata.get("generation") or 0),
                labels=dict(metadata.get("labels") or {}),
                annotations=dict(metadata.get("annotations") or {}),
                finalizers=list(metadata.get("finalizers") or []),
                deletion_timestamp=_parse_time(metadata.get("deletionTimestamp")),
                creation_timestamp=_parse_time(metadata.get("creationTimestamp")),
            ),
            spec=DeviceLinkSpec(
                adaptor=DeviceAdaptor(
                    node=adaptor.get("node", ""),
                    name=adaptor.get("name", ""),
                    parameters=encode_raw(adaptor.get("parameters")),
                ),
                model=ModelReference.from_dict(spec.get("model")),
                template=DeviceTemplate(
                    labels=dict(template_meta.get("labels") or {}),
                    annotations=dict(template_meta.get("annotations") or {}),
                    spec=encode_raw(template.get("spec")),
                ),
            ),
            status=DeviceLinkStatus(
                node_name=status.get("nodeName", ""),
                adaptor_name=status.get("adaptorName", ""),
                adaptor_parameters=encode_raw(status_adaptor.get("parameters")),
                model=ModelReference.from_dict(status.get("model")),
                conditions=[
                    Condition.from_dict(c) for c in status.get("conditions") or []
                ],
            ),
        )
