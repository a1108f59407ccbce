"""
Device template rendering.

Turns a DeviceLink's template into the device representation and merges
template changes into an existing representation.

Devices are dynamically typed: their schema is picked at runtime by the
link's model reference, so they are handled as plain value trees
(dicts, lists, scalars) and read through explicit paths.
"""

import copy
import json
from typing import Any, Dict, Optional

from models import DeviceLink

ANNOTATION_ADAPTOR_NODE = "edge.cattle.io/adaptor-node"
ANNOTATION_ADAPTOR_NAME = "edge.cattle.io/adaptor-name"
ANNOTATION_ADAPTOR_PARAMETERS = "edge.cattle.io/adaptor-parameters"


class TemplateError(Exception):
    """Raised when a device cannot be rendered from a link's template."""


def get_nested(obj: Dict[str, Any], *path: str, default: Any = None) -> Any:
    """Read a value at ``path``, returning ``default`` if any step is missing."""
    current: Any = obj
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_nested(obj: Dict[str, Any], value: Any, *path: str) -> None:
    """Write ``value`` at ``path``, creating intermediate mappings."""
    current = obj
    for part in path[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[path[-1]] = value


def decode_template_spec(raw: Optional[bytes]) -> Optional[Dict[str, Any]]:
    """
    Decode the template's spec payload.

    Raises:
        TemplateError: If the payload is missing or is not a JSON object.
    """
    if not raw:
        raise TemplateError("the template spec is empty")
    try:
        decoded = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise TemplateError(f"cannot decode the template spec: {e}") from e
    if decoded is not None and not isinstance(decoded, dict):
        raise TemplateError(
            f"the template spec must be an object, got {type(decoded).__name__}"
        )
    return decoded


def mark_device(
    link: DeviceLink, annotations: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """
    Stamp the adaptor identity onto a copy of ``annotations``.

    The parameters annotation holds the raw parameter bytes verbatim and is
    only written when the link declares parameters.

    Raises:
        TemplateError: If the parameters are not valid UTF-8 and so cannot
            be carried in an annotation without loss.
    """
    marked = dict(annotations or {})
    adaptor = link.spec.adaptor
    marked[ANNOTATION_ADAPTOR_NODE] = adaptor.node
    marked[ANNOTATION_ADAPTOR_NAME] = adaptor.name
    if adaptor.parameters is not None:
        try:
            marked[ANNOTATION_ADAPTOR_PARAMETERS] = adaptor.parameters.decode("utf-8")
        except UnicodeDecodeError as e:
            raise TemplateError(f"the adaptor parameters are not valid UTF-8: {e}") from e
    return marked


def construct_device(link: DeviceLink) -> Dict[str, Any]:
    """
    Build a new device representation from a link.

    Raises:
        TemplateError: If the link has no resolved model or no uid, or its
            template spec cannot be decoded.
    """
    model = link.status.model
    if model.is_empty():
        raise TemplateError("the link has no resolved model")
    if not link.metadata.uid:
        raise TemplateError("the link has no uid to own the device")

    template = link.spec.template
    spec = decode_template_spec(template.spec)

    return {
        "apiVersion": model.api_version,
        "kind": model.kind,
        "metadata": {
            "name": link.metadata.name,
            "namespace": link.metadata.namespace,
            "labels": dict(template.labels),
            "annotations": mark_device(link, template.annotations),
            "ownerReferences": [link.owner_reference()],
        },
        "spec": spec,
    }


def update_device(link: DeviceLink, device: Dict[str, Any]) -> bool:
    """
    Merge the link's template into an existing device, in place.

    Labels and annotations are layered over the existing maps; the spec is
    replaced. Only those three fields are compared, so server-managed
    metadata (resource versions, timestamps) never counts as a change.

    Returns:
        True if the device differs from what it was before the merge.

    Raises:
        TemplateError: If the template spec cannot be decoded.
    """
    template = link.spec.template
    spec = decode_template_spec(template.spec)

    original_labels = get_nested(device, "metadata", "labels") or {}
    original_annotations = get_nested(device, "metadata", "annotations") or {}
    original_spec = device.get("spec")

    labels = {**original_labels, **template.labels}
    annotations = mark_device(link, {**original_annotations, **template.annotations})

    changed = (
        labels != original_labels
        or annotations != original_annotations
        or spec != original_spec
    )

    set_nested(device, labels, "metadata", "labels")
    set_nested(device, annotations, "metadata", "annotations")
    device["spec"] = copy.deepcopy(spec)
    return changed


def is_active(device: Optional[Dict[str, Any]]) -> bool:
    """Whether a device exists and is not being deleted."""
    if not device:
        return False
    return get_nested(device, "metadata", "deletionTimestamp") is None
