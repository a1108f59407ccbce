"""
Device model schema validation.

Device models may carry a JSON Schema (Draft 7) for the spec of their
devices. Links are checked against it when they are submitted, so a
template that can never render a valid device is refused up front.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from models import DeviceLink

logger = logging.getLogger(__name__)


def validate_model_schema(schema: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Check that a device model schema is itself a valid Draft 7 schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        Draft7Validator.check_schema(schema)
        return True, None
    except SchemaError as e:
        return False, f"Invalid schema: {e.message}"


def validate_device_spec(
    spec: Any, schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a device spec against its model schema.

    Every violation is reported, joined with ``; ``, each prefixed by the
    dotted path of the offending field.

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, None

    messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        messages.append(f"{path}: {error.message}")
    return False, "; ".join(messages)


def validate_link_template(
    link: DeviceLink, schema: Optional[Dict[str, Any]]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a link's template spec against its model schema.

    A model without a schema accepts any template. A template whose spec
    is not JSON is left for the reconciler to report on the link.
    """
    if not schema or link.spec.template.spec is None:
        return True, None
    try:
        spec = json.loads(link.spec.template.spec)
    except (ValueError, UnicodeDecodeError):
        logger.debug(f"Template spec of {link.key} is not JSON, skipping validation")
        return True, None
    return validate_device_spec(spec, schema)
