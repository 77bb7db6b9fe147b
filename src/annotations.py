"""
Node annotation codec.

The CSI node ID mapping lives in a single Node annotation as a JSON object of
driver name to driver node ID. Several drivers on the same node share it, so
every edit must preserve entries it does not own.
"""

import json
from typing import Dict, Optional, Tuple

from jsonschema import Draft7Validator

# Name of node annotation that contains JSON map of driver names to node IDs
ANNOTATION_KEY = "csi.volume.kubernetes.io/nodeid"

DRIVER_MAP_SCHEMA = {
    "type": "object",
    "additionalProperties": {"type": "string"},
}

_validator = Draft7Validator(DRIVER_MAP_SCHEMA)


class AnnotationError(Exception):
    """Base error for driver map encoding and decoding."""


class AnnotationCorrupt(AnnotationError):
    """The annotation value is present but is not a flat string map."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(
            f"Failed to parse node's {ANNOTATION_KEY!r} annotation value "
            f"({raw!r}): {reason}"
        )


class AnnotationEncodeError(AnnotationError):
    """The in-memory driver map cannot be serialized."""


def decode_driver_map(raw: Optional[str]) -> Dict[str, str]:
    """
    Decode an annotation value into a driver map.

    Args:
        raw: The annotation value, or None if the annotation is absent.

    Returns:
        A new dict of driver name to node ID. Empty input yields {}.

    Raises:
        AnnotationCorrupt: If the value is not a JSON object of strings.
    """
    if not raw:
        return {}

    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise AnnotationCorrupt(raw, str(e)) from e

    # json null unmarshals to an empty map
    if value is None:
        return {}

    errors = sorted(_validator.iter_errors(value), key=lambda e: list(e.path))
    if errors:
        error = errors[0]
        path = ".".join(str(p) for p in error.path)
        reason = f"{path}: {error.message}" if path else error.message
        raise AnnotationCorrupt(raw, reason)

    return dict(value)


def encode_driver_map(driver_map: Dict[str, str]) -> str:
    """
    Encode a driver map as compact JSON with sorted keys.

    Raises:
        AnnotationEncodeError: If any key or value is not a string.
    """
    for name, node_id in driver_map.items():
        if not isinstance(name, str) or not isinstance(node_id, str):
            raise AnnotationEncodeError(
                f"Driver map entry {name!r}: {node_id!r} is not a string pair"
            )
    return json.dumps(driver_map, sort_keys=True, separators=(",", ":"))


def upsert_driver(
    driver_map: Dict[str, str], name: str, node_id: str
) -> Tuple[Dict[str, str], bool]:
    """Set name -> node_id. Returns (new map, changed)."""
    if driver_map.get(name) == node_id:
        return driver_map, False
    updated = dict(driver_map)
    updated[name] = node_id
    return updated, True


def remove_driver(driver_map: Dict[str, str], name: str) -> Tuple[Dict[str, str], bool]:
    """Delete name from the map. Returns (new map, changed)."""
    if name not in driver_map:
        return driver_map, False
    updated = dict(driver_map)
    del updated[name]
    return updated, True


def clone_and_add_annotation(
    annotations: Optional[Dict[str, str]], key: str, value: str
) -> Optional[Dict[str, str]]:
    """
    Copy the annotations and set key to value.

    An empty key returns the given mapping untouched.
    """
    if not key:
        return annotations
    cloned = dict(annotations or {})
    cloned[key] = value
    return cloned
