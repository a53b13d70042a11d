"""Shared helpers for node keys and dot-path lookups."""

import re
from collections.abc import Container
from typing import Any

_AUGMENTED_RE = re.compile(r"^(?P<base>.+)_(?P<index>\d+)$")

_MISSING = object()


def augment(node_id: str, index: int) -> str:
    """Build the key of the index-th parallel instance of a node."""
    return f"{node_id}_{index}"


def split_key(node_key: str, static_ids: Container[str] | None = None) -> tuple[str, int | None]:
    """Split a node key into (base node id, instance index).

    ``worker_3`` -> ("worker", 3). When ``static_ids`` is given and the key is
    itself a static node id (e.g. a node literally named ``step_1``), the key
    is returned unchanged with no index.
    """
    if static_ids is not None and node_key in static_ids:
        return node_key, None
    match = _AUGMENTED_RE.match(node_key)
    if not match:
        return node_key, None
    return match.group("base"), int(match.group("index"))


def base_id(node_key: str, static_ids: Container[str] | None = None) -> str:
    """Strip any ``_<n>`` parallel suffix."""
    return split_key(node_key, static_ids)[0]


def instance_keys(node_states: dict[str, Any], node_id: str) -> list[str]:
    """All present augmented keys ``{node_id}_\\d+``, sorted by index."""
    pattern = re.compile(rf"^{re.escape(node_id)}_(\d+)$")
    found = []
    for key in node_states:
        match = pattern.match(key)
        if match:
            found.append((int(match.group(1)), key))
    return [key for _, key in sorted(found)]


def resolve_path(data: Any, path: str, default: Any = _MISSING) -> Any:
    """Resolve a dot path (``result.items``) against nested dicts and lists.

    Numeric segments index into lists. Raises KeyError when the path is
    absent and no default is given.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            if default is _MISSING:
                raise KeyError(path)
            return default
    return current
