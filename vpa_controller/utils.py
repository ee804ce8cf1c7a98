"""Utility functions for object keys, ownership and semantic comparison."""

from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from kubernetes.utils import parse_quantity

# Maps whose values are resource quantities (cpu, memory, ...)
RESOURCE_LIST_KEYS = frozenset({
    "maxAllowed",
    "minAllowed",
    "target",
    "lowerBound",
    "upperBound",
    "uncappedTarget",
})


def object_key(obj: Dict[str, Any]) -> str:
    """Build the ``namespace/name`` key of an API object."""
    metadata = obj.get("metadata") or {}
    return f"{metadata.get('namespace', '')}/{metadata.get('name', '')}"


def split_key(key: str) -> Tuple[str, str]:
    """
    Split a ``namespace/name`` key.

    Raises:
        ValueError: If the key has no namespace separator
    """
    namespace, sep, name = key.partition("/")
    if not sep or not name:
        raise ValueError(f"invalid object key: {key!r}")
    return namespace, name


def get_controller_of(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return the owner reference marked as controller, if any."""
    metadata = obj.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("controller"):
            return ref
    return None


def is_controlled_by(obj: Dict[str, Any], owner: Dict[str, Any]) -> bool:
    """Check whether ``owner`` is the controller of ``obj`` (matched by UID)."""
    ref = get_controller_of(obj)
    if ref is None:
        return False
    return ref.get("uid") == (owner.get("metadata") or {}).get("uid")


def _is_empty(value: Any) -> bool:
    return value is None or value == {} or value == [] or value == ""


def _parse_quantity(value: Any) -> Optional[Decimal]:
    try:
        return parse_quantity(value)
    except (ValueError, TypeError):
        return None


def _quantities_equal(a: Any, b: Any) -> bool:
    if a == b:
        return True
    qa = _parse_quantity(a)
    qb = _parse_quantity(b)
    return qa is not None and qa == qb


def semantic_equal(a: Any, b: Any, _quantities: bool = False) -> bool:
    """
    Deep-compare two API object fragments.

    Unset, ``None`` and empty values are treated as equal since the API
    server may default or drop them. Values inside resource lists are
    compared as quantities, so ``"1Gi"`` equals ``"1024Mi"``.

    Args:
        a: Desired fragment
        b: Observed fragment

    Returns:
        True if the fragments are semantically equal
    """
    if _is_empty(a) and _is_empty(b):
        return True

    if isinstance(a, dict) and isinstance(b, dict):
        for key in set(a) | set(b):
            in_resource_list = _quantities or key in RESOURCE_LIST_KEYS
            if not semantic_equal(
                a.get(key), b.get(key), _quantities=in_resource_list
            ):
                return False
        return True

    if isinstance(a, list) and isinstance(b, list):
        if len(a) != len(b):
            return False
        return all(semantic_equal(x, y) for x, y in zip(a, b))

    if _quantities:
        return _quantities_equal(a, b)

    return a == b
