"""
Helpers for the docq value model.

A Value is one of ``None``, ``bool``, ``int``, ``float``, ``str``, ``list``
or ``dict`` (string keys, insertion ordered). These are the same plain Python
types the JSON/YAML/TOML decoders hand us, so the engine never wraps them.
``bool`` is a subclass of ``int`` in Python; every numeric check in this
package goes through :func:`is_number` so that ``true`` is never a number.
"""
import json
import math
import functools
from typing import Any, List

# Rank of each type in the total ordering used by sort, min/max and <.
_TYPE_RANK = {
    'null': 0,
    'boolean': 1,
    'number': 2,
    'string': 3,
    'array': 4,
    'object': 5,
}


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def type_name(value: Any) -> str:
    """Returns the query-language name of a value's type."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, list):
        return 'array'
    if isinstance(value, dict):
        return 'object'
    raise TypeError(f"Not a docq value: {type(value).__name__}")


def is_truthy(value: Any) -> bool:
    """Everything is truthy except ``false`` and ``null``."""
    return not (value is None or value is False)


def _cmp_scalar(a, b) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def compare(a: Any, b: Any) -> int:
    """
    Total ordering over values:
    null < false < true < numbers < strings < arrays < objects.
    Arrays compare element-wise; objects compare their sorted key lists
    first, then their values in sorted-key order.
    """
    ta, tb = type_name(a), type_name(b)
    if ta != tb:
        return _cmp_scalar(_TYPE_RANK[ta], _TYPE_RANK[tb])
    match ta:
        case 'null':
            return 0
        case 'boolean' | 'number' | 'string':
            return _cmp_scalar(a, b)
        case 'array':
            for x, y in zip(a, b):
                c = compare(x, y)
                if c:
                    return c
            return _cmp_scalar(len(a), len(b))
        case 'object':
            ka, kb = sorted(a.keys()), sorted(b.keys())
            c = compare(ka, kb)
            if c:
                return c
            for k in ka:
                c = compare(a[k], b[k])
                if c:
                    return c
            return 0
    return 0


def values_equal(a: Any, b: Any) -> bool:
    return compare(a, b) == 0


sort_key = functools.cmp_to_key(compare)


def sorted_values(items: List[Any]) -> List[Any]:
    """Stable sort using the total ordering."""
    return sorted(items, key=sort_key)


def deep_copy(value: Any) -> Any:
    if isinstance(value, list):
        return [deep_copy(v) for v in value]
    if isinstance(value, dict):
        return {k: deep_copy(v) for k, v in value.items()}
    return value


def to_json(value: Any, *, indent: int | None = None) -> str:
    """Serializes a value as JSON text; compact separators unless indenting."""
    if indent is None:
        return json.dumps(value, ensure_ascii=False, separators=(',', ':'), allow_nan=True)
    return json.dumps(value, ensure_ascii=False, indent=indent, allow_nan=True)


def format_number(value: Any) -> str:
    # Non-finite floats have no JSON spelling; mirror jq's output.
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return 'null'
        return '1.7976931348623157e+308' if value > 0 else '-1.7976931348623157e+308'
    return repr(value) if isinstance(value, float) else str(value)


def describe(value: Any, limit: int = 40) -> str:
    """Short ``type (json)`` description used in error messages."""
    try:
        text = to_json(value)
    except (TypeError, ValueError):
        text = repr(value)
    if len(text) > limit:
        text = text[:limit - 3] + '...'
    return f"{type_name(value)} ({text})"
