"""
Maps objects produced by JSON, YAML and TOML decoders onto the docq value
model (``None | bool | int | float | str | list | dict``).

``json.loads`` already produces plain values. ``yaml.safe_load`` and
``tomllib.loads`` can also produce richer scalars; those mappings are lossy
and one-way:

==========================  ==============================================
decoder type                docq value
==========================  ==============================================
date / datetime / time      ISO-8601 string (``isoformat()``)
Decimal                     int when integral, else float
bytes / bytearray           text, UTF-8 with replacement characters
tuple / set / frozenset     array (sets in iteration order)
non-string mapping key      string: ``true``/``false``/``null`` for YAML
                            booleans and null, ``str()`` otherwise
any other object            ``str(obj)``
==========================  ==============================================

TOML has no null, so ``None`` never arrives from a TOML decoder.
"""
import datetime
import decimal
import collections.abc
from typing import Any


def _key(k: Any) -> str:
    if isinstance(k, str):
        return k
    if k is None:
        return 'null'
    if isinstance(k, bool):
        return 'true' if k else 'false'
    if isinstance(k, (datetime.date, datetime.time)):
        return k.isoformat()
    if isinstance(k, tuple):
        return str(list(to_value(k)))
    return str(k)


def to_value(obj: Any) -> Any:
    """Recursively converts decoder output into a docq value."""
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, (datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        if obj.is_finite() and obj == obj.to_integral_value():
            return int(obj)
        return float(obj)
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj).decode('utf-8', errors='replace')
    if isinstance(obj, collections.abc.Mapping):
        return {_key(k): to_value(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_value(x) for x in obj]
    return str(obj)


__all__ = ["to_value"]
