"""
Shared value types.

``Metadata`` is the restricted value union carried by faults and order
timeline events: strings, numbers, booleans, None, lists and nested mappings
of the same. Anything else is rejected so that every payload stays
JSON-serializable.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Union

MetadataValue = Union[str, int, float, bool, None, List["MetadataValue"], Dict[str, "MetadataValue"]]
Metadata = Dict[str, MetadataValue]

_MAX_DEPTH = 8


class MetadataError(ValueError):
    """Raised when a metadata payload contains an unsupported value."""

    def __init__(self, path: str, value: Any):
        self.path = path
        super().__init__(
            f"Unsupported metadata value at '{path}': {type(value).__name__}"
        )


def _coerce(value: Any, path: str, depth: int) -> MetadataValue:
    if depth > _MAX_DEPTH:
        raise MetadataError(path, value)
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        out: Dict[str, MetadataValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise MetadataError(f"{path}.{key!r}", key)
            out[key] = _coerce(item, f"{path}.{key}", depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [_coerce(item, f"{path}[{i}]", depth + 1) for i, item in enumerate(value)]
    raise MetadataError(path, value)


def coerce_metadata(data: Mapping[str, Any] | None) -> Metadata:
    """
    Validate and normalize a metadata mapping.

    Datetimes become ISO strings and tuples become lists; unsupported
    values raise ``MetadataError``.
    """
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise MetadataError("$", data)
    return _coerce(data, "$", 0)  # type: ignore[return-value]
