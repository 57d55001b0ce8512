"""
Barley cache - value serializers for network backends.
"""

from __future__ import annotations

import logging
from typing import Any

import orjson

from ..response import json_default

logger = logging.getLogger("barley.cache.serializers")


class JsonCacheSerializer:
    """
    JSON serializer backed by orjson.

    Handles primitives and containers; datetimes become ISO strings and
    objects with ``to_dict`` are stored as dicts.
    """

    def serialize(self, value: Any) -> bytes:
        try:
            return orjson.dumps(value, default=json_default)
        except TypeError as e:
            logger.warning("JSON serialization failed: %s", e)
            raise

    def deserialize(self, data: bytes) -> Any:
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError as e:
            logger.warning("JSON deserialization failed: %s", e)
            raise
