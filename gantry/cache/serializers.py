"""
Gantry Cache - Serializers for byte-addressed stores.

Encodings are deterministic: the same value always yields the same bytes
(JSON uses sorted keys). Objects exposing ``to_dict()`` (models) are encoded
through it; the ``Cache[T]`` facade revives them on the way out.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import msgpack
import orjson

logger = logging.getLogger("gantry.cache.serializers")


def _default(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Type is not serializable: {type(value).__name__}")


class JsonCacheSerializer:
    """JSON via orjson. Default serializer."""

    name = "json"

    def serialize(self, value: Any) -> bytes:
        try:
            return orjson.dumps(value, default=_default, option=orjson.OPT_SORT_KEYS)
        except TypeError as e:
            logger.warning(f"JSON serialization failed: {e}")
            raise

    def deserialize(self, data: bytes) -> Any:
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError as e:
            logger.warning(f"JSON deserialization failed: {e}")
            raise


def _msgpack_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return _default(value)


class MsgpackCacheSerializer:
    """MessagePack - compact binary, cross-language."""

    name = "msgpack"

    def serialize(self, value: Any) -> bytes:
        try:
            if isinstance(value, dict):
                value = dict(sorted(value.items()))
            return msgpack.packb(value, use_bin_type=True, default=_msgpack_default)
        except (TypeError, ValueError) as e:
            logger.warning(f"Msgpack serialization failed: {e}")
            raise

    def deserialize(self, data: bytes) -> Any:
        try:
            return msgpack.unpackb(data, raw=False)
        except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError, ValueError) as e:
            logger.warning(f"Msgpack deserialization failed: {e}")
            raise


def get_serializer(name: str = "json"):
    """
    Factory for serializer instances.

    Args:
        name: "json" or "msgpack"
    """
    serializers = {
        "json": JsonCacheSerializer,
        "msgpack": MsgpackCacheSerializer,
    }

    cls = serializers.get(name)
    if cls is None:
        raise ValueError(f"Unknown serializer: {name}. Options: {list(serializers.keys())}")

    return cls()
