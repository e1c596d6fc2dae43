"""orjson codec for call bodies."""

from typing import Any, Protocol

import orjson
from pydantic import BaseModel


class Serializer(Protocol):
    def serialize(self, data: Any) -> bytes: ...

    def deserialize(self, data: bytes) -> Any: ...


def encode_default(obj: Any) -> Any:
    """orjson fallback: wire models by alias, host sets as sorted lists."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(by_alias=True, exclude_none=True)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"cannot encode {type(obj).__name__} in a call body")


class JsonSerializer:
    """JSON call bodies; an empty body decodes to ``None``."""

    def serialize(self, data: Any) -> bytes:
        return orjson.dumps(data, default=encode_default)

    def deserialize(self, data: bytes) -> Any:
        if not data:
            return None
        return orjson.loads(data)
