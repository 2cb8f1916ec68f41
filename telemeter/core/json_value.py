"""Safe navigation over untyped JSON values.

Flag payloads and other server-provided blobs arrive as arbitrary JSON.
``JsonValue`` wraps such a value and exposes typed accessors that take a
default instead of raising, so callers can write
``payload["theme"]["color"].get_str("blue")`` without guarding every step.
"""

import json
import math
from enum import Enum
from typing import Any, Iterator


class JsonKind(Enum):
    """Tag of the wrapped value."""

    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def _kind_of(raw: Any) -> JsonKind:
    if raw is None:
        return JsonKind.NULL
    if isinstance(raw, bool):
        return JsonKind.BOOL
    if isinstance(raw, (int, float)):
        return JsonKind.NUMBER
    if isinstance(raw, str):
        return JsonKind.STRING
    if isinstance(raw, (list, tuple)):
        return JsonKind.ARRAY
    if isinstance(raw, dict):
        return JsonKind.OBJECT
    raise TypeError(f"not a JSON value: {type(raw).__name__}")


class JsonValue:
    """Tagged wrapper around a decoded JSON value."""

    __slots__ = ("_raw", "_kind")

    def __init__(self, raw: Any = None) -> None:
        if isinstance(raw, JsonValue):
            raw = raw.raw
        self._kind = _kind_of(raw)
        self._raw = list(raw) if isinstance(raw, tuple) else raw

    @classmethod
    def parse(cls, text: str | bytes | None) -> "JsonValue":
        """Decode JSON text. Empty or invalid input yields a null value."""
        if not text:
            return NULL
        try:
            return cls(json.loads(text))
        except (ValueError, TypeError):
            return NULL

    @property
    def raw(self) -> Any:
        return self._raw

    @property
    def kind(self) -> JsonKind:
        return self._kind

    @property
    def is_null(self) -> bool:
        return self._kind is JsonKind.NULL

    @property
    def is_object(self) -> bool:
        return self._kind is JsonKind.OBJECT

    @property
    def is_array(self) -> bool:
        return self._kind is JsonKind.ARRAY

    @property
    def is_string(self) -> bool:
        return self._kind is JsonKind.STRING

    @property
    def is_number(self) -> bool:
        return self._kind is JsonKind.NUMBER

    @property
    def is_bool(self) -> bool:
        return self._kind is JsonKind.BOOL

    # Typed accessors

    def get_str(self, default: str | None = None) -> str | None:
        if self._kind is JsonKind.STRING:
            return self._raw
        if self._kind is JsonKind.NUMBER:
            return str(self._raw)
        if self._kind is JsonKind.BOOL:
            return "true" if self._raw else "false"
        return default

    def get_int(self, default: int = 0) -> int:
        if self._kind is JsonKind.NUMBER:
            if isinstance(self._raw, float) and not math.isfinite(self._raw):
                return default
            return int(self._raw)
        if self._kind is JsonKind.STRING:
            try:
                return int(self._raw.strip())
            except ValueError:
                return default
        return default

    def get_float(self, default: float = 0.0) -> float:
        if self._kind is JsonKind.NUMBER:
            return float(self._raw)
        if self._kind is JsonKind.STRING:
            try:
                return float(self._raw.strip())
            except ValueError:
                return default
        return default

    def get_bool(self, default: bool = False) -> bool:
        if self._kind is JsonKind.BOOL:
            return self._raw
        if self._kind is JsonKind.STRING:
            lowered = self._raw.strip().lower()
            if lowered == "true":
                return True
            if lowered == "false":
                return False
        return default

    # Navigation

    def __getitem__(self, key: str | int) -> "JsonValue":
        if isinstance(key, str):
            if self._kind is JsonKind.OBJECT and key in self._raw:
                return JsonValue(self._raw[key])
            return NULL
        if isinstance(key, int) and self._kind is JsonKind.ARRAY:
            if 0 <= key < len(self._raw):
                return JsonValue(self._raw[key])
        return NULL

    def get(self, key: str | int) -> "JsonValue":
        return self[key]

    def get_path(self, path: str) -> "JsonValue":
        """Navigate a dotted path such as ``"items.[0].name"``.

        Segments written as ``[n]`` index into arrays; anything else is an
        object key. A missing segment yields a null value.
        """
        current: JsonValue = self
        for segment in path.split("."):
            if not segment:
                continue
            if segment.startswith("[") and segment.endswith("]"):
                try:
                    current = current[int(segment[1:-1])]
                except ValueError:
                    return NULL
            else:
                current = current[segment]
            if current.is_null:
                return NULL
        return current

    def keys(self) -> list[str]:
        if self._kind is JsonKind.OBJECT:
            return list(self._raw.keys())
        return []

    def __contains__(self, key: object) -> bool:
        return self._kind is JsonKind.OBJECT and key in self._raw

    def __len__(self) -> int:
        if self._kind in (JsonKind.OBJECT, JsonKind.ARRAY):
            return len(self._raw)
        return 0

    def __iter__(self) -> Iterator["JsonValue"]:
        if self._kind is JsonKind.ARRAY:
            return (JsonValue(item) for item in self._raw)
        return iter(())

    def __bool__(self) -> bool:
        return not self.is_null

    def as_list(self) -> list["JsonValue"]:
        return list(self)

    def as_dict(self) -> dict[str, "JsonValue"]:
        if self._kind is JsonKind.OBJECT:
            return {key: JsonValue(value) for key, value in self._raw.items()}
        return {}

    def to_json(self) -> str:
        return json.dumps(self._raw)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, JsonValue):
            return self._kind is other._kind and self._raw == other._raw
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.to_json())

    def __repr__(self) -> str:
        return f"JsonValue({self._raw!r})"


NULL = JsonValue(None)
