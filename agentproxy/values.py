"""Tagged JSON values for tool parameters and results.

Tool payloads are arbitrary JSON, but they cross three boundaries (inbound
request, outbound call, Redis) so they are held as a ``JsonValue`` whose
``kind`` says exactly which JSON type it is. Conversion from plain Python
rejects anything ``json.dumps`` would either refuse or encode as non-standard
JSON (NaN, Infinity, non-string keys).
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ValueKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


class UnsupportedValueError(ValueError):
    """Raised when a Python object has no JSON representation."""


@dataclass(frozen=True)
class JsonValue:
    """A JSON value tagged with its kind.

    ``data`` holds the primitive for scalar kinds, a tuple of ``JsonValue``
    for arrays and a dict of ``str -> JsonValue`` for objects.
    """
    kind: ValueKind
    data: Any = None

    @classmethod
    def from_python(cls, obj: Any, path: str = "$") -> "JsonValue":
        """Build a tagged value from decoded JSON (or equivalent Python).

        Raises:
            UnsupportedValueError: If obj (or anything nested in it) is not
                representable as standard JSON
        """
        if obj is None:
            return cls(ValueKind.NULL)
        # bool before int: bool is a subclass of int
        if isinstance(obj, bool):
            return cls(ValueKind.BOOL, obj)
        if isinstance(obj, (int, float)):
            if isinstance(obj, float) and not math.isfinite(obj):
                raise UnsupportedValueError(f"{path}: non-finite number {obj!r}")
            return cls(ValueKind.NUMBER, obj)
        if isinstance(obj, str):
            return cls(ValueKind.STRING, obj)
        if isinstance(obj, (list, tuple)):
            return cls(
                ValueKind.ARRAY,
                tuple(cls.from_python(item, f"{path}[{i}]") for i, item in enumerate(obj)),
            )
        if isinstance(obj, dict):
            items = {}
            for key, item in obj.items():
                if not isinstance(key, str):
                    raise UnsupportedValueError(f"{path}: object key {key!r} is not a string")
                items[key] = cls.from_python(item, f"{path}.{key}")
            return cls(ValueKind.OBJECT, items)
        raise UnsupportedValueError(f"{path}: unsupported type {type(obj).__name__}")

    @classmethod
    def object(cls, items: dict | None = None) -> "JsonValue":
        """Shortcut for an object value built from plain Python."""
        return cls.from_python(items or {})

    def to_python(self) -> Any:
        """Convert back to plain Python suitable for ``json.dumps``."""
        if self.kind == ValueKind.ARRAY:
            return [item.to_python() for item in self.data]
        if self.kind == ValueKind.OBJECT:
            return {key: item.to_python() for key, item in self.data.items()}
        return self.data

    @property
    def is_object(self) -> bool:
        return self.kind == ValueKind.OBJECT
