"""Codec for operation and function attribute values.

Attribute values are encoded into tagged JSON objects, e.g.
``{"type": 1}`` for a DataType or ``{"func": "body_3f2a"}`` for a function
reference. The serialized (bytes) form of one attribute value is the
canonical JSON rendering of that object.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any

import numpy as np

from opgraph.errors import InvalidArgumentError

from .dtypes import DataType
from .shape import Shape


@dataclass(frozen=True)
class FuncRef:
    """Reference to a function by name, used as attribute value."""
    name: str


def encode_attr(value: Any) -> dict[str, Any]:
    """Encode an attribute value into a tagged JSON object."""
    if isinstance(value, DataType):
        return {"type": int(value)}
    if isinstance(value, Shape):
        return {"shape": None if value.dims is None else list(value.dims)}
    if isinstance(value, FuncRef):
        return {"func": value.name}
    if isinstance(value, np.ndarray):
        return {"tensor": _encode_tensor(value)}
    if isinstance(value, (bool, np.bool_)):
        return {"b": bool(value)}
    if isinstance(value, (int, np.integer)):
        return {"i": int(value)}
    if isinstance(value, (float, np.floating)):
        return {"f": float(value)}
    if isinstance(value, str):
        return {"s": value}
    if isinstance(value, bytes):
        return {"bytes": base64.b64encode(value).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return {"list": [encode_attr(v) for v in value]}
    raise InvalidArgumentError(f"unsupported attribute value of type {type(value).__name__}")


def decode_attr(obj: dict[str, Any]) -> Any:
    """Inverse of encode_attr."""
    if not isinstance(obj, dict) or len(obj) != 1:
        raise InvalidArgumentError(f"malformed attribute value: {obj!r}")
    (tag, value), = obj.items()
    if tag == "type":
        return DataType(value)
    if tag == "shape":
        return Shape(value)
    if tag == "func":
        return FuncRef(value)
    if tag == "tensor":
        return _decode_tensor(value)
    if tag == "b":
        return bool(value)
    if tag == "i":
        return int(value)
    if tag == "f":
        return float(value)
    if tag == "s":
        return str(value)
    if tag == "bytes":
        return base64.b64decode(value)
    if tag == "list":
        return [decode_attr(v) for v in value]
    raise InvalidArgumentError(f"unknown attribute tag {tag!r}")


def canonical_json(obj: Any) -> bytes:
    """Deterministic JSON rendering (sorted keys, compact separators)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("utf-8")


def encode_attr_value(value: Any) -> bytes:
    """Serialize one attribute value to its opaque blob form."""
    return canonical_json(encode_attr(value))


def decode_attr_value(blob: bytes) -> Any:
    """Parse a blob produced by encode_attr_value.

    A zero-length blob stands for "no attribute" and decodes to None.
    """
    if len(blob) == 0:
        return None
    try:
        obj = json.loads(blob.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise InvalidArgumentError(f"malformed attribute blob: {err}") from err
    return decode_attr(obj)


def _encode_tensor(array: np.ndarray) -> dict[str, Any]:
    dtype = DataType.from_numpy(array.dtype)
    data = np.ascontiguousarray(array)
    return {
        "dtype": int(dtype),
        "shape": list(array.shape),
        "content": base64.b64encode(data.tobytes()).decode("ascii"),
    }


def _decode_tensor(obj: dict[str, Any]) -> np.ndarray:
    dtype = DataType(obj["dtype"]).to_numpy()
    raw = base64.b64decode(obj["content"])
    array = np.frombuffer(raw, dtype=dtype).copy()
    return array.reshape(obj["shape"])
