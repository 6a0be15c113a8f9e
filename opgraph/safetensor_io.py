"""Reading and writing tensors in the safetensors interchange format.

The codec itself is the safetensors library. This module maps element
types to DataType and keeps the order in which tensors were written in the
file metadata, since the library lays tensors out by itself.
"""

from __future__ import annotations

import json
import logging
import struct
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
from safetensors import safe_open
from safetensors.numpy import load, save, save_file

from opgraph.errors import InvalidArgumentError, NotFoundError
from opgraph.runtime import DataType, Shape

logger = logging.getLogger(__name__)

# metadata key listing the tensor names in write order
ORDER_KEY = "opgraph.names"

_DTYPE_TO_SAFE = {
    DataType.BOOL: "BOOL",
    DataType.DOUBLE: "F64", DataType.FLOAT: "F32", DataType.HALF: "F16",
    DataType.INT64: "I64", DataType.INT32: "I32", DataType.INT16: "I16", DataType.INT8: "I8",
    DataType.UINT64: "U64", DataType.UINT32: "U32", DataType.UINT16: "U16", DataType.UINT8: "U8",
}
_SAFE_TO_DTYPE = {v: k for k, v in _DTYPE_TO_SAFE.items()}


def _prepare(tensors: Mapping[str, Any], names: Sequence[str] | None) -> tuple[dict[str, np.ndarray], dict[str, str]]:
    if names is None:
        names = sorted(tensors)
    arrays = {}
    for name in names:
        if name not in tensors:
            raise NotFoundError(f"tensor {name!r} not found for writing as safe tensor")
        array = np.asarray(tensors[name])
        try:
            dtype = DataType.from_numpy(array.dtype)
        except TypeError as err:
            raise InvalidArgumentError(f"dtype {array.dtype} is not supported for safe tensor {name!r}") from err
        if dtype not in _DTYPE_TO_SAFE:
            raise InvalidArgumentError(f"dtype {dtype} is not supported for safe tensor {name!r}")
        arrays[name] = np.ascontiguousarray(array)
    return arrays, {ORDER_KEY: json.dumps(list(names))}


def write_safetensors(path: str | Path, tensors: Mapping[str, Any], names: Sequence[str] | None = None) -> None:
    """
    Write tensors to a safetensors file.

    Args:
        path: Output file path
        tensors: Tensor name -> array
        names: Names of the tensors to write, in order. Defaults to all
            tensors in alphabetic order; tensors not named are skipped.

    Raises:
        NotFoundError: A name is missing from tensors
        InvalidArgumentError: A tensor has an unsupported element type
    """
    arrays, metadata = _prepare(tensors, names)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    save_file(arrays, str(path), metadata=metadata)
    logger.debug("wrote %d safe tensors to %s", len(arrays), path)


def safetensors_to_bytes(tensors: Mapping[str, Any], names: Sequence[str] | None = None) -> bytes:
    """In-memory variant of write_safetensors."""
    arrays, metadata = _prepare(tensors, names)
    return save(arrays, metadata=metadata)


def safetensors_from_bytes(data: bytes) -> dict[str, np.ndarray]:
    """Tensors of a safetensors buffer, in write order."""
    arrays = load(data)
    order = _read_order(_header_metadata(data), arrays)
    return {name: arrays[name] for name in order}


def _header_metadata(data: bytes) -> dict[str, str]:
    if len(data) < 8:
        raise InvalidArgumentError("safetensors buffer is too short")
    (header_len,) = struct.unpack("<Q", data[:8])
    header = json.loads(data[8:8 + header_len])
    return header.get("__metadata__") or {}


def _read_order(metadata: Mapping[str, str] | None, names: Any) -> list[str]:
    available = set(names)
    order = json.loads(metadata[ORDER_KEY]) if metadata and ORDER_KEY in metadata else []
    order = [n for n in order if n in available]
    return order + sorted(available.difference(order))


class SafeTensorLoader:
    """Lazy access to the tensors of a safetensors file.

    Args:
        path: File written by write_safetensors or any other safetensors writer
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        with safe_open(str(self.path), framework="np") as f:
            self._names = _read_order(f.metadata(), f.keys())
            self._info = {}
            for name in self._names:
                sl = f.get_slice(name)
                self._info[name] = (sl.get_dtype(), tuple(sl.get_shape()))

    def names(self) -> list[str]:
        """Tensor names in write order."""
        return list(self._names)

    def info(self, name: str) -> tuple[DataType, Shape]:
        """Element type and shape of the named tensor."""
        safe_type, dims = self._lookup(name)
        dtype = _SAFE_TO_DTYPE.get(safe_type)
        if dtype is None:
            raise InvalidArgumentError(f"unknown dtype {safe_type!r} for safe tensor name {name!r}")
        return dtype, Shape(dims)

    def load_tensor(self, name: str) -> np.ndarray:
        self.info(name)
        with safe_open(str(self.path), framework="np") as f:
            return f.get_tensor(name)

    def _lookup(self, name: str) -> tuple[str, tuple[int, ...]]:
        if name not in self._info:
            raise NotFoundError(f"safe tensor name {name!r} not found")
        return self._info[name]
