"""Element types of the graph type system."""

from __future__ import annotations

import enum
from typing import Any

import jax.numpy as jnp
import numpy as np


class DataType(enum.IntEnum):
    """Type of one tensor element, numbered like the TensorFlow type codes."""
    FLOAT = 1
    DOUBLE = 2
    INT32 = 3
    UINT8 = 4
    INT16 = 5
    INT8 = 6
    STRING = 7
    COMPLEX64 = 8
    INT64 = 9
    BOOL = 10
    BFLOAT16 = 14
    UINT16 = 17
    COMPLEX128 = 18
    HALF = 19
    RESOURCE = 20
    VARIANT = 21
    UINT32 = 22
    UINT64 = 23

    def __str__(self) -> str:
        name = _DTYPE_NAMES.get(self)
        if name is None:
            raise ValueError(f"unknown name for dtype={int(self)}")
        return name

    @property
    def proto_name(self) -> str:
        """Name in the wire form, e.g. ``DT_INT8``."""
        return "DT_" + self.name

    @property
    def byte_size(self) -> int:
        """Byte size of one raw element."""
        return self.to_numpy().itemsize

    @property
    def is_floating(self) -> bool:
        return self in (DataType.FLOAT, DataType.DOUBLE, DataType.HALF, DataType.BFLOAT16)

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_TYPES

    def to_numpy(self) -> np.dtype:
        """Numpy dtype holding elements of this type."""
        np_type = _DTYPE_TO_NUMPY.get(self)
        if np_type is None:
            raise TypeError(f"dtype {self.proto_name} has no array representation")
        return np.dtype(np_type)

    @classmethod
    def from_numpy(cls, dtype: Any) -> DataType:
        """Map a numpy (or jax) dtype to a DataType."""
        dtype = np.dtype(dtype)
        for dt, np_type in _DTYPE_TO_NUMPY.items():
            if np.dtype(np_type) == dtype:
                return dt
        raise TypeError(f"unsupported array dtype {dtype}")

    def new_tensor(self, value: Any) -> np.ndarray:
        """Convert a host value to an array of this type.

        Conversions run through the default cast context so that casting
        follows the graph runtime's Cast semantics.
        """
        from .cast import default_cast_context
        from .tensor import as_array

        return default_cast_context().cast(as_array(np.asarray(value)), self)


_DTYPE_TO_NUMPY = {
    DataType.FLOAT: np.float32,
    DataType.DOUBLE: np.float64,
    DataType.HALF: np.float16,
    DataType.BFLOAT16: jnp.bfloat16,
    DataType.INT64: np.int64,
    DataType.INT32: np.int32,
    DataType.INT16: np.int16,
    DataType.INT8: np.int8,
    DataType.UINT64: np.uint64,
    DataType.UINT32: np.uint32,
    DataType.UINT16: np.uint16,
    DataType.UINT8: np.uint8,
    DataType.BOOL: np.bool_,
    DataType.COMPLEX64: np.complex64,
    DataType.COMPLEX128: np.complex128,
}

_DTYPE_NAMES = {
    DataType.DOUBLE: "float64", DataType.FLOAT: "float32", DataType.HALF: "float16",
    DataType.BFLOAT16: "bfloat16",
    DataType.INT64: "int64", DataType.INT32: "int32", DataType.INT16: "int16", DataType.INT8: "int8",
    DataType.UINT64: "uint64", DataType.UINT32: "uint32", DataType.UINT16: "uint16",
    DataType.UINT8: "uint8",
    DataType.BOOL: "bool", DataType.COMPLEX128: "complex128", DataType.COMPLEX64: "complex64",
    DataType.STRING: "string", DataType.VARIANT: "variant", DataType.RESOURCE: "resource",
}

_INTEGER_TYPES = frozenset({
    DataType.INT64, DataType.INT32, DataType.INT16, DataType.INT8,
    DataType.UINT64, DataType.UINT32, DataType.UINT16, DataType.UINT8,
})

# Short aliases used throughout the op wrappers
FLOAT = DataType.FLOAT
DOUBLE = DataType.DOUBLE
INT32 = DataType.INT32
INT64 = DataType.INT64
INT8 = DataType.INT8
BOOL = DataType.BOOL
