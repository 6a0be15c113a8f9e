"""Marshaling of host values into arrays."""

from __future__ import annotations

from typing import Any

import jax
import numpy as np

from opgraph.errors import InvalidArgumentError

from .dtypes import DataType


def as_array(value: Any, dtype: DataType | None = None) -> np.ndarray:
    """Convert a host value to a numpy array.

    Python ints become int32 (int64 when a value does not fit) and python
    floats float32 unless a dtype is requested, numpy and jax values keep
    their dtype.

    Args:
        value: Scalar, nested sequence, numpy or jax array
        dtype: Optional target type

    Returns:
        array: numpy array holding the value
    """
    if isinstance(value, (np.ndarray, np.generic, jax.Array)):
        array = np.asarray(value)
    else:
        try:
            array = np.asarray(value)
        except ValueError as err:
            raise InvalidArgumentError(f"cannot convert {type(value).__name__} to a tensor: {err}") from err
        if dtype is None and array.dtype == np.int64 and _fits_int32(array):
            array = array.astype(np.int32)
        elif dtype is None and array.dtype == np.float64:
            array = array.astype(np.float32)

    if array.dtype == object or array.dtype.kind in "US":
        raise InvalidArgumentError(f"unsupported tensor value of dtype {array.dtype}")

    if dtype is not None:
        array = array.astype(dtype.to_numpy())
    return array


def _fits_int32(array: np.ndarray) -> bool:
    bounds = np.iinfo(np.int32)
    return array.size == 0 or (array.min() >= bounds.min and array.max() <= bounds.max)


def data_type_of(array: Any) -> DataType:
    """DataType of an array-like value."""
    return DataType.from_numpy(np.asarray(array).dtype)
