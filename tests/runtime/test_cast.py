"""Tests for element type conversion."""

from __future__ import annotations

import threading

import jax.numpy as jnp
import numpy as np
import pytest

from opgraph.runtime import CastContext, DataType, cast_tensor, default_cast_context


def test_cast_int_to_float():
    """Integers convert to floating point."""
    ctx = CastContext()
    got = ctx.cast(np.array([1, 2, 3], dtype=np.int32), DataType.FLOAT)

    assert got.dtype == np.float32
    np.testing.assert_array_equal(got, [1.0, 2.0, 3.0])


def test_cast_same_type_is_identity():
    """No graph work happens when the type already matches."""
    ctx = CastContext()
    value = np.array([1.5], dtype=np.float32)

    assert ctx.cast(value, DataType.FLOAT) is value


def test_cast_bfloat16_to_double():
    """bfloat16 values widen to float64."""
    value = np.array([321, 32.1, 3.21], dtype=jnp.bfloat16)

    got = cast_tensor(DataType.DOUBLE, value)

    assert got.dtype == np.float64
    np.testing.assert_allclose(got, [321.0, 32.0, 3.21], rtol=1e-2)


def test_cast_pairs_are_reused():
    """One placeholder/cast pair exists per type pair."""
    ctx = CastContext()
    ctx.cast(np.int32(1), DataType.DOUBLE)
    ctx.cast(np.int32(2), DataType.DOUBLE)
    ctx.cast(np.int8(2), DataType.DOUBLE)

    assert len(ctx._graph) == 4


def test_new_tensor_uses_cast():
    """DataType.new_tensor converts host values."""
    got = DataType.INT8.new_tensor([1.0, -2.0])

    assert got.dtype == np.int8
    np.testing.assert_array_equal(got, [1, -2])


def test_default_context_is_shared():
    """Concurrent first use creates exactly one default context."""
    seen = []

    def grab():
        seen.append(default_cast_context())

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({id(c) for c in seen}) == 1
    assert cast_tensor(DataType.INT64, np.int32(5)) == pytest.approx(5)
