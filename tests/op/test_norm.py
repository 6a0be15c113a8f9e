"""Tests for norms, normalizations and activations."""

from __future__ import annotations

import math

import numpy as np
import pytest

from opgraph.op import batch_norm, gelu, layer_norm, mish, new_scope, norm_abs_l1, norm_l1, norm_l2, ops, swish
from opgraph.runtime import Session


def run_single(build, value):
    s = new_scope()
    x = ops.const(s, np.asarray(value, dtype=np.float32))
    y = build(s, x)
    return Session(s.finalize()).run(fetches=[y])[0]


SAMPLE_NORMS = [[1.1, 2.2, 3.3], [9.1, 8.2, 7.3], [1, 1, 1]]
SAMPLE_NORMALIZE = [[1.1, 2.2, 3.3], [9.7, 8.8, 7.9], [1, 1, 1]]


def test_norm_l1():
    assert run_single(norm_l1, SAMPLE_NORMS) == pytest.approx(3.80, abs=1e-4)


def test_norm_abs_l1():
    assert run_single(norm_abs_l1, [[-1, 1], [-2, 2]]) == pytest.approx(1.5)


def test_reduction_wrappers_leave_builtins_alone():
    """Wrappers named after builtins carry a trailing underscore."""
    for builtin in ("abs", "pow", "sum", "max", "min"):
        assert not hasattr(ops, builtin)
    got = run_single(lambda s, x: ops.max_(s, ops.abs_(s, x), ops.const(s, 0)), [[-3.0, 1.0], [2.0, -0.5]])

    np.testing.assert_allclose(got, [3.0, 1.0])


def test_norm_l2():
    assert run_single(norm_l2, SAMPLE_NORMS) == pytest.approx(24.809, abs=1e-3)


def test_layer_norm():
    """Each row is normalized on its own."""
    got = run_single(layer_norm, SAMPLE_NORMALIZE)

    want = [[-1.22474, 0, 1.22474], [1.22474, 0, -1.22474], [0, 0, 0]]
    np.testing.assert_allclose(got, want, atol=1e-4)


def test_batch_norm():
    """Each column is normalized across the batch."""
    got = run_single(batch_norm, SAMPLE_NORMALIZE)

    want = [
        [-0.69481, -0.52489, -0.26726],
        [1.41414, 1.39971, 1.33631],
        [-0.71933, -0.87482, -1.06904],
    ]
    np.testing.assert_allclose(got, want, atol=1e-4)


# ============================================================================
# Test Activations
# ============================================================================

def test_swish():
    got = run_single(swish, [0.0, 1.0])

    np.testing.assert_allclose(got, [0.0, 1 / (1 + math.exp(-1))], rtol=1e-6)


def test_mish():
    got = run_single(mish, [1.0])

    np.testing.assert_allclose(got, [math.tanh(math.log1p(math.e))], rtol=1e-6)


def test_gelu():
    """gelu(0) = 0 and gelu(x) approaches x for large x."""
    got = run_single(gelu, [0.0, 6.0, -6.0])

    np.testing.assert_allclose(got, [0.0, 6.0, 0.0], atol=1e-5)
