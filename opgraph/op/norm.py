"""Norms and normalizations."""

from __future__ import annotations

from typing import Callable

from opgraph.runtime import DataType, Output

from . import ops
from .layer import flatten
from .scope import Scope

NormFunc = Callable[[Scope, Output], Output]

EPSILON = 1e-6


def norm_l1(s: Scope, x: Output) -> Output | None:
    """Mean of the elements of x."""
    axis0 = ops.const(s, 0)
    return ops.mean(s, flatten(s, x), axis0)


def norm_abs_l1(s: Scope, x: Output) -> Output | None:
    """Mean of the absolute elements of x."""
    axis0 = ops.const(s, 0)
    return ops.mean(s, ops.abs_(s, flatten(s, x)), axis0)


def norm_l2(s: Scope, x: Output) -> Output | None:
    """Mean of the squared elements of x."""
    axis0 = ops.const(s, 0)
    return ops.mean(s, ops.square(s, flatten(s, x)), axis0)


def _normalize(s: Scope, x: Output, centered: Output, mean1: Output, mean2: Output) -> Output | None:
    eps = ops.const(s, EPSILON, x.data_type())
    rvari = ops.rsqrt(s, ops.add(s, eps, ops.sub(s, mean2, ops.square(s, mean1))))
    return ops.mul(s, rvari, centered)


def layer_norm(s: Scope, x: Output) -> Output | None:
    """Normalize each batch element of x to zero mean and unit variance."""
    if s.err is not None:
        return None
    batches = x.shape().size(0)
    rows = ops.reshape(s, x, ops.const(s, [batches, -1], DataType.INT64))
    axis1 = ops.const(s, 1)
    mean1 = ops.mean(s, rows, axis1, keep_dims=True)
    mean2 = ops.mean(s, ops.square(s, rows), axis1, keep_dims=True)
    return _normalize(s, x, ops.sub(s, x, mean1), mean1, mean2)


def batch_norm(s: Scope, x: Output) -> Output | None:
    """Normalize x along the batch axis."""
    if s.err is not None:
        return None
    axis0 = ops.const(s, 0)
    mean1 = ops.mean(s, x, axis0)
    mean2 = ops.mean(s, ops.square(s, x), axis0)
    return _normalize(s, x, ops.sub(s, x, mean1), mean1, mean2)
