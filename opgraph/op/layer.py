"""Dense layers and activations."""

from __future__ import annotations

import math
from typing import Callable

from opgraph.runtime import DataType, Output, make_shape

from . import ops
from .scope import Scope, VarTag

ActFunc = Callable[[Scope, Output], Output]


def flatten(s: Scope, x: Output) -> Output | None:
    """Reshape x to one dimension."""
    return ops.reshape(s, x, ops.const(s, [-1], DataType.INT64))


def linear(s: Scope, x: Output, out_dim: int, *tags: VarTag) -> Output | None:
    """Linear projection of the last dimension of x to out_dim.

    The weight variable is by default trainable with L2 weight decay and
    Xavier initialization. Pass tags to select other behaviours.
    """
    if s.err is not None:
        return None
    shape = make_shape(x.shape().size(-1), out_dim)
    dense = ops.variable_v2(s, shape, x.data_type())
    if not tags:
        tags = (VarTag.INIT_XAVIER_NORMAL, VarTag.TRAINABLE, VarTag.DECAY_L2)
    s.tag_variable(dense, *tags)
    checked = ops.check_numerics(s, dense, dense.op.name)
    return ops.batch_mat_mul_v3(s, x, checked, x.data_type())


def bias(s: Scope, x: Output, *tags: VarTag) -> Output | None:
    """Add a bias of the shape of x.

    The bias is by default trainable with L1 weight decay and initialized
    with small uniform values.
    """
    if s.err is not None:
        return None
    b = ops.variable_v2(s, x.shape(), x.data_type())
    if not tags:
        tags = (VarTag.INIT_EPS_UNIFORM, VarTag.TRAINABLE, VarTag.DECAY_L1)
    s.tag_variable(b, *tags)
    checked = ops.check_numerics(s, b, b.op.name)
    return ops.add(s, x, checked)


def mlp(s: Scope, x: Output, out_dim: int, act: ActFunc | None = None, *tags: VarTag) -> Output | None:
    """Linear projection, followed by a bias and act when act is given."""
    y = linear(s, x, out_dim, *tags)
    if act is not None:
        y = bias(s, y, *tags)
        y = act(s, y)
    return y


def swish(s: Scope, x: Output) -> Output | None:
    """x * sigmoid(x)"""
    return ops.mul(s, x, ops.sigmoid(s, x))


def mish(s: Scope, x: Output) -> Output | None:
    """x * tanh(softplus(x))"""
    return ops.mul(s, x, ops.tanh(s, ops.softplus(s, x)))


def gelu(s: Scope, x: Output) -> Output | None:
    """Gaussian error linear unit, tanh approximation.

    0.5 * x * (1 + tanh(sqrt(2 / pi) * (x + 0.044715 * x^3)))
    """
    if s.err is not None:
        return None
    dtype = x.data_type()
    one = ops.const(s, 1.0, dtype)
    half = ops.const(s, 0.5, dtype)
    scale = ops.const(s, math.sqrt(2 / math.pi), dtype)
    coeff = ops.const(s, 0.044715, dtype)
    y = ops.mul(s, coeff, ops.mul(s, x, ops.mul(s, x, x)))
    y = ops.mul(s, scale, ops.add(s, x, y))
    return ops.mul(s, ops.mul(s, half, x), ops.add(s, one, ops.tanh(s, y)))
