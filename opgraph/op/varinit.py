"""Initialization of tagged variables."""

from __future__ import annotations

import math

from opgraph.errors import OpGraphError
from opgraph.runtime import DataType, Operation, Output

from . import ops
from .scope import Scope, VarTag

# order in which initializers are added by get_init_op
INIT_TAGS = (
    VarTag.INIT_ZEROS, VarTag.INIT_ONES,
    VarTag.INIT_UNIFORM, VarTag.INIT_EPS_UNIFORM, VarTag.INIT_TRUNC_NORMAL,
    VarTag.INIT_HE_UNIFORM, VarTag.INIT_HE_NORMAL,
    VarTag.INIT_LECUN_UNIFORM, VarTag.INIT_LECUN_NORMAL,
    VarTag.INIT_XAVIER_UNIFORM, VarTag.INIT_XAVIER_NORMAL,
)


def get_init_op(s: Scope) -> Operation | None:
    """NoOp depending on the initialization of every initializer-tagged variable.

    Variables are visited tag by tag in INIT_TAGS order, then in registration
    order. Operations tagged INIT_ASSIGN are added as they are.
    """
    if s.err is not None:
        return None
    init_ops = []
    for tag in INIT_TAGS:
        for x in s.get_params(tag):
            init_ops.append(_init_op(s, x, tag))
    for x in s.get_params(VarTag.INIT_ASSIGN):
        init_ops.append(x.op)
    return ops.no_op(s.with_control_dependencies(*init_ops))


def _init_op(s: Scope, x: Output, tag: VarTag) -> Operation | None:
    try:
        dtype = x.op.attr("dtype")
        dims = x.op.attr("shape").must_list()
    except OpGraphError as err:
        s.update_err(x.op.type, err)
        raise s.err from err
    fan_in = dims[0] if dims else 1
    fan_out = dims[-1] if dims else 1
    shape = ops.const(s, dims, DataType.INT32)

    if tag == VarTag.INIT_ZEROS:
        y = ops.zeros_like(s, ops.empty(s, shape, dtype))
    elif tag == VarTag.INIT_ONES:
        y = ops.ones_like(s, ops.empty(s, shape, dtype))
    elif tag == VarTag.INIT_UNIFORM:
        y = ops.random_uniform(s, shape, dtype)
    elif tag == VarTag.INIT_EPS_UNIFORM:
        y = ops.mul(s, ops.random_uniform(s, shape, dtype), ops.const(s, 1e-4, dtype))
    elif tag == VarTag.INIT_TRUNC_NORMAL:
        y = ops.truncated_normal(s, shape, dtype)
    elif tag == VarTag.INIT_HE_UNIFORM:
        y = _symmetric_uniform(s, shape, dtype, math.sqrt(6 / fan_in))
    elif tag == VarTag.INIT_HE_NORMAL:
        std = math.sqrt(2 / fan_in)
        y = ops.parameterized_truncated_normal(
            s, shape,
            ops.const(s, 0.0, dtype), ops.const(s, std, dtype),
            ops.const(s, -2 * std, dtype), ops.const(s, 2 * std, dtype),
        )
    elif tag == VarTag.INIT_LECUN_UNIFORM:
        y = _symmetric_uniform(s, shape, dtype, math.sqrt(3 / fan_in))
    elif tag == VarTag.INIT_LECUN_NORMAL:
        y = ops.mul(s, ops.truncated_normal(s, shape, dtype), ops.const(s, math.sqrt(1 / fan_in), dtype))
    elif tag == VarTag.INIT_XAVIER_UNIFORM:
        y = _symmetric_uniform(s, shape, dtype, math.sqrt(6 / (fan_in + fan_out)))
    elif tag == VarTag.INIT_XAVIER_NORMAL:
        std = math.sqrt(2 / (fan_in + fan_out))
        y = ops.mul(s, ops.truncated_normal(s, shape, dtype), ops.const(s, std, dtype))
    else:
        raise ValueError(f"init tag {tag} is not an initializer")

    assigned = ops.assign(s, x, y)
    return None if assigned is None else assigned.op


def _symmetric_uniform(s: Scope, shape: Output, dtype: DataType, limit: float) -> Output | None:
    """Uniform values in [-limit, limit)."""
    u = ops.random_uniform(s, shape, dtype)
    return ops.sub(s, ops.mul(s, u, ops.const(s, 2 * limit, dtype)), ops.const(s, limit, dtype))
