"""Standard operation types and their jax.numpy kernels.

Importing this module registers every operation below in the global op
registry.
"""

from __future__ import annotations

from typing import Any, Callable

import jax
import jax.numpy as jnp
import numpy as np

from opgraph.errors import InvalidArgumentError, NotFoundError, UnimplementedError

from .attrs import FuncRef
from .dtypes import DataType
from .registry import FunctionLibrary, InputInfo, KernelContext, OpDef, register_op
from .shape import Shape, unknown_shape

FLOATS = (DataType.FLOAT, DataType.DOUBLE, DataType.HALF, DataType.BFLOAT16)
INDICES = (DataType.INT32, DataType.INT64)


def _static_ints(value: Any) -> tuple[int, ...]:
    return tuple(int(v) for v in np.atleast_1d(np.asarray(value)).tolist())


def _const_shape(info: InputInfo) -> Shape:
    if info.value is None:
        if info.shape.dims is not None and len(info.shape.dims) == 1 and info.shape.dims[0] >= 0:
            return Shape([-1] * info.shape.dims[0])
        return unknown_shape()
    return Shape(_static_ints(info.value))


def _elementwise(name: str, fn: Callable[[Any], Any], allowed: tuple[DataType, ...] | None = None) -> None:
    register_op(OpDef(
        name=name,
        inputs=("x",),
        kernel=lambda ctx, x: fn(x),
        allowed={"x": allowed} if allowed else {},
    ))


def _binary(name: str, fn: Callable[[Any, Any], Any], out_dtype: DataType | None = None) -> None:
    register_op(OpDef(
        name=name,
        inputs=("x", "y"),
        kernel=lambda ctx, x, y: fn(x, y),
        same_type=("x", "y"),
        out_dtypes=(lambda attrs, inputs: [out_dtype]) if out_dtype else None,
    ))


# Sources

def _const_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    value = np.asarray(attrs["value"])
    dtype = attrs["dtype"]
    if DataType.from_numpy(value.dtype) != dtype:
        raise InvalidArgumentError(
            f"Const value has type {DataType.from_numpy(value.dtype).proto_name}, attr dtype is {dtype.proto_name}"
        )
    return [(dtype, Shape(value.shape))]


register_op(OpDef(
    name="Const",
    kernel=lambda ctx: jnp.asarray(ctx.attr("value")),
    required_attrs=("value", "dtype"),
    infer=_const_infer,
))


def _placeholder_kernel(ctx: KernelContext) -> Any:
    raise InvalidArgumentError(
        f"You must feed a value for placeholder tensor {ctx.node_name!r} "
        f"with dtype {ctx.attr('dtype')}"
    )


register_op(OpDef(
    name="Placeholder",
    kernel=_placeholder_kernel,
    required_attrs=("dtype",),
    infer=lambda attrs, inputs, library: [(attrs["dtype"], attrs.get("shape", unknown_shape()))],
    stateful=True,
))

register_op(OpDef(name="NoOp", num_outputs=0))
register_op(OpDef(name="Identity", inputs=("input",), kernel=lambda ctx, x: x))

# Elementwise math

_elementwise("Neg", jnp.negative)
_elementwise("Abs", jnp.abs)
_elementwise("Square", jnp.square)
_elementwise("Sqrt", jnp.sqrt, FLOATS)
_elementwise("Rsqrt", jax.lax.rsqrt, FLOATS)
_elementwise("Exp", jnp.exp, FLOATS)
_elementwise("Log", jnp.log, FLOATS)
_elementwise("Tanh", jnp.tanh, FLOATS)
_elementwise("Sigmoid", jax.nn.sigmoid, FLOATS)
_elementwise("Softplus", jax.nn.softplus, FLOATS)
_elementwise("Relu", jax.nn.relu)
_elementwise("ZerosLike", jnp.zeros_like)
_elementwise("OnesLike", jnp.ones_like)


def _div(x: Any, y: Any) -> Any:
    if jnp.issubdtype(x.dtype, jnp.integer):
        x, y = jnp.broadcast_arrays(x, y)
        return jax.lax.div(x, y)
    return jnp.true_divide(x, y)


def _div_no_nan(x: Any, y: Any) -> Any:
    zero = y == 0
    safe_y = jnp.where(zero, jnp.ones_like(y), y)
    return jnp.where(zero, jnp.zeros_like(x / safe_y), x / safe_y)


_binary("Add", jnp.add)
_binary("AddV2", jnp.add)
_binary("Sub", jnp.subtract)
_binary("Mul", jnp.multiply)
_binary("Div", _div)
_binary("DivNoNan", _div_no_nan)
_binary("Pow", jnp.power)
_binary("Maximum", jnp.maximum)
_binary("Minimum", jnp.minimum)
_binary("Less", jnp.less, DataType.BOOL)
_binary("Greater", jnp.greater, DataType.BOOL)
_binary("Equal", jnp.equal, DataType.BOOL)

register_op(OpDef(
    name="ClipByValue",
    inputs=("t", "clip_value_min", "clip_value_max"),
    kernel=lambda ctx, t, lo, hi: jnp.clip(t, lo, hi),
    same_type=("t", "clip_value_min", "clip_value_max"),
))

register_op(OpDef(
    name="Cast",
    inputs=("x",),
    kernel=lambda ctx, x: jnp.asarray(x).astype(ctx.attr("DstT").to_numpy()),
    required_attrs=("DstT",),
    out_dtypes=lambda attrs, inputs: [attrs["DstT"]],
))


def _check_numerics(ctx: KernelContext, tensor: Any) -> Any:
    finite = jnp.all(jnp.isfinite(tensor))
    try:
        finite = bool(finite)
    except jax.errors.ConcretizationTypeError:
        # traced under eval_shape or grad
        return tensor
    if not finite:
        raise InvalidArgumentError(f"{ctx.attr('message', '')} : Tensor had NaN or Inf values")
    return tensor


register_op(OpDef(
    name="CheckNumerics",
    inputs=("tensor",),
    kernel=_check_numerics,
    allowed={"tensor": FLOATS},
))

register_op(OpDef(
    name="L2Loss",
    inputs=("t",),
    kernel=lambda ctx, t: jnp.sum(jnp.square(t)) / 2,
    allowed={"t": FLOATS},
))

# Shapes and layout

register_op(OpDef(
    name="Reshape",
    inputs=("tensor", "shape"),
    kernel=lambda ctx, tensor, shape: jnp.reshape(tensor, _static_ints(shape)),
    allowed={"shape": INDICES},
))

register_op(OpDef(
    name="Shape",
    inputs=("input",),
    kernel=lambda ctx, x: jnp.asarray(jnp.shape(x), dtype=ctx.attr("out_type", DataType.INT32).to_numpy()),
    out_dtypes=lambda attrs, inputs: [attrs.get("out_type", DataType.INT32)],
))


def _reduction(name: str, fn: Callable[..., Any], keep_type: bool = False) -> None:
    def kernel(ctx: KernelContext, x: Any, axis: Any) -> Any:
        result = fn(x, axis=_static_ints(axis), keepdims=bool(ctx.attr("keep_dims", False)))
        return result.astype(x.dtype) if keep_type else result

    register_op(OpDef(
        name=name,
        inputs=("input", "reduction_indices"),
        kernel=kernel,
        allowed={"reduction_indices": INDICES},
    ))


_reduction("Mean", jnp.mean, keep_type=True)
_reduction("Sum", jnp.sum, keep_type=True)
_reduction("Max", jnp.max)
_reduction("Min", jnp.min)

register_op(OpDef(
    name="Pack",
    inputs=("*values",),
    kernel=lambda ctx, values: jnp.stack(values, axis=int(ctx.attr("axis", 0))),
    same_type=("values",),
))

register_op(OpDef(
    name="ConcatV2",
    inputs=("*values", "axis"),
    kernel=lambda ctx, values, axis: jnp.concatenate(values, axis=int(np.asarray(axis))),
    same_type=("values",),
    allowed={"axis": INDICES},
))

register_op(OpDef(
    name="Split",
    inputs=("split_dim", "value"),
    kernel=lambda ctx, axis, value: jnp.split(value, int(ctx.attr("num_split")), axis=int(np.asarray(axis))),
    num_outputs=lambda attrs, inputs: int(attrs["num_split"]),
    required_attrs=("num_split",),
    allowed={"split_dim": (DataType.INT32,)},
    out_dtypes=lambda attrs, inputs: [inputs[1].dtype] * int(attrs["num_split"]),
))

register_op(OpDef(
    name="Fill",
    inputs=("dims", "value"),
    kernel=lambda ctx, dims, value: jnp.full(_static_ints(dims), value),
    allowed={"dims": INDICES},
    out_dtypes=lambda attrs, inputs: [inputs[1].dtype],
))

register_op(OpDef(
    name="Empty",
    inputs=("shape",),
    kernel=lambda ctx, shape: jnp.zeros(_static_ints(shape), dtype=ctx.attr("dtype").to_numpy()),
    required_attrs=("dtype",),
    allowed={"shape": (DataType.INT32,)},
    infer=lambda attrs, inputs, library: [(attrs["dtype"], _const_shape(inputs[0]))],
))


def _matmul(ctx: KernelContext, a: Any, b: Any) -> Any:
    if ctx.attr("transpose_a", False):
        a = jnp.swapaxes(a, -1, -2)
    if ctx.attr("transpose_b", False):
        b = jnp.swapaxes(b, -1, -2)
    return jnp.matmul(a, b)


def _batch_matmul(ctx: KernelContext, x: Any, y: Any) -> Any:
    if ctx.attr("adj_x", False):
        x = jnp.conj(jnp.swapaxes(x, -1, -2))
    if ctx.attr("adj_y", False):
        y = jnp.conj(jnp.swapaxes(y, -1, -2))
    return jnp.matmul(x, y).astype(ctx.attr("Tout").to_numpy())


register_op(OpDef(name="MatMul", inputs=("a", "b"), kernel=_matmul, same_type=("a", "b")))
register_op(OpDef(
    name="BatchMatMulV3",
    inputs=("x", "y"),
    kernel=_batch_matmul,
    required_attrs=("Tout",),
    out_dtypes=lambda attrs, inputs: [attrs["Tout"]],
))

# Random numbers

def _random_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    return [(attrs["dtype"], _const_shape(inputs[0]))]


register_op(OpDef(
    name="RandomUniform",
    inputs=("shape",),
    kernel=lambda ctx, shape: jax.random.uniform(
        ctx.next_key(), _static_ints(shape), dtype=ctx.attr("dtype").to_numpy()),
    required_attrs=("dtype",),
    allowed={"shape": INDICES},
    infer=_random_infer,
    stateful=True,
))

register_op(OpDef(
    name="TruncatedNormal",
    inputs=("shape",),
    kernel=lambda ctx, shape: jax.random.truncated_normal(
        ctx.next_key(), -2.0, 2.0, _static_ints(shape), dtype=ctx.attr("dtype").to_numpy()),
    required_attrs=("dtype",),
    allowed={"shape": INDICES},
    infer=_random_infer,
    stateful=True,
))


def _parameterized_truncated_normal(ctx: KernelContext, shape: Any, means: Any, stdevs: Any,
                                    minvals: Any, maxvals: Any) -> Any:
    lower = (minvals - means) / stdevs
    upper = (maxvals - means) / stdevs
    unit = jax.random.truncated_normal(ctx.next_key(), lower, upper, _static_ints(shape), dtype=means.dtype)
    return means + stdevs * unit


register_op(OpDef(
    name="ParameterizedTruncatedNormal",
    inputs=("shape", "means", "stdevs", "minvals", "maxvals"),
    kernel=_parameterized_truncated_normal,
    same_type=("means", "stdevs", "minvals", "maxvals"),
    allowed={"shape": INDICES, "means": FLOATS},
    infer=lambda attrs, inputs, library: [(inputs[1].dtype, _const_shape(inputs[0]))],
    stateful=True,
))

# Variables

register_op(OpDef(
    name="VariableV2",
    kernel=lambda ctx: ctx.read_variable(),
    required_attrs=("shape", "dtype"),
    infer=lambda attrs, inputs, library: [(attrs["dtype"], attrs["shape"])],
    stateful=True,
))


def _assign_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    ref, value = inputs
    if attrs.get("validate_shape", True) and not ref.shape.is_compatible_with(value.shape):
        raise InvalidArgumentError(
            f"Shapes must be equal rank and compatible, but are {ref.shape} and {value.shape}"
        )
    return [(ref.dtype, ref.shape if ref.shape.is_fully_specified else value.shape)]


def _assign_op(name: str, update: Callable[[Any, Any], Any] | None) -> None:
    def kernel(ctx: KernelContext, ref: Any, value: Any) -> Any:
        if update is not None:
            value = update(ctx.read_ref(), value)
        return ctx.write_ref(value)

    register_op(OpDef(
        name=name,
        inputs=("ref", "value"),
        kernel=kernel,
        same_type=("ref", "value"),
        ref_inputs=("ref",),
        infer=_assign_infer,
        stateful=True,
    ))


_assign_op("Assign", None)
_assign_op("AssignAdd", jnp.add)
_assign_op("AssignSub", jnp.subtract)

# Gradients

def _symbolic_gradients(ctx: KernelContext, ys: list[Any], xs: list[Any]) -> list[Any]:
    if not ctx.input_handles:
        raise UnimplementedError("SymbolicGradients is only supported at graph level, not inside functions")
    y_handles = ctx.input_handles[:len(ys)]
    x_handles = ctx.input_handles[len(ys):]

    def total(x_values: list[Any]) -> Any:
        values = ctx.evaluate(y_handles, dict(zip(x_handles, x_values)))
        return sum(jnp.sum(v) for v in values)

    return list(jax.grad(total)(list(xs)))


register_op(OpDef(
    name="SymbolicGradients",
    inputs=("*ys", "*xs"),
    kernel=_symbolic_gradients,
    allowed={"ys": FLOATS, "xs": FLOATS},
    infer=lambda attrs, inputs, library: [(x.dtype, x.shape) for x in inputs[1]],
    stateful=True,
))

# Functional control flow

def _check_signature(library: FunctionLibrary, ref: Any, attr: str,
                     inputs: list[DataType], outputs: list[DataType] | None) -> list[DataType]:
    if not isinstance(ref, FuncRef):
        raise InvalidArgumentError(f"attr {attr!r} must reference a function")
    if ref.name not in library:
        raise NotFoundError(f"function {ref.name!r} for attr {attr!r} is not registered in the graph")
    sig = library.get(ref.name).signature
    got_in = [a.type for a in sig.input_arg]
    if got_in != inputs:
        raise InvalidArgumentError(
            f"function {ref.name!r} takes {[str(t) for t in got_in]}, expected {[str(t) for t in inputs]}"
        )
    got_out = [a.type for a in sig.output_arg]
    if outputs is not None and got_out != outputs:
        raise InvalidArgumentError(
            f"function {ref.name!r} returns {[str(t) for t in got_out]}, expected {[str(t) for t in outputs]}"
        )
    return got_out


def _while_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    types = [i.dtype for i in inputs[0]]
    _check_signature(library, attrs.get("cond"), "cond", types, None)
    _check_signature(library, attrs.get("body"), "body", types, types)
    return [(i.dtype, i.shape) for i in inputs[0]]


def _while(ctx: KernelContext, values: list[Any]) -> list[Any]:
    cond, body = ctx.attr("cond").name, ctx.attr("body").name
    values = list(values)
    while bool(np.asarray(ctx.call_function(cond, values)[0])):
        values = ctx.call_function(body, values)
    return values


register_op(OpDef(
    name="While",
    inputs=("*input",),
    kernel=_while,
    required_attrs=("cond", "body"),
    infer=_while_infer,
))


def _for_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    types = [i.dtype for i in inputs[3]]
    _check_signature(library, attrs.get("body"), "body", [DataType.INT32, *types], types)
    return [(i.dtype, i.shape) for i in inputs[3]]


def _for(ctx: KernelContext, start: Any, limit: Any, delta: Any, values: list[Any]) -> list[Any]:
    body = ctx.attr("body").name
    start, limit, delta = int(np.asarray(start)), int(np.asarray(limit)), int(np.asarray(delta))
    if delta == 0:
        raise InvalidArgumentError("For loop delta must not be zero")
    values = list(values)
    for i in range(start, limit, delta):
        values = ctx.call_function(body, [jnp.asarray(i, dtype=jnp.int32), *values])
    return values


register_op(OpDef(
    name="For",
    inputs=("start", "limit", "delta", "*input"),
    kernel=_for,
    required_attrs=("body",),
    same_type=("start", "limit", "delta"),
    allowed={"start": (DataType.INT32,)},
    infer=_for_infer,
))


def _if_infer(attrs: dict[str, Any], inputs: list[Any], library: FunctionLibrary) -> list:
    types = [i.dtype for i in inputs[1]]
    out = _check_signature(library, attrs.get("then_branch"), "then_branch", types, None)
    _check_signature(library, attrs.get("else_branch"), "else_branch", types, out)
    return [(t, unknown_shape()) for t in out]


def _if(ctx: KernelContext, cond: Any, values: list[Any]) -> list[Any]:
    branch = "then_branch" if bool(np.asarray(cond).any()) else "else_branch"
    return ctx.call_function(ctx.attr(branch).name, list(values))


register_op(OpDef(
    name="StatelessIf",
    inputs=("cond", "*input"),
    kernel=_if,
    required_attrs=("then_branch", "else_branch"),
    infer=_if_infer,
))
