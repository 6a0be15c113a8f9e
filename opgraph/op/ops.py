"""Functions adding single operations to a Scope.

Each wrapper returns the operation's output(s), or None when the scope was
poisoned by an earlier construction error. Failures of the wrapped operation
itself are recorded in the scope and raised as ScopeError.
"""

from __future__ import annotations

from typing import Any, Sequence

from opgraph.errors import OpGraphError
from opgraph.runtime import DataType, Operation, OpSpec, Output, Shape, as_array

from .scope import Scope


def _add(
    scope: Scope,
    op_type: str,
    inputs: Sequence[Any] = (),
    attrs: dict[str, Any] | None = None,
    name: str = "",
) -> Operation | None:
    return scope.add_operation(OpSpec(type=op_type, name=name, inputs=list(inputs), attrs=attrs or {}))


def _single(op: Operation | None) -> Output | None:
    if op is None:
        return None
    return op.output(0)


def _all(op: Operation | None) -> list[Output] | None:
    if op is None:
        return None
    return op.outputs()


# Sources

def const(scope: Scope, value: Any, dtype: DataType | None = None, name: str = "") -> Output | None:
    """Constant holding value, converted to dtype when given."""
    if scope.err is not None:
        return None
    try:
        array = as_array(value, dtype)
        dt = DataType.from_numpy(array.dtype)
    except (OpGraphError, TypeError) as err:
        scope.update_err("Const", err)
        raise scope.err from err
    return _single(_add(scope, "Const", attrs={"value": array, "dtype": dt}, name=name))


def placeholder(scope: Scope, dtype: DataType, shape: Shape | Sequence[int] | None = None,
                name: str = "") -> Output | None:
    attrs: dict[str, Any] = {"dtype": dtype}
    if shape is not None:
        attrs["shape"] = shape if isinstance(shape, Shape) else Shape(shape)
    return _single(_add(scope, "Placeholder", attrs=attrs, name=name))


def identity(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Identity", [x], name=name))


def no_op(scope: Scope, name: str = "") -> Operation | None:
    """Operation without outputs, used to group control dependencies."""
    return _add(scope, "NoOp", name=name)


# Elementwise math

def neg(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Neg", [x], name=name))


def abs_(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Abs", [x], name=name))


def square(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Square", [x], name=name))


def sqrt(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Sqrt", [x], name=name))


def rsqrt(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Rsqrt", [x], name=name))


def exp(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Exp", [x], name=name))


def log(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Log", [x], name=name))


def tanh(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Tanh", [x], name=name))


def sigmoid(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Sigmoid", [x], name=name))


def softplus(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Softplus", [x], name=name))


def relu(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Relu", [x], name=name))


def zeros_like(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "ZerosLike", [x], name=name))


def ones_like(scope: Scope, x: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "OnesLike", [x], name=name))


def add(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Add", [x, y], name=name))


def add_v2(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "AddV2", [x, y], name=name))


def sub(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Sub", [x, y], name=name))


def mul(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Mul", [x, y], name=name))


def div(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    """x / y, truncating for integer types."""
    return _single(_add(scope, "Div", [x, y], name=name))


def div_no_nan(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    """x / y, or 0 where y is 0."""
    return _single(_add(scope, "DivNoNan", [x, y], name=name))


def pow_(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Pow", [x, y], name=name))


def maximum(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Maximum", [x, y], name=name))


def minimum(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Minimum", [x, y], name=name))


def less(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Less", [x, y], name=name))


def greater(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Greater", [x, y], name=name))


def equal(scope: Scope, x: Output, y: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Equal", [x, y], name=name))


def clip_by_value(scope: Scope, t: Output, clip_min: Output, clip_max: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "ClipByValue", [t, clip_min, clip_max], name=name))


def cast(scope: Scope, x: Output, dtype: DataType, name: str = "") -> Output | None:
    return _single(_add(scope, "Cast", [x], {"DstT": dtype}, name=name))


def check_numerics(scope: Scope, tensor: Output, message: str = "", name: str = "") -> Output | None:
    """Pass tensor through, failing at run time if it holds NaN or Inf values."""
    return _single(_add(scope, "CheckNumerics", [tensor], {"message": message}, name=name))


def l2_loss(scope: Scope, t: Output, name: str = "") -> Output | None:
    """sum(t ** 2) / 2"""
    return _single(_add(scope, "L2Loss", [t], name=name))


# Shapes and layout

def reshape(scope: Scope, tensor: Output, shape: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Reshape", [tensor, shape], name=name))


def shape(scope: Scope, x: Output, out_type: DataType = DataType.INT32, name: str = "") -> Output | None:
    return _single(_add(scope, "Shape", [x], {"out_type": out_type}, name=name))


def mean(scope: Scope, x: Output, axis: Output, keep_dims: bool = False, name: str = "") -> Output | None:
    return _single(_add(scope, "Mean", [x, axis], {"keep_dims": keep_dims}, name=name))


def sum_(scope: Scope, x: Output, axis: Output, keep_dims: bool = False, name: str = "") -> Output | None:
    return _single(_add(scope, "Sum", [x, axis], {"keep_dims": keep_dims}, name=name))


def max_(scope: Scope, x: Output, axis: Output, keep_dims: bool = False, name: str = "") -> Output | None:
    return _single(_add(scope, "Max", [x, axis], {"keep_dims": keep_dims}, name=name))


def min_(scope: Scope, x: Output, axis: Output, keep_dims: bool = False, name: str = "") -> Output | None:
    return _single(_add(scope, "Min", [x, axis], {"keep_dims": keep_dims}, name=name))


def pack(scope: Scope, values: Sequence[Output], axis: int = 0, name: str = "") -> Output | None:
    """Stack values along a new axis."""
    return _single(_add(scope, "Pack", [list(values)], {"axis": axis}, name=name))


def concat_v2(scope: Scope, values: Sequence[Output], axis: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "ConcatV2", [list(values), axis], name=name))


def split(scope: Scope, axis: Output, value: Output, num_split: int, name: str = "") -> list[Output] | None:
    return _all(_add(scope, "Split", [axis, value], {"num_split": num_split}, name=name))


def fill(scope: Scope, dims: Output, value: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "Fill", [dims, value], name=name))


def empty(scope: Scope, shape: Output, dtype: DataType, name: str = "") -> Output | None:
    """Tensor of the given shape with unspecified (zero) contents."""
    return _single(_add(scope, "Empty", [shape], {"dtype": dtype}, name=name))


def mat_mul(scope: Scope, a: Output, b: Output, transpose_a: bool = False, transpose_b: bool = False,
            name: str = "") -> Output | None:
    attrs = {"transpose_a": transpose_a, "transpose_b": transpose_b}
    return _single(_add(scope, "MatMul", [a, b], attrs, name=name))


def batch_mat_mul_v3(scope: Scope, x: Output, y: Output, tout: DataType, adj_x: bool = False,
                     adj_y: bool = False, name: str = "") -> Output | None:
    """Batched matrix product with broadcasting of the batch dimensions."""
    attrs = {"Tout": tout, "adj_x": adj_x, "adj_y": adj_y}
    return _single(_add(scope, "BatchMatMulV3", [x, y], attrs, name=name))


# Random numbers

def random_uniform(scope: Scope, shape: Output, dtype: DataType, name: str = "") -> Output | None:
    """Uniform values in [0, 1)."""
    return _single(_add(scope, "RandomUniform", [shape], {"dtype": dtype}, name=name))


def truncated_normal(scope: Scope, shape: Output, dtype: DataType, name: str = "") -> Output | None:
    """Standard normal values, redrawn beyond two standard deviations."""
    return _single(_add(scope, "TruncatedNormal", [shape], {"dtype": dtype}, name=name))


def parameterized_truncated_normal(scope: Scope, shape: Output, means: Output, stdevs: Output,
                                   minvals: Output, maxvals: Output, name: str = "") -> Output | None:
    inputs = [shape, means, stdevs, minvals, maxvals]
    return _single(_add(scope, "ParameterizedTruncatedNormal", inputs, name=name))


# Variables

def variable_v2(scope: Scope, shape: Shape | Sequence[int], dtype: DataType, name: str = "") -> Output | None:
    """Variable holding state between session runs. It must be assigned before it is read."""
    if not isinstance(shape, Shape):
        shape = Shape(shape)
    return _single(_add(scope, "VariableV2", attrs={"shape": shape, "dtype": dtype}, name=name))


def assign(scope: Scope, ref: Output, value: Output, validate_shape: bool = True, name: str = "") -> Output | None:
    return _single(_add(scope, "Assign", [ref, value], {"validate_shape": validate_shape}, name=name))


def assign_add(scope: Scope, ref: Output, value: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "AssignAdd", [ref, value], name=name))


def assign_sub(scope: Scope, ref: Output, value: Output, name: str = "") -> Output | None:
    return _single(_add(scope, "AssignSub", [ref, value], name=name))


# Gradients

def gradients(scope: Scope, ys: Sequence[Output], xs: Sequence[Output], name: str = "") -> list[Output] | None:
    """Partial derivatives of sum(ys) with respect to each of xs."""
    return _all(_add(scope, "SymbolicGradients", [list(ys), list(xs)], name=name))
