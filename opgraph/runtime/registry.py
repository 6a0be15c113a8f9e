"""Operation definitions, output inference and function-body execution.

Every operation type is described by an OpDef: its input arguments, type
constraints, an output inference rule and a kernel written with jax.numpy.
Functions registered in a graph get a synthesized OpDef so that they can be
called like any other operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import jax
import numpy as np

from opgraph.errors import (
    AlreadyExistsError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
)

from .dtypes import DataType
from .protos import FunctionDef, NodeDef
from .shape import Shape, unknown_shape

logger = logging.getLogger(__name__)

_MISSING = object()

OutputSpec = tuple[DataType, Shape]
Kernel = Callable[..., Any]


@dataclass(frozen=True)
class InputInfo:
    """What inference knows about one input: type, shape and a constant value if any."""
    dtype: DataType
    shape: Shape
    value: np.ndarray | None = None
    is_ref: bool = False


@dataclass(frozen=True)
class OpDef:
    """Definition of an operation type.

    Args:
        name: Operation type name
        inputs: Input argument names, a leading ``*`` marks a list argument
        kernel: Callable ``kernel(ctx, *inputs)`` returning one array or a sequence
        num_outputs: Fixed output count or ``fn(attrs, inputs) -> int``
        same_type: Arguments whose element types must agree
        allowed: Argument name -> permitted element types
        required_attrs: Attributes that must be supplied
        ref_inputs: Arguments that must be produced by a variable
        infer: Optional ``fn(attrs, inputs, library) -> [(dtype, shape)]``
            replacing kernel-based inference
        out_dtypes: Optional ``fn(attrs, inputs) -> [dtype]`` used when shapes
            cannot be inferred from the kernel
        stateful: Kernel reads or writes session state
    """
    name: str
    inputs: tuple[str, ...] = ()
    kernel: Kernel | None = None
    num_outputs: int | Callable[[dict[str, Any], list[Any]], int] = 1
    same_type: tuple[str, ...] = ()
    allowed: dict[str, tuple[DataType, ...]] = field(default_factory=dict)
    required_attrs: tuple[str, ...] = ()
    ref_inputs: tuple[str, ...] = ()
    infer: Callable[[dict[str, Any], list[Any], FunctionLibrary], list[OutputSpec]] | None = None
    out_dtypes: Callable[[dict[str, Any], list[Any]], list[DataType]] | None = None
    stateful: bool = False

    @property
    def arg_names(self) -> list[str]:
        return [a.lstrip("*") for a in self.inputs]

    def is_list_arg(self, index: int) -> bool:
        return self.inputs[index].startswith("*")

    def output_count(self, attrs: dict[str, Any], inputs: list[Any]) -> int:
        if callable(self.num_outputs):
            return self.num_outputs(attrs, inputs)
        return self.num_outputs


_REGISTRY: dict[str, OpDef] = {}


def register_op(op_def: OpDef) -> OpDef:
    """Add an operation type to the global registry."""
    if op_def.name in _REGISTRY:
        raise AlreadyExistsError(f"op type {op_def.name!r} is already registered")
    _REGISTRY[op_def.name] = op_def
    return op_def


def registered_ops() -> list[str]:
    return sorted(_REGISTRY)


def is_registered(op_type: str) -> bool:
    return op_type in _REGISTRY


class KernelContext:
    """Per-node view handed to kernels.

    Args:
        node_name: Fully qualified name of the executing node
        attrs: Attribute values of the node
        library: Function table used for function calls
        state: Session run state, or None during inference
        refs: Variable names bound to the reference arguments, in order
        input_handles: Graph outputs feeding the node, flattened
    """

    def __init__(
        self,
        node_name: str,
        attrs: dict[str, Any],
        library: FunctionLibrary,
        state: Any | None = None,
        refs: Sequence[str] = (),
        input_handles: Sequence[Any] = (),
    ):
        self.node_name = node_name
        self.attrs = attrs
        self.library = library
        self.state = state
        self.refs = list(refs)
        self.input_handles = list(input_handles)

    def attr(self, name: str, default: Any = _MISSING) -> Any:
        value = self.attrs.get(name, default)
        if value is _MISSING:
            raise InvalidArgumentError(f"node {self.node_name!r} is missing attr {name!r}")
        return value

    def _require_state(self) -> Any:
        if self.state is None:
            raise _StatefulDuringInference(self.node_name)
        return self.state

    def read_variable(self) -> Any:
        return self._require_state().read_variable(self.node_name)

    def read_ref(self, index: int = 0) -> Any:
        return self._require_state().read_variable(self.refs[index])

    def write_ref(self, value: Any, index: int = 0) -> Any:
        return self._require_state().write_variable(self.refs[index], value)

    def next_key(self) -> jax.Array:
        return self._require_state().next_key()

    def evaluate(self, outputs: Sequence[Any], overrides: dict[Any, Any]) -> list[Any]:
        return self._require_state().evaluate(outputs, overrides)

    def call_function(self, name: str, args: Sequence[Any]) -> list[Any]:
        return execute_function(self.library, name, args, self.state)


class _StatefulDuringInference(Exception):
    """Raised when a kernel touches session state while shapes are inferred."""


@dataclass
class FunctionLibrary:
    """Function table of one graph, plus gradient associations."""
    functions: dict[str, FunctionDef] = field(default_factory=dict)
    gradients: dict[str, str] = field(default_factory=dict)

    def add(self, fdef: FunctionDef, grad: FunctionDef | None = None) -> None:
        """Copy fdef and its optional gradient in, leaving the library untouched on conflicts."""
        name = fdef.signature.name
        self._check_conflict(fdef)
        if grad is not None:
            self._check_conflict(grad)
            grad_name = grad.signature.name
            previous = self.gradients.get(name)
            if previous is not None and previous != grad_name:
                raise AlreadyExistsError(
                    f"function {name!r} already has gradient {previous!r}, cannot set {grad_name!r}"
                )
        self.functions[name] = fdef.copy()
        if grad is not None:
            self.functions[grad_name] = grad.copy()
            self.gradients[name] = grad_name

    def _check_conflict(self, fdef: FunctionDef) -> None:
        name = fdef.signature.name
        if is_registered(name):
            raise AlreadyExistsError(f"function name {name!r} collides with an op type")
        existing = self.functions.get(name)
        if existing is not None and existing.to_dict() != fdef.to_dict():
            raise AlreadyExistsError(
                f"cannot add function {name!r} because a different function "
                "with the same name already exists"
            )

    def get(self, name: str) -> FunctionDef:
        fdef = self.functions.get(name)
        if fdef is None:
            raise NotFoundError(f"function {name!r} is not registered in the graph")
        return fdef

    def __contains__(self, name: str) -> bool:
        return name in self.functions

    def op_def(self, op_type: str) -> OpDef:
        """OpDef for a registered op type or a function call."""
        op_def = _REGISTRY.get(op_type)
        if op_def is not None:
            return op_def
        if op_type in self.functions:
            return function_op_def(self.functions[op_type])
        raise NotFoundError(f"Op type not registered {op_type!r}")


def function_op_def(fdef: FunctionDef) -> OpDef:
    """Synthesize the OpDef of a call to fdef."""
    sig = fdef.signature
    name = sig.name

    def kernel(ctx: KernelContext, *args: Any) -> list[Any]:
        return ctx.call_function(name, args)

    return OpDef(
        name=name,
        inputs=tuple(a.name for a in sig.input_arg),
        kernel=kernel,
        num_outputs=len(sig.output_arg),
        allowed={a.name: (a.type,) for a in sig.input_arg},
        out_dtypes=lambda attrs, inputs: [a.type for a in sig.output_arg],
    )


def infer_outputs(
    op_def: OpDef,
    node_name: str,
    attrs: dict[str, Any],
    inputs: list[Any],
    library: FunctionLibrary,
) -> list[OutputSpec]:
    """Element types and shapes of the outputs of a new node.

    Args:
        op_def: Definition of the node's type
        node_name: Name of the node, for messages
        attrs: Node attributes
        inputs: Per argument an InputInfo, or a list of them for list arguments
        library: Function table for nested calls

    Returns:
        specs: One (dtype, shape) pair per output
    """
    if op_def.infer is not None:
        return op_def.infer(attrs, inputs, library)
    if op_def.kernel is None:
        return []

    flat = [i for arg in inputs for i in (arg if isinstance(arg, list) else [arg])]
    if any(i.value is None and i.shape.dims is None for i in flat):
        return _fallback_specs(op_def, attrs, inputs)

    has_unknown = any(i.value is None and not i.shape.is_fully_specified for i in flat)
    try:
        first = _eval_shapes(op_def, node_name, attrs, inputs, library, 2)
        if not has_unknown:
            return first
        second = _eval_shapes(op_def, node_name, attrs, inputs, library, 3)
    except (_StatefulDuringInference, jax.errors.ConcretizationTypeError,
            jax.errors.TracerArrayConversionError, jax.errors.TracerIntegerConversionError,
            jax.errors.TracerBoolConversionError, NotFoundError):
        return _fallback_specs(op_def, attrs, inputs)
    except (TypeError, ValueError, IndexError) as err:
        if has_unknown:
            return _fallback_specs(op_def, attrs, inputs)
        raise InvalidArgumentError(f"{op_def.name} node {node_name!r}: {err}") from err

    specs = []
    for (dtype, shape_a), (_, shape_b) in zip(first, second):
        if shape_a.dims is None or shape_b.dims is None or len(shape_a.dims) != len(shape_b.dims):
            specs.append((dtype, unknown_shape()))
            continue
        dims = [a if a == b else -1 for a, b in zip(shape_a.dims, shape_b.dims)]
        specs.append((dtype, Shape(dims)))
    return specs


def _eval_shapes(
    op_def: OpDef,
    node_name: str,
    attrs: dict[str, Any],
    inputs: list[Any],
    library: FunctionLibrary,
    fill: int,
) -> list[OutputSpec]:
    abstract: list[jax.ShapeDtypeStruct] = []
    layout: list[Any] = []
    for arg in inputs:
        infos = arg if isinstance(arg, list) else [arg]
        slots = []
        for info in infos:
            if info.value is not None:
                slots.append(("const", info.value))
            else:
                dims = tuple(fill if d < 0 else d for d in info.shape.dims)
                abstract.append(jax.ShapeDtypeStruct(dims, info.dtype.to_numpy()))
                slots.append(("abstract", len(abstract) - 1))
        layout.append(slots if isinstance(arg, list) else slots[0])

    ctx = KernelContext(node_name, attrs, library)

    def traced(*values: Any) -> Any:
        def resolve(slot: tuple[str, Any]) -> Any:
            kind, item = slot
            return item if kind == "const" else values[item]
        args = [[resolve(s) for s in slot] if isinstance(slot, list) else resolve(slot) for slot in layout]
        return _as_output_list(op_def.kernel(ctx, *args))

    results = jax.eval_shape(traced, *abstract)
    return [(DataType.from_numpy(r.dtype), Shape(r.shape)) for r in results]


def _fallback_specs(op_def: OpDef, attrs: dict[str, Any], inputs: list[Any]) -> list[OutputSpec]:
    count = op_def.output_count(attrs, inputs)
    if op_def.out_dtypes is not None:
        dtypes = op_def.out_dtypes(attrs, inputs)
    else:
        first = inputs[0] if inputs else None
        if isinstance(first, list):
            first = first[0] if first else None
        if first is None:
            raise InvalidArgumentError(f"cannot infer output types of {op_def.name}")
        dtypes = [first.dtype] * count
    return [(dt, unknown_shape()) for dt in dtypes]


def _as_output_list(result: Any) -> list[Any]:
    if isinstance(result, (list, tuple)):
        return list(result)
    return [result]


def run_kernel(op_def: OpDef, ctx: KernelContext, args: list[Any]) -> list[Any]:
    """Execute a kernel and normalize its result to a list."""
    if op_def.kernel is None:
        return []
    return _as_output_list(op_def.kernel(ctx, *args))


def execute_function(
    library: FunctionLibrary,
    name: str,
    args: Sequence[Any],
    state: Any | None,
) -> list[Any]:
    """Run the body of function name on the given argument values.

    Only the nodes needed for the results (through data and control inputs)
    are executed, in body order.
    """
    fdef = library.get(name)
    sig = fdef.signature
    if len(args) != len(sig.input_arg):
        raise InvalidArgumentError(
            f"function {name!r} expects {len(sig.input_arg)} arguments, got {len(args)}"
        )
    env: dict[str, Any] = {a.name: v for a, v in zip(sig.input_arg, args)}
    nodes = {n.name: n for n in fdef.node_def}

    needed: set[str] = set()
    pending = [_node_of(ref) for ref in fdef.ret.values()]
    while pending:
        node_name = pending.pop()
        if node_name is None or node_name in needed or node_name not in nodes:
            continue
        needed.add(node_name)
        node = nodes[node_name]
        ref_slots = _ref_slots(library.op_def(node.op))
        pending.extend(
            _node_of(ref) for i, ref in enumerate(node.data_inputs) if i not in ref_slots
        )
        pending.extend(node.control_inputs)

    for node in fdef.node_def:
        if node.name not in needed:
            continue
        op_def = library.op_def(node.op)
        ref_slots = _ref_slots(op_def)
        values = [
            None if i in ref_slots else _resolve(env, ref, name)
            for i, ref in enumerate(node.data_inputs)
        ]
        refs = [f"{name}/{_node_of(node.data_inputs[i])}" for i in sorted(ref_slots)]
        node_args = _group_args(op_def, values, node)
        ctx = KernelContext(f"{name}/{node.name}", node.attr, library, state, refs=refs)
        for index, value in enumerate(run_kernel(op_def, ctx, node_args)):
            env[f"{node.name}:{index}"] = value

    return [_resolve(env, fdef.ret[a.name], name) for a in sig.output_arg]


def _node_of(ref: str) -> str | None:
    if ":" not in ref:
        return None
    return ref.rsplit(":", 1)[0]


def _resolve(env: dict[str, Any], ref: str, fn_name: str) -> Any:
    if ref not in env:
        raise FailedPreconditionError(f"function {fn_name!r} references unknown value {ref!r}")
    return env[ref]


def _group_args(op_def: OpDef, values: list[Any], node: NodeDef) -> list[Any]:
    """Regroup flat input values into per-argument values using list sizes."""
    sizes = node.attr.get("_arg_sizes")
    if sizes is None:
        return values
    args, offset = [], 0
    for index, size in enumerate(sizes):
        if op_def.is_list_arg(index):
            args.append(values[offset:offset + size])
            offset += size
        else:
            args.append(values[offset])
            offset += 1
    return args


def _ref_slots(op_def: OpDef) -> set[int]:
    """Input positions bound to variables rather than values.

    Reference arguments never follow list arguments, so argument positions
    equal flat input positions.
    """
    names = op_def.arg_names
    return {names.index(r) for r in op_def.ref_inputs}
