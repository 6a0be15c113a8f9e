"""Computation graphs: operations, their outputs and the function table."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

import numpy as np

from opgraph.errors import AlreadyExistsError, InvalidArgumentError, NotFoundError, UsageError

from .attrs import canonical_json
from .dtypes import DataType
from .protos import ArgDef, FunctionDef, GraphDef, NodeDef, OpSignature
from .registry import FunctionLibrary, InputInfo, OpDef, infer_outputs
from .shape import Shape

if TYPE_CHECKING:
    from .function import Func

logger = logging.getLogger(__name__)

ARG_SIZES_ATTR = "_arg_sizes"


@dataclass(frozen=True)
class Output:
    """One output of an operation, identified by the producing op and an index."""
    op: Operation
    index: int

    def data_type(self) -> DataType:
        return self.op._specs[self.index][0]

    def shape(self) -> Shape:
        return self.op._specs[self.index][1]

    @property
    def is_ref(self) -> bool:
        """True when the output is a variable that assignments can target."""
        return self.op.type == "VariableV2"

    @property
    def name(self) -> str:
        return f"{self.op.name}:{self.index}"

    def __repr__(self) -> str:
        return f"<Output {self.name} {self.data_type()} {self.shape()}>"


@dataclass
class OpSpec:
    """Everything needed to add one operation to a graph.

    Args:
        type: Operation type, or the name of a registered function
        name: Unique node name, empty to let the Scope pick one
        inputs: One Output per argument, or a list of Outputs for list arguments
        attrs: Attribute values
        control_dependencies: Operations that must run before this one
        device: Device placement string
    """
    type: str
    name: str = ""
    inputs: list[Any] = field(default_factory=list)
    attrs: dict[str, Any] = field(default_factory=dict)
    control_dependencies: list[Operation] = field(default_factory=list)
    device: str = ""


class Operation:
    """A node of a Graph."""

    def __init__(
        self,
        graph: Graph,
        name: str,
        op_type: str,
        inputs: list[Output],
        arg_sizes: list[int],
        attrs: dict[str, Any],
        control_inputs: list[Operation],
        device: str,
        specs: list[tuple[DataType, Shape]],
    ):
        self.graph = graph
        self.name = name
        self.type = op_type
        self.inputs = inputs
        self.arg_sizes = arg_sizes
        self.attrs = attrs
        self.control_inputs = control_inputs
        self.device = device
        self._specs = specs

    @property
    def num_outputs(self) -> int:
        return len(self._specs)

    def output(self, index: int) -> Output:
        if not 0 <= index < len(self._specs):
            raise IndexError(f"operation {self.name!r} has {len(self._specs)} outputs, no output {index}")
        return Output(self, index)

    def outputs(self) -> list[Output]:
        return [Output(self, i) for i in range(len(self._specs))]

    def attr(self, name: str) -> Any:
        if name not in self.attrs:
            raise NotFoundError(f"operation {self.name!r} has no attr named {name!r}")
        return self.attrs[name]

    def __repr__(self) -> str:
        return f"<Operation {self.name!r} type={self.type}>"


class Graph:
    """A computation graph plus the table of functions it may call.

    add_operation and register_func serialize on an internal lock, everything
    else assumes a single writer.
    """

    def __init__(self) -> None:
        self._ops: list[Operation] = []
        self._by_name: dict[str, Operation] = {}
        self.library = FunctionLibrary()
        self._lock = threading.RLock()
        self._grad_count = 0

    def operation(self, name: str) -> Operation | None:
        return self._by_name.get(name)

    def operations(self) -> list[Operation]:
        return list(self._ops)

    def __len__(self) -> int:
        return len(self._ops)

    def add_operation(self, spec: OpSpec) -> Operation:
        """Validate spec and append the operation it describes.

        Raises:
            NotFoundError: Unknown operation type
            AlreadyExistsError: Node name already taken
            InvalidArgumentError: Bad inputs, attributes, types or shapes
        """
        with self._lock:
            op_def = self.library.op_def(spec.type)
            name = spec.name
            if not name:
                raise InvalidArgumentError(f"operation of type {spec.type} needs a name")
            if name in self._by_name:
                raise AlreadyExistsError(f"duplicate node name in graph: {name!r}")

            flat, sizes, infos = self._bind_inputs(op_def, name, spec.inputs)
            self._check_attrs(op_def, name, spec.attrs)
            self._check_types(op_def, name, infos)
            controls = self._check_controls(name, spec.control_dependencies)

            specs = infer_outputs(op_def, name, dict(spec.attrs), infos, self.library)
            op = Operation(
                graph=self,
                name=name,
                op_type=spec.type,
                inputs=flat,
                arg_sizes=sizes,
                attrs=dict(spec.attrs),
                control_inputs=controls,
                device=spec.device,
                specs=list(specs),
            )
            self._ops.append(op)
            self._by_name[name] = op
        logger.debug("added %s (%s) with %d outputs", name, spec.type, op.num_outputs)
        return op

    def _bind_inputs(
        self, op_def: OpDef, name: str, inputs: Sequence[Any]
    ) -> tuple[list[Output], list[int], list[Any]]:
        if len(inputs) != len(op_def.inputs):
            raise InvalidArgumentError(
                f"{op_def.name} node {name!r} expects {len(op_def.inputs)} inputs, got {len(inputs)}"
            )
        flat: list[Output] = []
        sizes: list[int] = []
        infos: list[Any] = []
        for index, arg in enumerate(inputs):
            arg_name = op_def.arg_names[index]
            if op_def.is_list_arg(index):
                if not isinstance(arg, (list, tuple)):
                    raise InvalidArgumentError(f"input {arg_name!r} of {name!r} must be a list of outputs")
                outputs = list(arg)
                infos.append([self._input_info(name, arg_name, o) for o in outputs])
            else:
                outputs = [arg]
                infos.append(self._input_info(name, arg_name, arg))
            flat.extend(outputs)
            sizes.append(len(outputs))
        return flat, sizes, infos

    def _input_info(self, name: str, arg_name: str, output: Any) -> InputInfo:
        if not isinstance(output, Output):
            raise InvalidArgumentError(
                f"input {arg_name!r} of {name!r} must be an Output, got {type(output).__name__}"
            )
        if output.op.graph is not self:
            raise InvalidArgumentError(
                f"input {arg_name!r} of {name!r} ({output.name}) belongs to a different graph"
            )
        value = None
        if output.op.type == "Const":
            value = np.asarray(output.op.attrs["value"])
        return InputInfo(output.data_type(), output.shape(), value=value, is_ref=output.is_ref)

    @staticmethod
    def _check_attrs(op_def: OpDef, name: str, attrs: dict[str, Any]) -> None:
        for attr_name in op_def.required_attrs:
            if attr_name not in attrs:
                raise InvalidArgumentError(f"{op_def.name} node {name!r} is missing required attr {attr_name!r}")

    @staticmethod
    def _check_types(op_def: OpDef, name: str, infos: list[Any]) -> None:
        by_arg = dict(zip(op_def.arg_names, infos))

        def dtypes_of(arg_name: str) -> list[DataType]:
            info = by_arg[arg_name]
            return [i.dtype for i in (info if isinstance(info, list) else [info])]

        if op_def.same_type:
            seen: DataType | None = None
            for arg_name in op_def.same_type:
                for dtype in dtypes_of(arg_name):
                    if seen is None:
                        seen = dtype
                    elif dtype != seen:
                        raise InvalidArgumentError(
                            f"Inconsistent values for attr 'T' {seen.proto_name} vs. "
                            f"{dtype.proto_name} while building NodeDef {name!r}"
                        )
        for arg_name, allowed in op_def.allowed.items():
            for dtype in dtypes_of(arg_name):
                if dtype not in allowed:
                    names = ", ".join(d.proto_name for d in allowed)
                    raise InvalidArgumentError(
                        f"Value for attr of input {arg_name!r} of {dtype.proto_name} is not in the "
                        f"list of allowed values: {names} while building NodeDef {name!r}"
                    )
        for arg_name in op_def.ref_inputs:
            info = by_arg[arg_name]
            if not info.is_ref:
                raise InvalidArgumentError(
                    f"Input {arg_name!r} passed {info.dtype} expected ref type while building NodeDef {name!r}"
                )

    def _check_controls(self, name: str, deps: Sequence[Any]) -> list[Operation]:
        controls = []
        for dep in deps:
            if not isinstance(dep, Operation) or dep.graph is not self:
                raise InvalidArgumentError(f"control dependency {dep!r} of {name!r} is not an operation of this graph")
            if dep not in controls:
                controls.append(dep)
        return controls

    def add_gradients(self, ys: Sequence[Output], xs: Sequence[Output], name: str = "") -> list[Output]:
        """Symbolic partial derivatives of sum(ys) with respect to each of xs."""
        with self._lock:
            if not name:
                self._grad_count += 1
                name = f"gradients_{self._grad_count}"
            op = self.add_operation(OpSpec(type="SymbolicGradients", name=name, inputs=[list(ys), list(xs)]))
        return op.outputs()

    # Function table

    def register_func(self, fn: Func | None, grad: Func | None = None) -> None:
        """Copy fn (and its gradient, if any) into the function table."""
        if fn is None:
            raise UsageError("cannot register a None Func")
        fdef = fn.definition
        grad_def = grad.definition if grad is not None else None
        with self._lock:
            self.library.add(fdef, grad_def)
        logger.debug("registered function %s", fdef.signature.name)

    def functions(self) -> list[Func]:
        """Independent handles on every function registered in the graph."""
        from .function import Func

        return [Func(fdef.copy()) for fdef in self.library.functions.values()]

    def as_func(
        self,
        name: str,
        inputs: Sequence[Output],
        outputs: Sequence[Output],
        out_names: Sequence[str] | None = None,
        description: str = "",
    ) -> Func:
        """Capture the graph as a function.

        Every operation of the graph becomes part of the function body.
        Placeholders listed in inputs become the function arguments, in order.
        The returned function is named ``<name>_<hash>`` where the hash covers
        the body.

        Args:
            name: Requested function name
            inputs: Placeholder outputs acting as arguments
            outputs: Outputs returned by the function
            out_names: Optional result names, one per output, kept as given
            description: Human readable description

        Returns:
            fn: The captured function

        Raises:
            InvalidArgumentError: An out name is malformed or repeated
        """
        from .function import Func

        if out_names and len(out_names) != len(outputs):
            raise UsageError(f"mismatch of outputs and their names: {len(outputs)} vs {len(out_names)}")

        used: set[str] = set()
        arg_refs: dict[Output, str] = {}
        input_args = []
        for inp in inputs:
            if not isinstance(inp, Output) or inp.op.graph is not self:
                raise InvalidArgumentError(f"function input {inp!r} is not an output of this graph")
            if inp.op.type != "Placeholder":
                raise InvalidArgumentError(f"function input {inp.name} must be a Placeholder, not {inp.op.type}")
            if inp in arg_refs:
                raise InvalidArgumentError(f"function input {inp.name} is listed twice")
            arg_name = _unique_arg_name(inp.op.name, used)
            arg_refs[inp] = arg_name
            input_args.append(ArgDef(arg_name, inp.data_type()))

        input_ops = {inp.op for inp in arg_refs}
        nodes = []
        for op in self._ops:
            if op in input_ops:
                continue
            if op.type == "Placeholder":
                raise InvalidArgumentError(
                    f"placeholder {op.name!r} is not an input of function {name!r}"
                )
            nodes.append(self._node_def(op, arg_refs))

        output_args = []
        ret = {}
        for index, out in enumerate(outputs):
            if not isinstance(out, Output) or out.op.graph is not self:
                raise InvalidArgumentError(f"function output {out!r} is not an output of this graph")
            if out_names:
                out_name = out_names[index]
                if not _ARG_NAME.fullmatch(out_name):
                    raise InvalidArgumentError(f"invalid output name {out_name!r} of function {name!r}")
                if out_name in ret:
                    raise InvalidArgumentError(f"output name {out_name!r} of function {name!r} is used twice")
            else:
                out_name = _unique_arg_name(f"{out.op.name}_{out.index}", used)
            output_args.append(ArgDef(out_name, out.data_type()))
            ret[out_name] = arg_refs.get(out, out.name)

        fdef = FunctionDef(
            signature=OpSignature(
                name=name,
                input_arg=tuple(input_args),
                output_arg=tuple(output_args),
                description=description,
            ),
            node_def=tuple(nodes),
            ret=ret,
        )
        digest = hashlib.sha256(canonical_json(fdef.to_dict())).hexdigest()
        fdef.signature = OpSignature(
            name=f"{name}_{digest[:12]}",
            input_arg=fdef.signature.input_arg,
            output_arg=fdef.signature.output_arg,
            description=description,
        )
        logger.debug("captured %d operations as function %s", len(nodes), fdef.signature.name)
        return Func(fdef)

    # Serialization

    def _node_def(self, op: Operation, refs: dict[Output, str] | None = None) -> NodeDef:
        refs = refs or {}
        inputs = [refs.get(i, i.name) for i in op.inputs]
        inputs.extend(f"^{c.name}" for c in op.control_inputs)
        attrs = dict(op.attrs)
        if any(a.startswith("*") for a in self.library.op_def(op.type).inputs):
            attrs[ARG_SIZES_ATTR] = list(op.arg_sizes)
        return NodeDef(name=op.name, op=op.type, input=tuple(inputs), attr=attrs, device=op.device)

    def to_graph_def(self) -> GraphDef:
        return GraphDef(
            node=[self._node_def(op) for op in self._ops],
            library=[f.copy() for f in self.library.functions.values()],
            gradient=dict(self.library.gradients),
        )

    def import_graph_def(self, graph_def: GraphDef) -> None:
        """Add the functions and nodes of graph_def to this graph."""
        by_name = {f.signature.name: f for f in graph_def.library}
        grad_names = set(graph_def.gradient.values())
        with self._lock:
            for fdef in graph_def.library:
                if fdef.signature.name in grad_names:
                    continue
                grad_name = graph_def.gradient.get(fdef.signature.name)
                self.library.add(fdef, by_name.get(grad_name) if grad_name else None)
            for fdef in graph_def.library:
                if fdef.signature.name not in self.library:
                    self.library.add(fdef)
            for node in graph_def.node:
                self.add_operation(self._spec_from_node(node))
        logger.debug("imported %d nodes and %d functions", len(graph_def.node), len(graph_def.library))

    def _spec_from_node(self, node: NodeDef) -> OpSpec:
        attrs = dict(node.attr)
        sizes = attrs.pop(ARG_SIZES_ATTR, None)
        flat = [self._lookup(ref, node.name) for ref in node.data_inputs]
        op_def = self.library.op_def(node.op)
        if sizes is None:
            sizes = [1] * len(op_def.inputs)
        inputs: list[Any] = []
        offset = 0
        for index, size in enumerate(sizes):
            if op_def.is_list_arg(index):
                inputs.append(flat[offset:offset + size])
            else:
                inputs.append(flat[offset])
            offset += size
        controls = []
        for dep in node.control_inputs:
            op = self._by_name.get(dep)
            if op is None:
                raise NotFoundError(f"control input {dep!r} of {node.name!r} not found")
            controls.append(op)
        return OpSpec(
            type=node.op,
            name=node.name,
            inputs=inputs,
            attrs=attrs,
            control_dependencies=controls,
            device=node.device,
        )

    def _lookup(self, ref: str, node_name: str) -> Output:
        op_name, _, index = ref.rpartition(":")
        op = self._by_name.get(op_name)
        if op is None or not index.isdigit():
            raise NotFoundError(f"input {ref!r} of node {node_name!r} not found")
        return op.output(int(index))


_ARG_NAME = re.compile(r"[A-Za-z][A-Za-z0-9_]*")


def _unique_arg_name(name: str, used: set[str]) -> str:
    base = re.sub(r"[^a-z0-9_]", "_", name.lower())
    if not base or not base[0].isalpha():
        base = "a" + base
    candidate, n = base, 0
    while candidate in used:
        n += 1
        candidate = f"{base}_{n}"
    used.add(candidate)
    return candidate
