"""Graph execution."""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Sequence

import jax
import jax.numpy as jnp
import numpy as np

from opgraph.config import SessionOptions
from opgraph.errors import FailedPreconditionError, InvalidArgumentError

from .graph import Graph, Operation, Output
from .registry import KernelContext, OpDef, run_kernel
from .shape import Shape
from .tensor import as_array, data_type_of

logger = logging.getLogger(__name__)


class Session:
    """Runs (parts of) a graph and keeps the values of its variables.

    Args:
        graph: Graph to execute
        options: Session configuration, the default seeds the PRNG with 0
    """

    def __init__(self, graph: Graph, options: SessionOptions | None = None):
        self.graph = graph
        self.options = options or SessionOptions()
        self._variables: dict[str, jax.Array] = {}
        self._key = jax.random.PRNGKey(self.options.seed)
        self._lock = threading.Lock()
        self._closed = False

    def run(
        self,
        feeds: Mapping[Output, Any] | None = None,
        fetches: Sequence[Output] | None = None,
        targets: Sequence[Operation] | None = None,
    ) -> list[np.ndarray]:
        """Compute fetches after running targets.

        Only operations that fetches and targets depend on are executed, in
        the order they were added to the graph.

        Args:
            feeds: Values replacing outputs, typically placeholders
            fetches: Outputs to return
            targets: Operations to run without returning anything

        Returns:
            values: One numpy array per fetch
        """
        fetches = list(fetches or [])
        targets = list(targets or [])
        with self._lock:
            if self._closed:
                raise FailedPreconditionError("Session has been closed")
            env = self._convert_feeds(feeds or {})
            state = _RunState(self, env)
            order = self._schedule(fetches, targets, env)
            logger.debug("running %d of %d operations", len(order), len(self.graph))
            for op in order:
                state.execute(op)
            return [np.asarray(env[f]) for f in fetches]

    def close(self) -> None:
        """Release the variables. The session cannot be used afterwards."""
        with self._lock:
            self._variables.clear()
            self._closed = True

    def variables(self) -> dict[str, np.ndarray]:
        """Current variable values by variable node name."""
        return {name: np.asarray(value) for name, value in self._variables.items()}

    def assign_variables(self, values: Mapping[str, Any]) -> None:
        """Set variables directly, e.g. when restoring a saved model."""
        with self._lock:
            for name, value in values.items():
                self._variables[name] = jnp.asarray(value)

    def _convert_feeds(self, feeds: Mapping[Output, Any]) -> dict[Output, Any]:
        env = {}
        for output, value in feeds.items():
            if not isinstance(output, Output) or output.op.graph is not self.graph:
                raise InvalidArgumentError(f"feed key {output!r} is not an output of the session graph")
            want = output.data_type()
            if isinstance(value, (np.ndarray, np.generic, jax.Array)):
                array = as_array(value)
                if data_type_of(array) != want:
                    raise InvalidArgumentError(
                        f"feed for {output.name} has type {data_type_of(array)}, expected {want}"
                    )
            else:
                array = as_array(value, want)
            if not output.shape().is_compatible_with(Shape(array.shape)):
                raise InvalidArgumentError(
                    f"feed for {output.name} has shape {list(array.shape)}, expected {output.shape()}"
                )
            env[output] = jnp.asarray(array)
        return env

    def _schedule(self, fetches: list[Output], targets: list[Operation], env: dict[Output, Any]) -> list[Operation]:
        needed: set[Operation] = set()
        pending = [f.op for f in fetches if f not in env] + list(targets)
        while pending:
            op = pending.pop()
            if op in needed:
                continue
            if op.graph is not self.graph:
                raise InvalidArgumentError(f"{op!r} is not an operation of the session graph")
            needed.add(op)
            op_def = self.graph.library.op_def(op.type)
            for index, inp in enumerate(op.inputs):
                if index in _ref_positions(op_def, op) or inp in env:
                    continue
                pending.append(inp.op)
            pending.extend(op.control_inputs)
        return [op for op in self.graph.operations() if op in needed]

    # variable and PRNG access for kernels

    def read_variable(self, name: str) -> jax.Array:
        value = self._variables.get(name)
        if value is None:
            raise FailedPreconditionError(f"Attempting to use uninitialized value {name}")
        return value

    def write_variable(self, name: str, value: Any) -> jax.Array:
        value = jnp.asarray(value)
        self._variables[name] = value
        return value

    def next_key(self) -> jax.Array:
        self._key, key = jax.random.split(self._key)
        return key


class _RunState:
    """State handed to kernels during one Session.run call."""

    def __init__(self, session: Session, env: dict[Output, Any], pure: bool = False):
        self.session = session
        self.env = env
        self.pure = pure

    def execute(self, op: Operation) -> None:
        values = self.compute(op, self.env)
        for index, value in enumerate(values):
            self.env.setdefault(op.output(index), value)

    def compute(self, op: Operation, env: Mapping[Output, Any]) -> list[Any]:
        library = self.session.graph.library
        op_def = library.op_def(op.type)
        ref_slots = _ref_positions(op_def, op)
        values = [None if i in ref_slots else env[inp] for i, inp in enumerate(op.inputs)]
        refs = [op.inputs[i].op.name for i in sorted(ref_slots)]
        ctx = KernelContext(op.name, op.attrs, library, self, refs=refs, input_handles=op.inputs)
        return run_kernel(op_def, ctx, _group(op_def, op, values))

    def read_variable(self, name: str) -> jax.Array:
        return self.session.read_variable(name)

    def write_variable(self, name: str, value: Any) -> jax.Array:
        if self.pure:
            raise FailedPreconditionError(f"cannot assign variable {name} while computing gradients")
        return self.session.write_variable(name, value)

    def next_key(self) -> jax.Array:
        return self.session.next_key()

    def evaluate(self, outputs: Sequence[Output], overrides: Mapping[Output, Any]) -> list[Any]:
        """Recompute outputs with some values replaced, without side effects.

        Operations that do not depend on an overridden value reuse the values
        already computed in this run.
        """
        env: dict[Output, Any] = dict(overrides)
        library = self.session.graph.library
        needed: set[Operation] = set()
        pending = [o.op for o in outputs if o not in env]
        while pending:
            op = pending.pop()
            if op in needed:
                continue
            needed.add(op)
            ref_slots = _ref_positions(library.op_def(op.type), op)
            pending.extend(
                inp.op for i, inp in enumerate(op.inputs) if i not in ref_slots and inp not in env
            )

        pure = _RunState(self.session, env, pure=True)
        dirty: set[Operation] = set()
        for op in self.session.graph.operations():
            if op not in needed:
                continue
            if any(inp in overrides or inp.op in dirty for inp in op.inputs):
                dirty.add(op)
            elif all(o in self.env for o in op.outputs()):
                for o in op.outputs():
                    env.setdefault(o, self.env[o])
                continue
            for index, value in enumerate(pure.compute(op, env)):
                env.setdefault(op.output(index), value)
        return [env[o] for o in outputs]


def _ref_positions(op_def: OpDef, op: Operation) -> set[int]:
    names = op_def.arg_names
    positions = set()
    for ref in op_def.ref_inputs:
        arg = names.index(ref)
        positions.add(sum(op.arg_sizes[:arg]))
    return positions


def _group(op_def: OpDef, op: Operation, values: list[Any]) -> list[Any]:
    args, offset = [], 0
    for index, size in enumerate(op.arg_sizes):
        if op_def.is_list_arg(index):
            args.append(values[offset:offset + size])
        else:
            args.append(values[offset])
        offset += size
    return args
