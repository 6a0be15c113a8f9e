"""Building functions from python callables and calling them from a Scope."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from opgraph.errors import FunctionBuildError, OpGraphError
from opgraph.runtime import DataType, Func, OpSpec, Output

from . import ops
from .scope import Scope, new_scope

logger = logging.getLogger(__name__)

# builder(scope, *inputs) -> (outputs, out_names, description)
FuncBuilder = Callable[..., tuple[Sequence[Output], Sequence[str] | None, str]]


def func(scope: Scope, fn: Func, *inputs: Output) -> list[Output] | None:
    """Add a call of fn to the scope and return its outputs.

    fn has to be registered in the scope's graph, see Scope.register_func.
    """
    op = scope.add_operation(OpSpec(type=fn.name, inputs=list(inputs)))
    if op is None:
        return None
    return op.outputs()


def build_func(name: str, builder: FuncBuilder, *dtypes: DataType) -> Func:
    """Trace builder into a new function.

    builder receives a fresh scope and one placeholder per entry of dtypes
    and returns the function outputs, optional output names and a
    description. For example::

        def adder(s, x, y):
            return [ops.add(s, x, y)], None, "just adding"

        fn = build_func("adder", adder, DataType.FLOAT, DataType.FLOAT)

    Raises:
        FunctionBuildError: Constructing the graph or capturing it failed
    """
    s = new_scope()
    try:
        inputs = [ops.placeholder(s, dt) for dt in dtypes]
        outputs, out_names, description = builder(s, *inputs)
        graph = s.finalize()
        fn = graph.as_func(name, inputs, list(outputs), list(out_names or []), description)
    except OpGraphError as err:
        raise FunctionBuildError(f"failed to build function {name!r}: {err}") from err
    logger.debug("built function %s from %s", fn.name, getattr(builder, "__name__", builder))
    return fn


def build_func_pair(
    name1: str,
    name2: str,
    builder1: FuncBuilder,
    builder2: FuncBuilder,
    *dtypes: DataType,
) -> tuple[Func, Func]:
    """Two functions sharing the input signature dtypes, e.g. cond and body of a while loop."""
    return build_func(name1, builder1, *dtypes), build_func(name2, builder2, *dtypes)
