"""Loops and conditionals driven by functions registered in the graph."""

from __future__ import annotations

from typing import Sequence

from opgraph.runtime import Func, FuncRef, OpSpec, Output

from .scope import Scope


def while_loop(scope: Scope, inputs: Sequence[Output], cond: Func, body: Func) -> list[Output] | None:
    """Apply body to the loop values while cond returns true.

    cond and body take the loop values as arguments; body returns the next
    loop values. build_func_pair builds such a pair. Both functions have to
    be registered in the scope's graph.
    """
    op = scope.add_operation(OpSpec(
        type="While",
        inputs=[list(inputs)],
        attrs={"cond": FuncRef(cond.name), "body": FuncRef(body.name)},
    ))
    if op is None:
        return None
    return op.outputs()


def for_loop(
    scope: Scope,
    start: Output,
    limit: Output,
    delta: Output,
    inputs: Sequence[Output],
    body: Func,
) -> list[Output] | None:
    """Apply body(i, *values) for i in range(start, limit, delta).

    start, limit and delta are int32 scalars.
    """
    op = scope.add_operation(OpSpec(
        type="For",
        inputs=[start, limit, delta, list(inputs)],
        attrs={"body": FuncRef(body.name)},
    ))
    if op is None:
        return None
    return op.outputs()


def if_then_else(
    scope: Scope,
    cond: Output,
    inputs: Sequence[Output],
    then_branch: Func,
    else_branch: Func,
) -> list[Output] | None:
    """Call then_branch(*inputs) if cond holds, else_branch(*inputs) otherwise."""
    op = scope.add_operation(OpSpec(
        type="StatelessIf",
        inputs=[cond, list(inputs)],
        attrs={"then_branch": FuncRef(then_branch.name), "else_branch": FuncRef(else_branch.name)},
    ))
    if op is None:
        return None
    return op.outputs()
