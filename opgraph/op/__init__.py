"""Graph construction through Scopes.

Functions adding operations take a Scope as first argument. The Scope holds
the graph, a namespace, control dependencies and a device for every
operation added through it.
"""

from opgraph.op import ops
from opgraph.op.control_flow import for_loop, if_then_else, while_loop
from opgraph.op.func import FuncBuilder, build_func, build_func_pair, func
from opgraph.op.layer import ActFunc, bias, flatten, gelu, linear, mish, mlp, swish
from opgraph.op.norm import NormFunc, batch_norm, layer_norm, norm_abs_l1, norm_l1, norm_l2
from opgraph.op.optimizer import (
    Optimizer,
    optimizer_adam,
    optimizer_adamw,
    optimizer_layla,
    optimizer_laylaw,
    optimizer_sgd,
    run_steps,
    weight_decay,
)
from opgraph.op.scope import Scope, VarTag, new_scope, new_scope_with_graph
from opgraph.op.varinit import INIT_TAGS, get_init_op

__all__ = [
    'ActFunc', 'FuncBuilder', 'INIT_TAGS', 'NormFunc', 'Optimizer', 'Scope', 'VarTag',
    'batch_norm', 'bias', 'build_func', 'build_func_pair', 'flatten', 'for_loop', 'func',
    'gelu', 'get_init_op', 'if_then_else', 'layer_norm', 'linear', 'mish', 'mlp',
    'new_scope', 'new_scope_with_graph', 'norm_abs_l1', 'norm_l1', 'norm_l2',
    'optimizer_adam', 'optimizer_adamw', 'optimizer_layla', 'optimizer_laylaw',
    'optimizer_sgd', 'ops', 'run_steps', 'swish', 'weight_decay', 'while_loop',
]
