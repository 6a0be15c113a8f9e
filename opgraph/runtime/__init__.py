"""Graph runtime built on JAX.

Importing the package enables 64-bit types in JAX so that int64 and float64
tensors keep their width, and registers the standard operations.
"""

import jax

jax.config.update("jax_enable_x64", True)

from . import kernels  # noqa: E402,F401  registers the standard operations
from .attrs import FuncRef, decode_attr_value, encode_attr_value  # noqa: E402
from .cast import CastContext, cast_tensor, default_cast_context  # noqa: E402
from .dtypes import BOOL, DOUBLE, FLOAT, INT8, INT32, INT64, DataType  # noqa: E402
from .function import Func, import_func  # noqa: E402
from .graph import Graph, Operation, OpSpec, Output  # noqa: E402
from .protos import ArgDef, FunctionDef, GraphDef, NodeDef, OpSignature, marshal, unmarshal  # noqa: E402
from .registry import registered_ops  # noqa: E402
from .session import Session  # noqa: E402
from .shape import Shape, make_shape, scalar_shape, unknown_shape  # noqa: E402
from .tensor import as_array  # noqa: E402

__all__ = [
    'ArgDef', 'BOOL', 'CastContext', 'DOUBLE', 'DataType', 'FLOAT', 'Func', 'FuncRef',
    'FunctionDef', 'Graph', 'GraphDef', 'INT8', 'INT32', 'INT64', 'NodeDef', 'OpSignature',
    'OpSpec', 'Operation', 'Output', 'Session', 'Shape', 'as_array', 'cast_tensor',
    'decode_attr_value', 'default_cast_context', 'encode_attr_value', 'import_func',
    'make_shape', 'marshal', 'registered_ops', 'scalar_shape', 'unknown_shape', 'unmarshal',
]
