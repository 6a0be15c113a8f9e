"""
opgraph: dataflow graphs of tensor operations, executed with JAX.

Graphs are built through Scopes (opgraph.op), captured into portable
functions and run by Sessions (opgraph.runtime).
"""

__version__ = "0.1.0"

from opgraph.config import SessionOptions
from opgraph.errors import (
    AlreadyExistsError,
    FailedPreconditionError,
    FunctionBuildError,
    InvalidArgumentError,
    NotFoundError,
    OpGraphError,
    ScopeError,
    ScopeFinalizedError,
    UnimplementedError,
    UsageError,
)
from opgraph.runtime import DataType, Func, Graph, Operation, Output, Session, Shape, import_func
from opgraph.safetensor_io import SafeTensorLoader, safetensors_from_bytes, safetensors_to_bytes, write_safetensors
from opgraph.saved_model import (
    SavedModel,
    Signature,
    TensorInfo,
    list_saved_model_details,
    load_saved_model,
    save_model,
)

__all__ = [
    'AlreadyExistsError', 'DataType', 'FailedPreconditionError', 'Func', 'FunctionBuildError',
    'Graph', 'InvalidArgumentError', 'NotFoundError', 'OpGraphError', 'Operation', 'Output',
    'SafeTensorLoader', 'SavedModel', 'ScopeError', 'ScopeFinalizedError', 'Session',
    'SessionOptions', 'Shape', 'Signature', 'TensorInfo', 'UnimplementedError', 'UsageError',
    'import_func', 'list_saved_model_details', 'load_saved_model',
    'save_model', 'safetensors_from_bytes', 'safetensors_to_bytes', 'write_safetensors',
]
