"""Exception hierarchy for graph construction and execution.

Two failure channels exist:
- Runtime errors raised directly by one-shot calls (capture, registration,
  serialization, attribute access, session runs).
- ScopeError, the sticky error recorded by a Scope tree on the first failed
  operation append and re-raised to the caller that triggered it.

UsageError marks programmer misuse. It deliberately does not derive from
OpGraphError so that handlers for construction failures cannot absorb it.
"""

from __future__ import annotations


class OpGraphError(Exception):
    """Base class for graph construction and execution failures."""


class InvalidArgumentError(OpGraphError):
    """Malformed inputs, attributes, dtypes or shapes."""


class NotFoundError(OpGraphError):
    """Unknown operation type, function, attribute or tensor name."""


class AlreadyExistsError(OpGraphError):
    """Name collision in a graph or function table."""


class FailedPreconditionError(OpGraphError):
    """Use of a released handle, closed session or uninitialized variable."""


class UnimplementedError(OpGraphError):
    """Operation exists but is not supported for the given arguments."""


class ScopeError(OpGraphError):
    """Sticky construction error of a Scope tree.

    Args:
        op_type: Type of the operation whose append failed
        cause: Error reported by the runtime
    """

    def __init__(self, op_type: str, cause: BaseException):
        super().__init__(f"failed to add operation {op_type!r}: {cause}")
        self.op_type = op_type
        self.cause = cause


class FunctionBuildError(OpGraphError):
    """Building a function from a python builder failed."""


class UsageError(Exception):
    """Programmer misuse of the API. Never recoverable."""


class ScopeFinalizedError(UsageError):
    """A scope was used after Scope.finalize()."""

    def __init__(self) -> None:
        super().__init__("Scope has been finalized and is no longer usable")
