"""Hierarchical build context for graphs.

A Scope and everything derived from it share one graph, one tag registry and
one error cell. A Scope tree is not safe for concurrent use by multiple
threads.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from opgraph.errors import OpGraphError, ScopeError, ScopeFinalizedError, UsageError
from opgraph.runtime import Graph, Operation, OpSpec, Output

if TYPE_CHECKING:
    from opgraph.runtime import Func

logger = logging.getLogger(__name__)


class VarTag(str, enum.Enum):
    """Semantic labels attached to variables for optimizers and initialization."""
    TRAINABLE = "TagTrainable"
    DECAY_L1 = "TagDecayL1"
    DECAY_L2 = "TagDecayL2"

    INIT_ASSIGN = "TagInitAssign"
    INIT_ZEROS = "TagInitZeros"
    INIT_ONES = "TagInitOnes"
    INIT_UNIFORM = "TagInitUniform"  # limits=0...1
    INIT_EPS_UNIFORM = "TagInitEpsUniform"  # limits=0...1e-4
    INIT_TRUNC_NORMAL = "TagInitTruncNormal"  # mean=0, stddev=1
    INIT_HE_UNIFORM = "TagInitHeUniform"  # +-limit=sqrt(6/fan_in)
    INIT_HE_NORMAL = "TagInitHeNormal"  # mean=0, stddev=sqrt(2/fan_in), +-limit=2*stddev
    INIT_LECUN_UNIFORM = "TagInitLecunUniform"  # +-limit=sqrt(3/fan_in)
    INIT_LECUN_NORMAL = "TagInitLecunNormal"  # mean=0, stddev=sqrt(1/fan_in)
    INIT_XAVIER_UNIFORM = "TagInitXavierUniform"  # +-limit=sqrt(6/(fan_in+fan_out))
    INIT_XAVIER_NORMAL = "TagInitXavierNormal"  # mean=0, stddev=sqrt(2/(fan_in+fan_out))

    def __str__(self) -> str:
        return self.value


class NameMap:
    """Name counters of one namespace level.

    Operation types and sub-scope namespaces are counted separately.
    """

    def __init__(self) -> None:
        self._ops: dict[str, int] = {}
        self._namespaces: dict[str, int] = {}
        self._taken: set[str] = set()

    def next_op_name(self, op_type: str) -> str:
        count = self._ops.get(op_type, 0) + 1
        self._ops[op_type] = count
        return f"{op_type}_{count}"

    def unique_namespace(self, name: str) -> str:
        count = self._namespaces.get(name, 0)
        candidate = name if count == 0 else f"{name}_{count}"
        # a suffixed name may have been requested literally before
        while candidate in self._taken:
            count += 1
            candidate = f"{name}_{count}"
        self._namespaces[name] = count + 1
        self._taken.add(candidate)
        return candidate


class TagRegistry:
    """Variables recorded per tag, in registration order."""

    def __init__(self) -> None:
        self._tagged: dict[VarTag, list[Output]] = {}

    def add(self, output: Output, tags: tuple[VarTag, ...]) -> None:
        for tag in tags:
            self._tagged.setdefault(VarTag(tag), []).append(output)

    def get(self, tag: VarTag) -> list[Output]:
        return list(self._tagged.get(VarTag(tag), []))


class _ErrorCell:
    """Error state shared by a whole scope tree."""

    def __init__(self) -> None:
        self.err: ScopeError | None = None
        self.finalized = False


@dataclass(frozen=True)
class Scope:
    """Builder context for operations of one graph.

    Create the root with new_scope() or new_scope_with_graph() and derive
    children with sub_scope(), with_control_dependencies() and with_device().
    """
    graph: Graph
    _names: NameMap = field(repr=False)
    _tags: TagRegistry = field(repr=False)
    _cell: _ErrorCell = field(repr=False)
    namespace: str = ""
    control_dependencies: tuple[Operation, ...] = ()
    device: str = ""

    def _check_usable(self) -> None:
        if self._cell.finalized:
            raise ScopeFinalizedError()

    @property
    def err(self) -> ScopeError | None:
        """The first construction error of the scope tree, if any."""
        return self._cell.err

    def add_operation(self, spec: OpSpec) -> Operation | None:
        """Add an operation to the graph.

        Unnamed operations are called ``<Type>_<n>``. The namespace of the
        scope prefixes the name, and the control dependencies and device of
        the scope are attached.

        Returns:
            op: The new operation, or None when an earlier error poisoned the scope

        Raises:
            ScopeError: The graph rejected this operation
        """
        self._check_usable()
        if self._cell.err is not None:
            return None
        name = spec.name or self._names.next_op_name(spec.type)
        if self.namespace:
            name = f"{self.namespace}/{name}"
        spec = replace(
            spec,
            name=name,
            control_dependencies=list(spec.control_dependencies) + list(self.control_dependencies),
            device=self.device,
        )
        try:
            return self.graph.add_operation(spec)
        except OpGraphError as err:
            self.update_err(spec.type, err)
            raise self._cell.err from err

    def update_err(self, op_type: str, err: BaseException) -> None:
        """Record err as the scope tree's error unless one is set already."""
        if self._cell.err is None:
            self._cell.err = err if isinstance(err, ScopeError) else ScopeError(op_type, err)
            logger.debug("scope poisoned by %s: %s", op_type, err)

    def sub_scope(self, namespace: str) -> Scope:
        """Scope whose operations live below a new, unique namespace."""
        self._check_usable()
        namespace = self._names.unique_namespace(namespace)
        if self.namespace:
            namespace = f"{self.namespace}/{namespace}"
        return replace(self, _names=NameMap(), namespace=namespace)

    def with_control_dependencies(self, *ops: Operation) -> Scope:
        """Scope whose operations run after ops, in addition to the current dependencies."""
        self._check_usable()
        return replace(self, control_dependencies=tuple(self.control_dependencies) + tuple(ops))

    def with_device(self, device: str) -> Scope:
        """Scope placing its operations on device, an empty string clears the placement."""
        self._check_usable()
        return replace(self, device=device)

    def finalize(self) -> Graph:
        """Return the graph and render the whole scope tree unusable.

        Raises:
            ScopeError: Construction failed earlier
            ScopeFinalizedError: The scope was finalized before
        """
        self._check_usable()
        if self._cell.err is not None:
            raise self._cell.err
        self._cell.finalized = True
        return self.graph

    def register_func(self, fn: Func | None, grad: Func | None = None) -> None:
        """Copy fn and its optional gradient into the scope's graph."""
        self._check_usable()
        if fn is None:
            raise UsageError("cannot register a None Func")
        self.graph.register_func(fn, grad)

    def tag_variable(self, x: Output | None, *tags: VarTag) -> None:
        self._check_usable()
        if x is None:
            return
        self._tags.add(x, tags)

    def get_params(self, *tags: VarTag) -> list[Output]:
        """Outputs tagged with any of tags, TRAINABLE when none are given.

        Results are grouped by tag in the order requested, each group in
        registration order. An output carrying several of the requested tags
        appears once per tag.
        """
        if not tags:
            tags = (VarTag.TRAINABLE,)
        params: list[Output] = []
        for tag in tags:
            params.extend(self._tags.get(tag))
        return params

    def must_get_params(self, *tags: VarTag) -> list[Output]:
        """get_params() that raises UsageError when nothing matches."""
        params = self.get_params(*tags)
        if not params:
            names = [str(t) for t in tags] or [str(VarTag.TRAINABLE)]
            raise UsageError(f"no matching parameters found for tags: {names}")
        return params


def new_scope() -> Scope:
    """Root scope over a new, empty graph."""
    return new_scope_with_graph(Graph())


def new_scope_with_graph(graph: Graph) -> Scope:
    """Root scope over an existing graph."""
    return Scope(graph=graph, _names=NameMap(), _tags=TagRegistry(), _cell=_ErrorCell())
