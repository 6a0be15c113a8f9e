"""Tests for scopes: naming, sticky errors, finalization and variable tags."""

from __future__ import annotations

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from opgraph.errors import OpGraphError, ScopeError, ScopeFinalizedError, UsageError
from opgraph.op import VarTag, new_scope, new_scope_with_graph, ops
from opgraph.runtime import DataType, Graph, Session


# ============================================================================
# Test Naming
# ============================================================================

def test_unique_operation_names():
    """Unnamed operations are numbered per type."""
    s = new_scope()
    a = ops.const(s, 1.0)
    b = ops.const(s, 2.0)
    c = ops.add(s, a, b)

    assert a.op.name == "Const_1"
    assert b.op.name == "Const_2"
    assert c.op.name == "Add_1"


def test_explicit_names_are_kept():
    s = new_scope()
    x = ops.placeholder(s, DataType.FLOAT, name="x")

    assert x.op.name == "x"


def test_namespace_disambiguation():
    """Sub-scopes with the same name get distinct namespaces."""
    s = new_scope()
    a = ops.const(s.sub_scope("layer"), 1.0)
    b = ops.const(s.sub_scope("layer"), 1.0)
    nested = ops.const(s.sub_scope("outer").sub_scope("inner"), 1.0)

    assert a.op.name == "layer/Const_1"
    assert b.op.name == "layer_1/Const_1"
    assert nested.op.name == "outer/inner/Const_1"


def test_suffixed_namespace_requested_first():
    """A literal namespace like layer_1 is skipped by later disambiguation."""
    s = new_scope()
    names = [ops.const(s.sub_scope(ns), 1.0).op.name for ns in ["layer_1", "layer", "layer"]]

    assert names == ["layer_1/Const_1", "layer/Const_1", "layer_2/Const_1"]


@settings(max_examples=30, deadline=None)
@given(st.lists(st.tuples(st.sampled_from(["", "a", "a_1", "b", "Const"]), st.sampled_from(["const", "no_op"])),
                max_size=25))
def test_generated_names_are_unique(steps):
    """Property: auto-named operations never collide, whatever the sequence of namespaces."""
    s = new_scope()
    names = []
    for namespace, kind in steps:
        target = s.sub_scope(namespace) if namespace else s
        if kind == "const":
            names.append(ops.const(target, 1.0).op.name)
        else:
            names.append(ops.no_op(target).name)

    assert len(set(names)) == len(names)
    assert s.err is None
    assert len(s.graph) == len(steps)


@settings(max_examples=30, deadline=None)
@given(st.lists(st.sampled_from(["x", "x_1", "x_2", "y"]), max_size=15))
def test_sibling_namespaces_are_distinct(requested):
    """Property: sibling sub-scopes always get distinct namespaces starting with the requested name."""
    s = new_scope()
    namespaces = [s.sub_scope(ns).namespace for ns in requested]

    assert len(set(namespaces)) == len(namespaces)
    for ns, got in zip(requested, namespaces):
        assert got == ns or got.startswith(ns + "_")


def test_namespace_and_op_counters_are_separate():
    """A namespace named like an operation type does not shift op numbering."""
    s = new_scope()
    s.sub_scope("Const")
    c = ops.const(s, 1.0)

    assert c.op.name == "Const_1"


def test_control_dependencies_and_device():
    """Derived scopes attach their dependencies and device."""
    s = new_scope()
    first = ops.no_op(s)
    c = ops.const(s.with_control_dependencies(first).with_device("/cpu:0"), 1.0)

    assert c.op.control_inputs == [first]
    assert c.op.device == "/cpu:0"


# ============================================================================
# Test Sticky Errors
# ============================================================================

def test_sticky_error():
    """The first failure poisons the scope tree."""
    s = new_scope()
    a = ops.const(s, 1.0)
    b = ops.const(s, 1)

    with pytest.raises(ScopeError) as info:
        ops.add(s, a, b)
    assert info.value.op_type == "Add"
    assert isinstance(info.value.__cause__, OpGraphError)

    assert s.err is info.value
    assert s.sub_scope("child").err is info.value
    assert ops.const(s, 3.0) is None
    with pytest.raises(ScopeError):
        s.finalize()


def test_poisoning_is_idempotent():
    """Later failures neither raise nor replace the first error."""
    s = new_scope()
    a = ops.const(s, 1.0)
    b = ops.const(s, 1)
    with pytest.raises(ScopeError):
        ops.add(s, a, b)
    first = s.err

    assert ops.sub(s, a, b) is None
    assert s.err is first


def test_bad_const_value_poisons_scope():
    """Values that are not tensors are construction errors."""
    s = new_scope()

    with pytest.raises(ScopeError):
        ops.const(s, [[1, 2], [3]])
    assert s.err is not None


# ============================================================================
# Test Finalization
# ============================================================================

def test_finalize_returns_graph():
    g = Graph()
    s = new_scope_with_graph(g)
    ops.const(s, 1.0)

    assert s.finalize() is g
    assert len(g) == 1


def test_finalized_scope_is_unusable():
    """Every use of a finalized scope tree is misuse."""
    s = new_scope()
    child = s.sub_scope("child")
    v = ops.variable_v2(s, [2], DataType.FLOAT)
    s.finalize()

    with pytest.raises(ScopeFinalizedError):
        s.finalize()
    with pytest.raises(ScopeFinalizedError):
        ops.const(child, 1.0)
    with pytest.raises(ScopeFinalizedError):
        s.sub_scope("again")
    with pytest.raises(UsageError):
        s.with_device("/cpu:0")
    with pytest.raises(ScopeFinalizedError):
        s.tag_variable(v, VarTag.TRAINABLE)
    with pytest.raises(ScopeFinalizedError):
        child.tag_variable(None, VarTag.TRAINABLE)
    assert s.get_params() == []


def test_usage_errors_are_not_graph_errors():
    """Misuse cannot be absorbed by handlers for construction failures."""
    assert not issubclass(UsageError, OpGraphError)
    assert issubclass(ScopeFinalizedError, UsageError)


def test_register_none():
    with pytest.raises(UsageError):
        new_scope().register_func(None)


# ============================================================================
# Test Variable Tags
# ============================================================================

def test_get_params_order():
    """Results are grouped by requested tag, then registration order."""
    s = new_scope()
    v1 = ops.variable_v2(s, [2], DataType.FLOAT)
    v2 = ops.variable_v2(s, [3], DataType.FLOAT)
    v3 = ops.variable_v2(s, [4], DataType.FLOAT)
    s.tag_variable(v1, VarTag.TRAINABLE)
    s.tag_variable(v2, VarTag.TRAINABLE, VarTag.DECAY_L2)
    s.tag_variable(v3, VarTag.DECAY_L2)

    assert s.get_params() == [v1, v2]
    assert s.get_params(VarTag.DECAY_L2) == [v2, v3]
    assert s.get_params(VarTag.TRAINABLE, VarTag.DECAY_L2) == [v1, v2, v2, v3]


def test_tags_are_shared_with_sub_scopes():
    s = new_scope()
    v = ops.variable_v2(s.sub_scope("inner"), [1], DataType.FLOAT)
    s.sub_scope("other").tag_variable(v, VarTag.TRAINABLE)

    assert s.get_params() == [v]


def test_tag_none_is_ignored():
    s = new_scope()
    s.tag_variable(None, VarTag.TRAINABLE)

    assert s.get_params() == []


def test_must_get_params():
    """Asking for parameters that do not exist is misuse."""
    s = new_scope()

    with pytest.raises(UsageError, match="TagDecayL1"):
        s.must_get_params(VarTag.DECAY_L1)


def test_scope_graph_runs():
    """Graphs built through scopes run in sessions."""
    s = new_scope()
    x = ops.const(s, np.array([1.0, 4.0, 9.0], dtype=np.float32))
    y = ops.sqrt(s, x)
    g = s.finalize()

    (got,) = Session(g).run(fetches=[y])

    np.testing.assert_allclose(got, [1.0, 2.0, 3.0])


def test_large_int_const_does_not_wrap():
    """An int constant beyond int32 should run as int64 with its value intact."""
    s = new_scope()
    c = ops.const(s, 3_000_000_000)
    g = s.finalize()

    (got,) = Session(g).run(fetches=[c])

    assert c.data_type() == DataType.INT64
    assert got.dtype == np.int64
    assert got == 3_000_000_000
