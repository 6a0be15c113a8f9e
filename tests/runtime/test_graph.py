"""Tests for graph construction and serialization."""

from __future__ import annotations

import numpy as np
import pytest

from opgraph.errors import AlreadyExistsError, InvalidArgumentError, NotFoundError
from opgraph.runtime import DataType, Graph, GraphDef, OpSpec, Session, Shape, marshal, unmarshal


def const(g: Graph, name: str, value):
    value = np.asarray(value)
    return g.add_operation(OpSpec(
        type="Const", name=name, attrs={"value": value, "dtype": DataType.from_numpy(value.dtype)},
    )).output(0)


# ============================================================================
# Test Operation Validation
# ============================================================================

def test_duplicate_node_name():
    """Node names are unique within a graph."""
    g = Graph()
    const(g, "c", np.float32(1))

    with pytest.raises(AlreadyExistsError):
        const(g, "c", np.float32(2))


def test_unknown_op_type():
    """Unknown operation types are reported as not found."""
    with pytest.raises(NotFoundError):
        Graph().add_operation(OpSpec(type="NoSuchOp", name="x"))


def test_inconsistent_input_types():
    """Inputs sharing a type parameter must agree."""
    g = Graph()
    a = const(g, "a", np.float32(1))
    b = const(g, "b", np.int32(1))

    with pytest.raises(InvalidArgumentError, match="Inconsistent values for attr 'T'"):
        g.add_operation(OpSpec(type="Add", name="add", inputs=[a, b]))


def test_wrong_input_count():
    """The number of inputs must match the op definition."""
    g = Graph()
    a = const(g, "a", np.float32(1))

    with pytest.raises(InvalidArgumentError):
        g.add_operation(OpSpec(type="Add", name="add", inputs=[a]))


def test_missing_required_attr():
    """Required attributes have to be present."""
    with pytest.raises(InvalidArgumentError, match="dtype"):
        Graph().add_operation(OpSpec(type="Placeholder", name="x"))


def test_disallowed_type():
    """Float-only operations reject integer inputs."""
    g = Graph()
    a = const(g, "a", np.int32(4))

    with pytest.raises(InvalidArgumentError, match="allowed values"):
        g.add_operation(OpSpec(type="Sqrt", name="sqrt", inputs=[a]))


def test_input_from_other_graph():
    """Operations cannot consume outputs of another graph."""
    a = const(Graph(), "a", np.float32(1))

    with pytest.raises(InvalidArgumentError, match="different graph"):
        Graph().add_operation(OpSpec(type="Neg", name="neg", inputs=[a]))


def test_assign_needs_variable():
    """Assignments target variables only."""
    g = Graph()
    a = const(g, "a", np.float32(1))

    with pytest.raises(InvalidArgumentError, match="ref type"):
        g.add_operation(OpSpec(type="Assign", name="assign", inputs=[a, a]))


def test_missing_operation_attr():
    """Reading an attribute an operation does not have fails."""
    g = Graph()
    a = const(g, "a", np.float32(1))

    assert a.op.attr("dtype") == DataType.FLOAT
    with pytest.raises(NotFoundError):
        a.op.attr("nope")


# ============================================================================
# Test Shape Inference
# ============================================================================

def test_inferred_shapes():
    """Output shapes follow from input shapes."""
    g = Graph()
    x = g.add_operation(OpSpec(
        type="Placeholder", name="x", attrs={"dtype": DataType.FLOAT, "shape": Shape([-1, 3])},
    )).output(0)
    w = const(g, "w", np.zeros((3, 5), dtype=np.float32))
    y = g.add_operation(OpSpec(type="MatMul", name="mm", inputs=[x, w])).output(0)

    assert y.data_type() == DataType.FLOAT
    assert y.shape() == Shape([-1, 5])


def test_split_outputs():
    """Split has num_split outputs."""
    g = Graph()
    axis = const(g, "axis", np.int32(0))
    v = const(g, "v", np.arange(6, dtype=np.float32))
    op = g.add_operation(OpSpec(type="Split", name="split", inputs=[axis, v], attrs={"num_split": 3}))

    assert op.num_outputs == 3
    assert op.output(1).shape() == Shape([2])
    got = Session(g).run(fetches=op.outputs())
    np.testing.assert_array_equal(got[2], [4.0, 5.0])


# ============================================================================
# Test Graph Definitions
# ============================================================================

def test_graph_def_round_trip():
    """A graph imported from its definition computes the same values."""
    g = Graph()
    a = const(g, "a", np.array([1, 2, 3], dtype=np.float32))
    b = const(g, "b", np.float32(2))
    axis = const(g, "axis", np.int32(0))
    packed = g.add_operation(OpSpec(type="Pack", name="pack", inputs=[[a, a]], attrs={"axis": 0}))
    g.add_operation(OpSpec(type="Mul", name="mul", inputs=[packed.output(0), b]))
    g.add_operation(OpSpec(type="Sum", name="sum", inputs=[g.operation("mul").output(0), axis]))

    data = marshal(g.to_graph_def())
    g2 = Graph()
    g2.import_graph_def(unmarshal(data, GraphDef))

    assert [op.name for op in g2.operations()] == [op.name for op in g.operations()]
    assert marshal(g2.to_graph_def()) == data
    (got,) = Session(g2).run(fetches=[g2.operation("sum").output(0)])
    np.testing.assert_allclose(got, [4.0, 8.0, 12.0])


def test_graph_def_keeps_list_arg_sizes():
    """List arguments are recorded so that imports regroup their inputs."""
    g = Graph()
    a = const(g, "a", np.float32(1))
    axis = const(g, "axis", np.int32(0))
    g.add_operation(OpSpec(type="ConcatV2", name="cat", inputs=[[a, a, a], axis]))
    g.add_operation(OpSpec(type="Neg", name="neg", inputs=[a]))

    nodes = {n.name: n for n in g.to_graph_def().node}

    assert nodes["cat"].attr["_arg_sizes"] == [3, 1]
    assert "_arg_sizes" not in nodes["neg"].attr
