"""Tests for graph execution in sessions."""

from __future__ import annotations

import numpy as np
import pytest

from opgraph.config import SessionOptions
from opgraph.errors import FailedPreconditionError, InvalidArgumentError
from opgraph.runtime import DataType, Graph, OpSpec, Session, Shape


def add(g: Graph, op_type: str, name: str, *inputs, **attrs):
    return g.add_operation(OpSpec(type=op_type, name=name, inputs=list(inputs), attrs=attrs))


def const(g: Graph, name: str, value):
    value = np.asarray(value)
    return add(g, "Const", name, value=value, dtype=DataType.from_numpy(value.dtype)).output(0)


# ============================================================================
# Test Feeds and Fetches
# ============================================================================

def test_run_feeds_placeholder():
    """Fed placeholders flow through the graph."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.FLOAT).output(0)
    two = const(g, "two", np.float32(2))
    y = add(g, "Mul", "y", x, two).output(0)

    (got,) = Session(g).run({x: np.array([1.0, 2.5], dtype=np.float32)}, [y])

    np.testing.assert_allclose(got, [2.0, 5.0])
    assert got.dtype == np.float32


def test_run_converts_python_feeds():
    """Python values are converted to the placeholder type."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.DOUBLE).output(0)
    y = add(g, "Neg", "y", x).output(0)

    (got,) = Session(g).run({x: [1, 2]}, [y])

    assert got.dtype == np.float64
    np.testing.assert_array_equal(got, [-1.0, -2.0])


def test_unfed_placeholder():
    """Running a placeholder without a feed fails."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.FLOAT).output(0)

    with pytest.raises(InvalidArgumentError, match="must feed a value"):
        Session(g).run(fetches=[x])


def test_feed_type_mismatch():
    """Arrays of the wrong type are rejected."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.FLOAT).output(0)

    with pytest.raises(InvalidArgumentError):
        Session(g).run({x: np.array([1, 2], dtype=np.int32)}, [x])


def test_feed_shape_mismatch():
    """Arrays incompatible with the placeholder shape are rejected."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.FLOAT, shape=Shape([2])).output(0)

    with pytest.raises(InvalidArgumentError):
        Session(g).run({x: np.zeros(3, dtype=np.float32)}, [x])


def test_run_only_needed_operations():
    """Operations nothing depends on are not executed."""
    g = Graph()
    add(g, "Placeholder", "unused", dtype=DataType.FLOAT)
    c = const(g, "c", np.int32(4))

    (got,) = Session(g).run(fetches=[c])

    assert got == 4


def test_closed_session():
    """A closed session cannot run."""
    g = Graph()
    c = const(g, "c", np.int32(1))
    sess = Session(g)
    sess.close()

    with pytest.raises(FailedPreconditionError):
        sess.run(fetches=[c])


# ============================================================================
# Test Variables
# ============================================================================

def test_uninitialized_variable():
    """Reading a variable before assigning it fails."""
    g = Graph()
    v = add(g, "VariableV2", "v", shape=Shape([2]), dtype=DataType.FLOAT).output(0)

    with pytest.raises(FailedPreconditionError, match="uninitialized value v"):
        Session(g).run(fetches=[v])


def test_assign_and_update_variable():
    """Variables keep their values between runs."""
    g = Graph()
    v = add(g, "VariableV2", "v", shape=Shape([2]), dtype=DataType.FLOAT).output(0)
    init = add(g, "Assign", "init", v, const(g, "c", np.array([1, 2], dtype=np.float32)))
    step = add(g, "AssignAdd", "step", v, const(g, "one", np.ones(2, dtype=np.float32)))

    sess = Session(g)
    sess.run(targets=[init])
    sess.run(targets=[step])
    sess.run(targets=[step])
    (got,) = sess.run(fetches=[v])

    np.testing.assert_allclose(got, [3.0, 4.0])
    np.testing.assert_allclose(sess.variables()["v"], [3.0, 4.0])


def test_assign_validates_shape():
    """Assigning a value of another shape is rejected at construction."""
    g = Graph()
    v = add(g, "VariableV2", "v", shape=Shape([2]), dtype=DataType.FLOAT).output(0)

    with pytest.raises(InvalidArgumentError):
        add(g, "Assign", "init", v, const(g, "c", np.zeros(3, dtype=np.float32)), validate_shape=True)


def test_assign_variables_directly():
    """Variables can be set without running assignments."""
    g = Graph()
    v = add(g, "VariableV2", "v", shape=Shape([]), dtype=DataType.DOUBLE).output(0)
    sess = Session(g)
    sess.assign_variables({"v": np.float64(2.5)})

    assert sess.run(fetches=[v])[0] == pytest.approx(2.5)


def test_seeded_random_is_reproducible():
    """Sessions with equal seeds draw equal random numbers."""
    g = Graph()
    shape = const(g, "shape", np.array([4], dtype=np.int32))
    r = add(g, "RandomUniform", "r", shape, dtype=DataType.FLOAT).output(0)

    a = Session(g, SessionOptions(seed=7)).run(fetches=[r])[0]
    b = Session(g, SessionOptions(seed=7)).run(fetches=[r])[0]

    np.testing.assert_array_equal(a, b)
    assert ((a >= 0) & (a < 1)).all()


# ============================================================================
# Test Gradients
# ============================================================================

def test_gradients_of_square():
    """d/dx sum(x**2) = 2x."""
    g = Graph()
    v = add(g, "VariableV2", "v", shape=Shape([3]), dtype=DataType.FLOAT).output(0)
    init = add(g, "Assign", "init", v, const(g, "c", np.array([1, -2, 3], dtype=np.float32)))
    loss = add(g, "Square", "sq", v).output(0)
    (grad,) = g.add_gradients([loss], [v])

    sess = Session(g)
    sess.run(targets=[init])
    (got,) = sess.run(fetches=[grad])

    np.testing.assert_allclose(got, [2.0, -4.0, 6.0])
    assert grad.shape() == Shape([3])


def test_gradients_through_placeholder_feed():
    """Gradients use the fed values of other inputs."""
    g = Graph()
    x = add(g, "Placeholder", "x", dtype=DataType.FLOAT, shape=Shape([2])).output(0)
    v = add(g, "VariableV2", "w", shape=Shape([2]), dtype=DataType.FLOAT).output(0)
    init = add(g, "Assign", "init", v, const(g, "c", np.array([0.5, 0.5], dtype=np.float32)))
    y = add(g, "Mul", "y", x, v).output(0)
    (grad,) = g.add_gradients([y], [v])

    sess = Session(g)
    sess.run(targets=[init])
    (got,) = sess.run({x: np.array([3, 4], dtype=np.float32)}, [grad])

    np.testing.assert_allclose(got, [3.0, 4.0])
