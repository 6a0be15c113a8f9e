"""Tests for optimizers descending a small linear regression."""

from __future__ import annotations

import numpy as np
import pytest

from opgraph.config import SessionOptions
from opgraph.errors import UsageError
from opgraph.op import (
    VarTag,
    get_init_op,
    linear,
    new_scope,
    norm_l2,
    ops,
    optimizer_adam,
    optimizer_adamw,
    optimizer_layla,
    optimizer_laylaw,
    optimizer_sgd,
    run_steps,
)
from opgraph.runtime import DataType, Session

INPUTS = np.array([[1, 0], [0, 1], [1, 1], [2, -1]], dtype=np.float32)
TARGETS = INPUTS @ np.array([[2.0], [-3.0]], dtype=np.float32)


def regression():
    """Scope with x fed through a linear layer and the mean squared error."""
    s = new_scope()
    x = ops.placeholder(s, DataType.FLOAT, [4, 2], name="x")
    y = linear(s, x, 1)
    loss = norm_l2(s, ops.sub(s, y, ops.const(s, TARGETS)))
    return s, x, loss


def start(s):
    init = get_init_op(s)
    sess = Session(s.finalize(), SessionOptions(seed=3))
    sess.run(targets=[init])
    return sess


def test_sgd_decreases_loss():
    s, x, loss = regression()
    opt = optimizer_sgd(s, [loss], 0.1)
    sess = start(s)

    history = run_steps(opt, sess, 10, {x: INPUTS})

    assert opt.name == "SGD"
    assert len(history) == 10
    assert history[-1] < history[0]


def test_adam_decreases_loss():
    s, x, loss = regression()
    opt = optimizer_adam(s, [loss], 0.05)
    sess = start(s)

    history = run_steps(opt, sess, 10, {x: INPUTS})

    assert opt.name == "Adam"
    assert history[-1] < history[0]


def test_adam_moments_are_initialized():
    """Adam adds two zero initialized moment variables per parameter."""
    s, x, loss = regression()
    optimizer_adam(s, [loss], 0.05)

    assert len(s.get_params(VarTag.INIT_ZEROS)) == 2


def test_layla_keeps_learn_rates_bounded():
    s, x, loss = regression()
    opt = optimizer_layla(s, [loss])
    sess = start(s)

    history = run_steps(opt, sess, 5, {x: INPUTS})
    (rates,) = sess.run(fetches=[opt.learn_rate])

    assert np.isfinite(history).all()
    assert rates.shape == (1,)
    assert ((rates >= 1e-9) & (rates <= 9e12)).all()


def test_adamw_adds_weight_decay():
    """AdamW steps Adam, then decays the L2 tagged weight."""
    s, x, loss = regression()
    opt = optimizer_adamw(s, [loss], 0.01, 0.05)
    sess = start(s)

    history = run_steps(opt, sess, 5, {x: INPUTS})

    assert opt.name == "AdamW"
    assert opt.decay is not None
    assert opt.decay.params == opt.params
    assert np.isfinite(history).all()
    assert opt.step_op.name.startswith("adam/")
    assert opt.decay.step_op.name.startswith("wdecay/")


def test_laylaw_runs():
    s, x, loss = regression()
    opt = optimizer_laylaw(s, [loss], 0.01)
    sess = start(s)

    history = run_steps(opt, sess, 3, {x: INPUTS})

    assert opt.name == "LaylaW"
    assert np.isfinite(history).all()


def test_weight_decay_without_tagged_params():
    """Parameters without decay tags are left alone."""
    s = new_scope()
    x = ops.placeholder(s, DataType.FLOAT, [4, 2], name="x")
    y = linear(s, x, 1, VarTag.INIT_ZEROS, VarTag.TRAINABLE)
    loss = norm_l2(s, ops.sub(s, y, ops.const(s, TARGETS)))
    opt = optimizer_adamw(s, [loss], 0.01, 0.05)

    assert opt.decay.params == ()


def test_optimizer_without_params():
    """An optimizer needs trainable parameters."""
    s = new_scope()
    loss = ops.const(s, 1.0)

    with pytest.raises(UsageError):
        optimizer_sgd(s, [loss], 0.1)


def test_optimizer_record_is_immutable():
    s, x, loss = regression()
    opt = optimizer_sgd(s, [loss], 0.1)

    with pytest.raises(AttributeError):
        opt.name = "other"
    assert opt.replace(name="other").name == "other"


def test_step_returns_fetches(capsys):
    """Optimizer.step returns the requested fetches and run_steps logs progress."""
    s, x, loss = regression()
    opt = optimizer_sgd(s, [loss], 0.1)
    sess = start(s)

    (value,) = opt.step(sess, {x: INPUTS}, [loss])
    run_steps(opt, sess, 2, {x: INPUTS}, log_every=1)

    assert np.isfinite(value)
    assert "Step 0/2: SGD loss=" in capsys.readouterr().out
