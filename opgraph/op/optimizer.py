"""Optimizers updating tagged variables from symbolic gradients.

Each optimizer adds its update network to the scope and returns an Optimizer
record whose step_op performs one update when run in a session.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import numpy as np
from flax import struct

from opgraph.runtime import DataType, Operation, Output, Session

from . import ops
from .layer import flatten
from .scope import Scope, VarTag


@struct.dataclass
class Optimizer:
    """Immutable optimizer record.

    Attributes:
        name: Optimizer name, e.g. "Adam" or "AdamW"
        params: Variables updated by the optimizer
        losses: Losses the optimizer descends
        learn_rate: Learning rate tensor (constant or variable)
        step_op: Operation performing one update
        decay: Weight decay optimizer run after this one, if any
    """
    name: str = struct.field(pytree_node=False)
    params: tuple[Output, ...] = struct.field(pytree_node=False)
    losses: tuple[Output, ...] = struct.field(pytree_node=False)
    learn_rate: Output = struct.field(pytree_node=False)
    step_op: Operation = struct.field(pytree_node=False)
    decay: Optimizer | None = struct.field(pytree_node=False, default=None)

    def step(
        self,
        sess: Session,
        feeds: Mapping[Output, Any] | None = None,
        fetches: Sequence[Output] | None = None,
        targets: Sequence[Operation] | None = None,
    ) -> list[np.ndarray]:
        """Run one update and return fetches computed in the same run."""
        fetched = sess.run(feeds, fetches, list(targets or []) + [self.step_op])
        if self.decay is not None:
            self.decay.step(sess)
        return fetched


def _max_loss(s: Scope, losses: Sequence[Output], learn_rate: Output, axis0: Output) -> Output:
    return ops.mul(s, learn_rate, ops.max_(s, flatten(s, ops.pack(s, losses)), axis0))


def _squared_norm(s: Scope, x: Output, axis0: Output) -> Output:
    return ops.sum_(s, ops.square(s, flatten(s, x)), axis0)


def optimizer_sgd(s: Scope, losses: Sequence[Output], learn_rate: float, *tags: VarTag) -> Optimizer:
    """Stochastic gradient descent with steps scaled by the largest loss."""
    params = s.must_get_params(*tags)
    grads = ops.gradients(s, losses, params)
    lr = ops.const(s, learn_rate)
    axis0 = ops.const(s, 0)
    max_lr_loss = _max_loss(s, losses, lr, axis0)
    update_ops = []
    for param, grad in zip(params, grads):
        grad = ops.mul(s, grad, ops.div_no_nan(s, max_lr_loss, _squared_norm(s, grad, axis0)))
        update_ops.append(ops.assign_sub(s, param, grad).op)
    step_op = ops.no_op(s.with_control_dependencies(*update_ops))
    return Optimizer("SGD", tuple(params), tuple(losses), lr, step_op)


def optimizer_adam(
    s: Scope,
    losses: Sequence[Output],
    learn_rate: float,
    alpha: float = 1e-3,
    beta1: float = 0.9,
    beta2: float = 0.999,
    *tags: VarTag,
) -> Optimizer:
    """Adam (https://arxiv.org/abs/1412.6980).

    The bias corrections 1/(1-beta**t) are left out, so alpha is fixed to 1.
    """
    alpha = 1.0
    params = s.must_get_params(*tags)
    moments1, moments2 = [], []
    for param in params:
        m1 = ops.variable_v2(s, param.shape(), param.data_type())
        m2 = ops.variable_v2(s, param.shape(), param.data_type())
        s.tag_variable(m1, VarTag.INIT_ZEROS)
        s.tag_variable(m2, VarTag.INIT_ZEROS)
        moments1.append(m1)
        moments2.append(m2)

    grads = ops.gradients(s, losses, params)
    lr = ops.const(s, learn_rate)
    axis0 = ops.const(s, 0)
    max_lr_loss = _max_loss(s, losses, lr, axis0)
    alp = ops.const(s, alpha)
    b1p, b1m = ops.const(s, beta1), ops.const(s, 1 - beta1)
    b2p, b2m = ops.const(s, beta2), ops.const(s, 1 - beta2)
    eps = ops.const(s, 1e-8)
    update_ops = []
    for param, grad, m1, m2 in zip(params, grads, moments1, moments2):
        grad = ops.mul(s, grad, ops.div_no_nan(s, max_lr_loss, _squared_norm(s, grad, axis0)))
        new_m1 = ops.add(s, ops.mul(s, b1p, m1), ops.mul(s, b1m, grad))
        new_m2 = ops.add(s, ops.mul(s, b2p, m2), ops.mul(s, b2m, ops.square(s, grad)))
        grad = ops.div_no_nan(s, ops.mul(s, alp, new_m1), ops.add(s, eps, ops.sqrt(s, new_m2)))
        scaled = ops.mul(s, lr, grad)
        scd = s.with_control_dependencies(scaled.op)
        update_ops += [
            ops.assign_sub(scd, param, scaled).op,
            ops.assign(scd, m1, new_m1).op,
            ops.assign(scd, m2, new_m2).op,
        ]
    step_op = ops.no_op(s.with_control_dependencies(*update_ops))
    return Optimizer("Adam", tuple(params), tuple(losses), lr, step_op)


def optimizer_layla(s: Scope, losses: Sequence[Output], *tags: VarTag) -> Optimizer:
    """Per-parameter exponential learning rate adaption (https://arxiv.org/abs/2309.06274).

    Each learning rate grows or shrinks with the cosine between the previous
    and the current gradient.
    """
    params = s.must_get_params(*tags)
    n = len(params)
    learn_rates = ops.variable_v2(s, [n], DataType.FLOAT)
    min_lr = ops.const(s, 1e-9)
    max_lr = ops.const(s, 9e12)
    lr_init = ops.assign(s, learn_rates, ops.fill(s, ops.const(s, [n]), min_lr))
    s.tag_variable(lr_init, VarTag.INIT_ASSIGN)
    old_grads = []
    for param in params:
        old = ops.variable_v2(s, param.shape(), param.data_type())
        s.tag_variable(old, VarTag.INIT_ZEROS)
        old_grads.append(old)

    grads = ops.gradients(s, losses, params)
    axis0 = ops.const(s, 0)
    one = ops.const(s, 1.0)
    half = ops.const(s, 0.5)
    split_lrs = ops.split(s, axis0, learn_rates, n)
    update_ops = []
    for i, (param, grad, old) in enumerate(zip(params, grads, old_grads)):
        inv_norm = ops.rsqrt(s, _squared_norm(s, grad, axis0))
        mixed = ops.sum_(s, flatten(s, ops.mul(s, old, grad)), axis0)
        cos = ops.mul(s, mixed, inv_norm)
        # lr *= 1 + cos/2
        new_lr = ops.mul(s, split_lrs[i], ops.add(s, one, ops.mul(s, half, cos)))
        new_lr = ops.clip_by_value(s, new_lr, min_lr, max_lr)
        split_lrs[i] = new_lr
        grad = ops.mul(s, grad, inv_norm)
        scaled = ops.mul(s, new_lr, grad)
        scd = s.with_control_dependencies(scaled.op)
        update_ops += [ops.assign(scd, old, grad).op, ops.assign_sub(scd, param, scaled).op]

    scd = s.with_control_dependencies(*update_ops)
    new_lrs = ops.concat_v2(s, split_lrs, axis0) if n > 1 else split_lrs[0]
    lr_assign = ops.assign(scd, learn_rates, new_lrs)
    step_op = ops.no_op(scd.with_control_dependencies(lr_assign.op))
    return Optimizer("Layla", tuple(params), tuple(losses), learn_rates, step_op)


def weight_decay(s: Scope, ref: Optimizer, decay_rate: float) -> Optimizer:
    """Add decoupled weight decay to ref.

    Parameters updated by ref and tagged DECAY_L1 descend the gradient of
    their mean, those tagged DECAY_L2 the gradient of their L2 loss. Both are
    scaled by decay_rate and the learning rate of ref. The decay step runs
    after every step of ref.
    """
    ref_params = set(ref.params)
    axis0 = ops.const(s, 0)
    losses, params = [], []
    for p in s.get_params(VarTag.DECAY_L1):
        if p in ref_params:
            losses.append(ops.mean(s, flatten(s, p), axis0))
            if p not in params:
                params.append(p)
    for p in s.get_params(VarTag.DECAY_L2):
        if p in ref_params:
            losses.append(ops.l2_loss(s, p))
            if p not in params:
                params.append(p)

    decay_const = ops.const(s, decay_rate)
    if params:
        grads = ops.gradients(s, losses, params)
        lr = ref.learn_rate
        if lr.shape().num_dimensions > 0:
            # per-parameter rates, the first one scales the decay
            lr = ops.split(s, axis0, lr, lr.shape().size(-1))[0]
        rate = ops.mul(s, decay_const, lr)
        update_ops = [ops.assign_sub(s, p, ops.mul(s, rate, g)).op for p, g in zip(params, grads)]
    else:
        update_ops = []
    step_op = ops.no_op(s.with_control_dependencies(*update_ops))
    decay = Optimizer("wdecay", tuple(params), tuple(losses), decay_const, step_op)
    return ref.replace(name=ref.name + "W", decay=decay)


def optimizer_adamw(
    s: Scope,
    losses: Sequence[Output],
    decay_rate: float,
    learn_rate: float,
    alpha: float = 1e-3,
    beta1: float = 0.9,
    beta2: float = 0.999,
    *tags: VarTag,
) -> Optimizer:
    """Adam with decoupled weight decay (https://arxiv.org/abs/1711.05101)."""
    adam = optimizer_adam(s.sub_scope("adam"), losses, learn_rate, alpha, beta1, beta2, *tags)
    return weight_decay(s.sub_scope("wdecay"), adam, decay_rate)


def optimizer_laylaw(s: Scope, losses: Sequence[Output], decay_rate: float, *tags: VarTag) -> Optimizer:
    """Layla with decoupled weight decay."""
    layla = optimizer_layla(s.sub_scope("layla"), losses, *tags)
    return weight_decay(s.sub_scope("wdecay"), layla, decay_rate)


def run_steps(
    opt: Optimizer,
    sess: Session,
    num_steps: int,
    feeds: Mapping[Output, Any] | None = None,
    log_every: int | None = None,
) -> list[float]:
    """
    Run num_steps optimizer steps and return the first loss of every step.

    Args:
        opt: Optimizer to step
        sess: Session holding the variables
        num_steps: Number of steps
        feeds: Feeds passed to every step
        log_every: Print progress every N steps (None = silent)

    Returns:
        List of loss values, one per step
    """
    history = []
    fetches = [opt.losses[0], opt.learn_rate]
    for step in range(num_steps):
        loss, lr = opt.step(sess, feeds, fetches)
        history.append(float(loss))

        if log_every and step % log_every == 0:
            print(f"  Step {step}/{num_steps}: {opt.name} loss={float(loss):.6f}, lr={np.asarray(lr).ravel()[:4]}")

    return history
