"""Rejuvenation moves for particle filters.

Rejuvenation applies a kernel to every particle to restore diversity after
resampling. Two kinds of kernels are supported:
- MCMC kernels returning ``(trace, accepted)``, which leave the target
  invariant and so do not change the weights (:func:`move_accept`)
- Move-reweight kernels returning ``(trace, log_rel_weight)``, whose relative
  weights are accumulated into the particle weights (:func:`move_reweight`)

References
----------
R. A. G. Marques and G. Storvik, "Particle move-reweighting strategies for
online inference", Statistical Research Report (2013).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import jax
import jax.numpy as jnp
from jaxtyping import PRNGKeyArray

from tracefilter.algorithms.translate import (
    TraceTransform,
    UpdatingTraceTranslator,
    check_observations,
)
from tracefilter.core.particles import ParticleFilterView
from tracefilter.errors import ConfigurationError
from tracefilter.models.base import ChoiceMap, GenerativeFunction, Trace

__all__ = [
    "metropolis_hastings",
    "move_reweight_kernel",
    "move_accept",
    "move_reweight",
    "rejuvenate",
]

logger = logging.getLogger(__name__)

Kernel = Callable[..., tuple[Trace, Any]]


def _propose_update(
    key: PRNGKeyArray,
    trace: Trace,
    proposal: GenerativeFunction,
    proposal_args: tuple,
    backward_proposal: GenerativeFunction,
    backward_args: tuple,
) -> tuple[Trace, float]:
    prop_key, update_key = jax.random.split(key)
    fwd_choices, fwd_score, _ = proposal.propose(prop_key, (trace, *proposal_args))
    new_trace, weight, discard = trace.get_gen_fn().update(
        update_key, trace, trace.get_args(), fwd_choices
    )
    bwd_score, _ = backward_proposal.assess((new_trace, *backward_args), discard)
    return new_trace, weight - fwd_score + bwd_score


def metropolis_hastings(
    key: PRNGKeyArray,
    trace: Trace,
    proposal: GenerativeFunction,
    proposal_args: tuple = (),
    check: bool = False,
    observations: ChoiceMap | None = None,
) -> tuple[Trace, bool]:
    """Metropolis-Hastings move with a custom proposal.

    ``proposal`` is called with ``(trace, *proposal_args)`` to propose new
    values for some choices, and scores the replaced values given the new
    trace for the reverse move.

    Parameters
    ----------
    key : PRNGKeyArray
        Random key.
    trace : Trace
        Current trace.
    proposal : GenerativeFunction
        Proposal over the choices to change.
    proposal_args : tuple
        Additional proposal arguments.
    check : bool
        Verify that ``observations`` hold in the proposed trace.
    observations : dict, optional
        Observed choices.

    Returns
    -------
    trace : Trace
        New trace if accepted, otherwise the current trace.
    accepted : bool
        Whether the move was accepted.
    """
    move_key, accept_key = jax.random.split(key)
    new_trace, log_alpha = _propose_update(
        move_key, trace, proposal, proposal_args, proposal, proposal_args
    )
    if check:
        check_observations(new_trace, observations)
    if bool(jnp.log(jax.random.uniform(accept_key)) < log_alpha):
        return new_trace, True
    return trace, False


def move_reweight_kernel(
    key: PRNGKeyArray,
    trace: Trace,
    proposal: GenerativeFunction,
    proposal_args: tuple = (),
    backward_proposal: GenerativeFunction | None = None,
    backward_args: tuple | None = None,
    transform: TraceTransform | None = None,
    check: bool = False,
    observations: ChoiceMap | None = None,
) -> tuple[Trace, float]:
    """Move-reweight kernel: always move, and return the relative log weight.

    The forward ``proposal`` (called with ``(trace, *proposal_args)``)
    proposes new choices. The choices they replace are scored under
    ``backward_proposal`` (defaulting to ``proposal``), which must share the
    forward proposal's support. If a ``transform`` is given, the move is a
    general trace translation through that bijection.

    Returns
    -------
    trace : Trace
        The moved trace.
    log_rel_weight : float
        Relative log importance weight of the move.
    """
    if backward_proposal is None:
        backward_proposal = proposal
    if backward_args is None:
        backward_args = proposal_args

    if transform is None:
        new_trace, rel_weight = _propose_update(
            key, trace, proposal, proposal_args, backward_proposal, backward_args
        )
        if check:
            check_observations(new_trace, observations)
        return new_trace, rel_weight

    translator = UpdatingTraceTranslator(
        q_forward=proposal,
        q_backward=backward_proposal,
        transform=transform,
        q_forward_args=proposal_args,
        q_backward_args=backward_args,
    )
    new_trace, rel_weight = translator(key, trace)
    if check:
        check_observations(new_trace, observations)
    return new_trace, rel_weight


def move_accept(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    kernel: Kernel,
    kernel_args: tuple = (),
    n_iters: int = 1,
    **kwargs,
) -> ParticleFilterView:
    """Rejuvenate particles by repeated application of an MCMC kernel.

    ``kernel(key, trace, *kernel_args, **kwargs)`` must return
    ``(trace, accepted)``. It is applied ``n_iters`` times to each trace.
    Weights are unchanged.
    """
    if state.n_particles == 0:
        return state
    new_traces = []
    keys = jax.random.split(key, state.n_particles)
    for particle_key, trace in zip(keys, state.traces):
        for iter_key in jax.random.split(particle_key, n_iters):
            trace, accepted = kernel(iter_key, trace, *kernel_args, **kwargs)
            logger.debug("Accepted: %s", accepted)
        new_traces.append(trace)
    state._commit_traces(new_traces, state.log_weights)
    return state


def move_reweight(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    kernel: Kernel = move_reweight_kernel,
    kernel_args: tuple = (),
    n_iters: int = 1,
    **kwargs,
) -> ParticleFilterView:
    """Rejuvenate and reweight particles with a move-reweight kernel.

    ``kernel(key, trace, *kernel_args, **kwargs)`` must return
    ``(trace, log_rel_weight)``. It is applied ``n_iters`` times to each
    trace, and the relative weights are added to the particle's log weight.
    """
    if state.n_particles == 0:
        return state
    new_traces = []
    increments = []
    keys = jax.random.split(key, state.n_particles)
    for particle_key, trace in zip(keys, state.traces):
        log_weight = 0.0
        for iter_key in jax.random.split(particle_key, n_iters):
            trace, rel_weight = kernel(iter_key, trace, *kernel_args, **kwargs)
            logger.debug("Relative weight: %s", rel_weight)
            log_weight += float(rel_weight)
        new_traces.append(trace)
        increments.append(log_weight)
    log_weights = state.log_weights + jnp.asarray(increments, dtype=float)
    state._commit_traces(new_traces, log_weights)
    return state


def rejuvenate(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    kernel: Kernel,
    kernel_args: tuple = (),
    n_iters: int = 1,
    method: str = "move",
    **kwargs,
) -> ParticleFilterView:
    """Rejuvenate particles by repeated application of ``kernel``.

    Parameters
    ----------
    key : PRNGKeyArray
        Random key.
    state : ParticleFilterView
        State or view to rejuvenate in place.
    kernel : Callable
        Kernel taking ``(key, trace, *kernel_args, **kwargs)``.
    kernel_args : tuple
        Additional kernel arguments.
    n_iters : int
        Number of kernel applications per particle.
    method : str
        "move" for MCMC kernels, "reweight" for move-reweight kernels.

    Returns
    -------
    state : ParticleFilterView
        The same state, rejuvenated.
    """
    methods = {
        "move": move_accept,
        "reweight": move_reweight,
    }
    if method not in methods:
        raise ConfigurationError(f"Rejuvenation method {method!r} not recognized.")
    return methods[method](key, state, kernel, kernel_args, n_iters, **kwargs)
