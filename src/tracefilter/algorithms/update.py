"""Particle filter update.

An update adjusts the model arguments of every particle and conditions on new
observations. New latent choices are sampled from the model's internal
proposal, or from a custom proposal, optionally with a backward proposal and
a trace transform for moves that change existing choices.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import jax
import jax.numpy as jnp
from jaxtyping import PRNGKeyArray

from tracefilter.algorithms.translate import (
    ExtendingTraceTranslator,
    TraceTransform,
    UpdatingTraceTranslator,
)
from tracefilter.core.particles import ParticleFilterView
from tracefilter.core.stratification import stratified_map
from tracefilter.errors import StructuralUpdateError
from tracefilter.models.base import (
    ChoiceMap,
    GenerativeFunction,
    Trace,
    merge_choices,
)

__all__ = ["update", "update_particle"]

logger = logging.getLogger(__name__)


def update_particle(
    key: PRNGKeyArray,
    trace: Trace,
    new_args: tuple,
    observations: ChoiceMap | None,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
    backward_proposal: GenerativeFunction | None = None,
    backward_args: tuple = (),
    transform: TraceTransform | None = None,
    check: bool = False,
) -> tuple[Trace, float]:
    """Update a single trace. Returns ``(new_trace, log_weight_increment)``.

    See :func:`update` for the meaning of the arguments.
    """
    if proposal is None and (backward_proposal is not None or transform is not None):
        raise ValueError("A backward proposal or transform requires a proposal.")

    if transform is not None:
        if backward_proposal is None:
            translator = ExtendingTraceTranslator(
                q_forward=proposal,
                q_forward_args=proposal_args,
                new_args=new_args,
                new_observations=observations,
                transform=transform,
            )
        else:
            translator = UpdatingTraceTranslator(
                q_forward=proposal,
                q_backward=backward_proposal,
                transform=transform,
                q_forward_args=proposal_args,
                q_backward_args=backward_args,
                new_args=new_args,
                new_observations=observations,
            )
        return translator(key, trace, check=check)

    prop_key, update_key = jax.random.split(key)
    if proposal is None:
        prop_choices, prop_score = None, 0.0
    else:
        prop_choices, prop_score, _ = proposal.propose(
            prop_key, (trace, *proposal_args)
        )
    constraints = merge_choices(observations, prop_choices)
    new_trace, up_weight, discard = trace.get_gen_fn().update(
        update_key, trace, new_args, constraints
    )

    bwd_score = 0.0
    if discard:
        if backward_proposal is None:
            logger.error("Update discarded choices: %s", discard)
            raise StructuralUpdateError(
                f"Choices were updated or deleted: {sorted(map(repr, discard))}"
            )
        bwd_score, _ = backward_proposal.assess((new_trace, *backward_args), discard)
    return new_trace, up_weight - prop_score + bwd_score


def update(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    new_args: tuple,
    observations: ChoiceMap | None,
    *,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
    backward_proposal: GenerativeFunction | None = None,
    backward_args: tuple = (),
    transform: TraceTransform | None = None,
    strata: Iterable[ChoiceMap] | None = None,
    layout: str = "interleaved",
    check: bool = False,
) -> ParticleFilterView:
    """Perform a particle filter update.

    Each trace is updated to ``new_args`` and constrained to
    ``observations``, and its log weight is incremented by the importance
    weight of the update. The proposal arguments select the variant:

    - No proposal: new choices come from the model's internal proposal. It
      is an error if the update changes or deletes existing choices.
    - ``proposal``: called with ``(trace, *proposal_args)``; its choices are
      merged into the constraints. Existing choices must be preserved.
    - ``proposal`` and ``backward_proposal``: choices discarded by the
      update are scored under ``backward_proposal``, called with
      ``(new_trace, *backward_args)``.
    - ``proposal`` and ``transform``: the proposed choices are passed through
      the bijection ``transform`` (see :class:`ExtendingTraceTranslator`).
    - ``proposal``, ``backward_proposal`` and ``transform``: a general move
      (see :class:`UpdatingTraceTranslator`).

    With ``strata``, the update is stratified: each particle is additionally
    constrained to the choices of its assigned stratum, using the same
    allocation as stratified initialization (interleaved by default).

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    state : ParticleFilterView
        State or view to update in place.
    new_args : tuple
        New model arguments.
    observations : dict
        New observed choices.
    check : bool
        Run the trace translator self-checks, if a transform is used.

    Returns
    -------
    state : ParticleFilterView
        The same state, updated.
    """
    n_particles = state.n_particles
    if n_particles == 0:
        return state
    strat_key, key = jax.random.split(key)
    keys = jax.random.split(key, n_particles)
    traces = state.traces

    def update_one(i, stratum):
        return update_particle(
            keys[i],
            traces[i],
            new_args,
            merge_choices(observations, stratum),
            proposal,
            proposal_args,
            backward_proposal,
            backward_args,
            transform,
            check,
        )

    if strata is None:
        results = [update_one(i, None) for i in range(n_particles)]
    else:
        results = stratified_map(strat_key, update_one, n_particles, strata, layout)

    new_traces = [trace for trace, _ in results]
    increments = jnp.asarray([float(w) for _, w in results], dtype=float)
    state._commit_traces(new_traces, state.log_weights + increments)
    return state
