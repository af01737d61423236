"""Particle filter initialization."""

from __future__ import annotations

from collections.abc import Iterable

import jax
import jax.numpy as jnp
from jaxtyping import PRNGKeyArray

from tracefilter.core.particles import ParticleFilterState
from tracefilter.core.stratification import stratified_map
from tracefilter.models.base import (
    ChoiceMap,
    GenerativeFunction,
    generate_particle,
    merge_choices,
)

__all__ = ["initialize"]


def initialize(
    key: PRNGKeyArray,
    model: GenerativeFunction,
    model_args: tuple,
    observations: ChoiceMap | None,
    n_particles: int,
    *,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
    strata: Iterable[ChoiceMap] | None = None,
    layout: str = "contiguous",
) -> ParticleFilterState:
    """Initialize a particle filter.

    Generates ``n_particles`` traces from ``model`` constrained to
    ``observations``. A custom ``proposal``, called with ``proposal_args``,
    can propose the unobserved choices, in which case each particle is
    weighted by the model density over the proposal density.

    With ``strata``, initialization is stratified: every trace is also
    constrained to the choices of the stratum its index is assigned to.
    For ``N`` particles and ``K`` strata, each stratum receives
    ``B = N // K`` particles, in contiguous blocks or interleaved according
    to ``layout``. The remaining ``N - K*B`` particles are assigned to random
    strata.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    model : GenerativeFunction
        Model to generate traces from.
    model_args : tuple
        Model arguments.
    observations : dict
        Observed choices.
    n_particles : int
        Number of particles.
    proposal : GenerativeFunction, optional
        Proposal for the unobserved choices.
    proposal_args : tuple
        Proposal arguments.
    strata : iterable of dict, optional
        Choice maps, one per stratum.
    layout : str
        "contiguous" or "interleaved".

    Returns
    -------
    state : ParticleFilterState
        The initialized particle filter.
    """
    strat_key, key = jax.random.split(key)
    keys = jax.random.split(key, n_particles)

    def make_particle(i, stratum):
        constraints = merge_choices(stratum, observations)
        return generate_particle(
            keys[i], model, model_args, constraints, proposal, proposal_args
        )

    if strata is None:
        particles = [make_particle(i, None) for i in range(n_particles)]
    else:
        particles = stratified_map(strat_key, make_particle, n_particles, strata, layout)

    traces = [trace for trace, _ in particles]
    log_weights = jnp.asarray([float(w) for _, w in particles], dtype=float)
    return ParticleFilterState.from_traces(traces, log_weights)
