"""Resampling algorithms for particle filters.

This module provides resampling schemes that keep the number of particles
fixed while stochastically pruning low-weight particles:
- Multinomial resampling (simple, highest variance)
- Residual resampling (deterministic floor(N*w_i) copies plus a random remainder)
- Stratified resampling (one draw per weight stratum, optionally sorted)

Each scheme accepts a ``priority_fn`` mapping log-weights to log-priorities
(e.g. ``lambda w: w / 2`` for less aggressive pruning). Particles are then
selected according to their priorities and reweighted by weight / priority,
so the marginal likelihood estimate stays unbiased. See R. Douc and
O. Cappé, "Comparison of resampling schemes for particle filtering" (2005).
"""

from __future__ import annotations

from collections.abc import Callable

import jax
import jax.numpy as jnp
from beartype import beartype
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float, Int, PRNGKeyArray, jaxtyped

from tracefilter.core.particles import ParticleFilterView
from tracefilter.core.weights import checked_softmax
from tracefilter.errors import ConfigurationError

__all__ = [
    "multinomial_indices",
    "residual_indices",
    "stratified_indices",
    "systematic_indices",
    "multinomial_resample",
    "residual_resample",
    "stratified_resample",
    "resample",
    "resample_particles",
]

PriorityFn = Callable[[Float[Array, " n_particles"]], Float[Array, " n_particles"]]


@jaxtyped(typechecker=beartype)
def multinomial_indices(
    key: PRNGKeyArray,
    weights: Float[Array, " n_particles"],
    n_samples: int,
) -> Int[Array, " n_samples"]:
    """Draw ``n_samples`` i.i.d. categorical indices.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    weights : Array
        Normalized weights.
    n_samples : int
        Number of indices to draw.

    Returns
    -------
    indices : Array
        Sampled particle indices.
    """
    return jax.random.categorical(key, jnp.log(weights), shape=(n_samples,))


@jaxtyped(typechecker=beartype)
def residual_indices(
    key: PRNGKeyArray,
    weights: Float[Array, " n_particles"],
    n_samples: int,
) -> Int[Array, " n_samples"]:
    """Residual resampling indices.

    First deterministically copies ``floor(n_samples * w_i)`` copies of
    particle i, then samples the remaining slots from the residual weights
    ``n_samples * w_i - floor(n_samples * w_i)``.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    weights : Array
        Normalized weights.
    n_samples : int
        Number of indices to draw.

    Returns
    -------
    indices : Array
        Deterministic copies first, followed by the residual draws.
    """
    n_particles = weights.shape[0]
    scaled_weights = n_samples * weights
    counts = jnp.floor(scaled_weights).astype(int)
    n_deterministic = int(jnp.sum(counts))
    det_indices = jnp.repeat(
        jnp.arange(n_particles), counts, total_repeat_length=n_deterministic
    )
    n_residual = n_samples - n_deterministic
    if n_residual == 0:
        return det_indices

    residuals = scaled_weights - counts
    residuals = residuals / jnp.sum(residuals)
    stoch_indices = jax.random.categorical(
        key, jnp.log(residuals), shape=(n_residual,)
    )
    return jnp.concatenate([det_indices, stoch_indices])


@jaxtyped(typechecker=beartype)
def stratified_indices(
    key: PRNGKeyArray,
    weights: Float[Array, " n_particles"],
    n_samples: int,
    sort_particles: bool = True,
) -> Int[Array, " n_samples"]:
    """Stratified resampling indices.

    Draws ``u_i`` uniformly within each stratum ``[i/n, (i+1)/n)`` and selects
    the particle whose cumulative-weight bucket contains it. Sorting the
    particles by descending weight first guarantees the heaviest particle at
    least ``floor(n * w_max)`` copies.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    weights : Array
        Normalized weights.
    n_samples : int
        Number of strata (and indices to draw).
    sort_particles : bool
        Whether to sort particles by descending weight before stratifying.

    Returns
    -------
    indices : Array
        Resampled particle indices.
    """
    n_particles = weights.shape[0]
    order = jnp.argsort(-weights) if sort_particles else jnp.arange(n_particles)
    cumsum = jnp.cumsum(weights[order])

    u = jax.random.uniform(key, shape=(n_samples,))
    positions = (jnp.arange(n_samples) + u) / n_samples

    bucket = jnp.searchsorted(cumsum, positions, side="left")
    bucket = jnp.clip(bucket, 0, n_particles - 1)
    return order[bucket]


@jaxtyped(typechecker=beartype)
def systematic_indices(
    key: PRNGKeyArray,
    weights: Float[Array, " n_particles"],
    n_samples: int,
) -> Int[Array, " n_samples"]:
    """Systematic resampling indices from a single uniform offset.

    If every weight is below ``1 / n_samples``, no index is drawn twice.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    weights : Array
        Normalized weights.
    n_samples : int
        Number of indices to draw.

    Returns
    -------
    indices : Array
        Resampled particle indices, in increasing order.
    """
    cumsum = jnp.cumsum(weights)
    cumsum = (cumsum / cumsum[-1]).at[-1].set(1.0)

    u0 = jax.random.uniform(key)
    positions = (u0 + jnp.arange(n_samples)) / n_samples

    return jnp.searchsorted(cumsum, positions, side="right")


def resample_particles(
    state: ParticleFilterView,
    n_particles: int,
    select: Callable[[Float[Array, " n_old"]], Int[Array, " n_new"]],
    priority_fn: PriorityFn | None = None,
    on_invalid: str = "warn",
) -> ParticleFilterView:
    """Resample ``state`` into ``n_particles`` particles in place.

    Shared driver for all resampling and resizing schemes. ``select`` maps
    normalized priority weights to parent indices.

    Parameters
    ----------
    state : ParticleFilterView
        State or view to resample. Views must keep their size.
    n_particles : int
        Number of particles after resampling.
    select : Callable
        Index kernel applied to the normalized priority weights.
    priority_fn : Callable, optional
        Maps log-weights to log-priorities used for selection.
    on_invalid : str
        Policy for degenerate weights: "error", "warn" or "silent".

    Returns
    -------
    state : ParticleFilterView
        The same state, resampled.
    """
    if state.n_particles == 0:
        return state
    log_weights = state.log_weights
    log_priorities = log_weights if priority_fn is None else priority_fn(log_weights)

    weights, invalid = checked_softmax(log_priorities, on_invalid)
    parents = select(weights)

    # Reweight so the new generation carries the outgoing total weight
    log_total = state._absorb_log_ml_increment(n_particles)
    if priority_fn is None or invalid:
        new_log_weights = jnp.full(n_particles, log_total - jnp.log(n_particles))
    else:
        ratios = log_weights[parents] - log_priorities[parents]
        new_log_weights = ratios + (log_total - logsumexp(ratios))

    state._commit(parents, new_log_weights)
    return state


def multinomial_resample(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    priority_fn: PriorityFn | None = None,
    on_invalid: str = "warn",
) -> ParticleFilterView:
    """Multinomial resampling of all particles in ``state``.

    Each particle is resampled with probability proportional to its weight
    (or priority, if ``priority_fn`` is given).
    """
    n_particles = state.n_particles
    return resample_particles(
        state,
        n_particles,
        lambda weights: multinomial_indices(key, weights, n_particles),
        priority_fn=priority_fn,
        on_invalid=on_invalid,
    )


def residual_resample(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    priority_fn: PriorityFn | None = None,
    on_invalid: str = "warn",
) -> ParticleFilterView:
    """Residual resampling of all particles in ``state``.

    For each particle with normalized weight ``w_i``, ``floor(N * w_i)``
    copies are kept, and the remainder are sampled with probability
    proportional to ``N * w_i - floor(N * w_i)``.
    """
    n_particles = state.n_particles
    return resample_particles(
        state,
        n_particles,
        lambda weights: residual_indices(key, weights, n_particles),
        priority_fn=priority_fn,
        on_invalid=on_invalid,
    )


def stratified_resample(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    priority_fn: PriorityFn | None = None,
    sort_particles: bool = True,
    on_invalid: str = "warn",
) -> ParticleFilterView:
    """Stratified resampling of all particles in ``state``.

    With uniform weights every particle is kept exactly once.
    """
    n_particles = state.n_particles
    return resample_particles(
        state,
        n_particles,
        lambda weights: stratified_indices(key, weights, n_particles, sort_particles),
        priority_fn=priority_fn,
        on_invalid=on_invalid,
    )


def resample(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    method: str = "multinomial",
    **kwargs,
) -> ParticleFilterView:
    """Resample particles according to specified method.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    state : ParticleFilterView
        State or view to resample in place.
    method : str
        "multinomial", "residual" or "stratified".
    **kwargs
        Passed on to the method (``priority_fn``, ``on_invalid``, and
        ``sort_particles`` for stratified resampling).

    Returns
    -------
    state : ParticleFilterView
        The same state, resampled.
    """
    methods = {
        "multinomial": multinomial_resample,
        "residual": residual_resample,
        "stratified": stratified_resample,
    }
    if method not in methods:
        raise ConfigurationError(f"Resampling method {method!r} not recognized.")
    return methods[method](key, state, **kwargs)
