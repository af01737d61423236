"""Resizing algorithms for particle filters.

Resizing changes the number of particles in a filter:
- Resampling into a different number of particles (multinomial, residual,
  and the optimal scheme of Fearnhead and Clifford)
- Replicating and dereplicating particles in blocks
- Coalescing equivalent traces
- Introducing freshly generated particles

All of these operate on a full :class:`ParticleFilterState` only; applying
them to a view raises ``TypeError``.

References
----------
P. Fearnhead and P. Clifford, "On-line inference for hidden Markov models via
particle filters", JRSS B 65(4), 887-899 (2003).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Mapping
from typing import Any

import jax
import jax.numpy as jnp
from beartype import beartype
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float, PRNGKeyArray, jaxtyped

from tracefilter.core.particles import ParticleFilterState, require_full_state
from tracefilter.core.resampling import (
    PriorityFn,
    multinomial_indices,
    resample_particles,
    residual_indices,
    systematic_indices,
)
from tracefilter.core.weights import checked_softmax
from tracefilter.errors import ConfigurationError
from tracefilter.models.base import generate_particle

__all__ = [
    "multinomial_resize",
    "residual_resize",
    "optimal_resize",
    "optimal_inverse_threshold",
    "resize",
    "replicate",
    "dereplicate",
    "coalesce",
    "introduce",
]

logger = logging.getLogger(__name__)


def multinomial_resize(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    n_particles: int,
    priority_fn: PriorityFn | None = None,
    on_invalid: str = "warn",
) -> ParticleFilterState:
    """Resize a particle filter through multinomial resampling.

    Each of the ``n_particles`` new particles is drawn independently with
    probability proportional to the weight (or priority) of its parent.
    """
    require_full_state(state, "multinomial_resize")
    return resample_particles(
        state,
        n_particles,
        lambda weights: multinomial_indices(key, weights, n_particles),
        priority_fn=priority_fn,
        on_invalid=on_invalid,
    )


def residual_resize(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    n_particles: int,
    priority_fn: PriorityFn | None = None,
    on_invalid: str = "warn",
) -> ParticleFilterState:
    """Resize a particle filter through residual resampling.

    For each particle with normalized weight ``w_i``, ``floor(M * w_i)``
    copies are kept, where ``M`` is ``n_particles``. The remainder are
    sampled with probability proportional to ``M * w_i - floor(M * w_i)``.
    """
    require_full_state(state, "residual_resize")
    return resample_particles(
        state,
        n_particles,
        lambda weights: residual_indices(key, weights, n_particles),
        priority_fn=priority_fn,
        on_invalid=on_invalid,
    )


@jaxtyped(typechecker=beartype)
def optimal_inverse_threshold(
    weights: Float[Array, " n_particles"],
    n_samples: int,
) -> tuple[float, int]:
    """Inverse weight threshold for optimal resizing.

    Finds ``c`` such that ``sum_i min(c * w_i, 1) = n_samples``. Particles with
    ``c * w_i >= 1`` are kept; the rest share ``n_samples - n_kept`` slots.

    Parameters
    ----------
    weights : Array
        Normalized weights.
    n_samples : int
        Number of particles after resizing.

    Returns
    -------
    inv_threshold : float
        The inverse threshold ``c``.
    n_lower : int
        Number of particles below the threshold, i.e. the position of the
        smallest kept weight in ascending order.
    """
    n_particles = weights.shape[0]
    sorted_weights = jnp.sort(weights)
    cumsum = jnp.cumsum(sorted_weights)
    n_above = n_particles - 1 - jnp.arange(n_particles)

    # Number of slots used if every weight >= w_j were kept
    n_check = cumsum / sorted_weights + n_above
    eps = jnp.finfo(n_check.dtype).eps
    feasible = n_check <= n_samples + eps * jnp.abs(n_check)
    if not bool(jnp.any(feasible)):
        return float(n_samples), n_particles

    n_lower = int(jnp.argmax(feasible))
    lower_mass = float(cumsum[n_lower - 1]) if n_lower > 0 else 0.0
    n_kept = n_particles - n_lower
    if lower_mass <= 0.0:
        return float("inf"), n_lower
    return (n_samples - n_kept) / lower_mass, n_lower


def optimal_resize(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    n_particles: int,
    on_invalid: str = "warn",
) -> ParticleFilterState:
    """Resize a particle filter with the optimal scheme of Fearnhead and Clifford.

    Particles whose weight exceeds the threshold ``1 / c`` are kept once with
    their original weight. The remaining slots are filled by a single
    systematic pass over the other particles, each of which is then given
    weight ``W / c``, with ``W`` the total weight. If the original particles
    are unique, so are the resized ones. Total weight is preserved up to the
    factor ``n_particles / N``.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    state : ParticleFilterState
        State to shrink in place.
    n_particles : int
        Number of particles after resizing, at most the current number.
    on_invalid : str
        Policy for degenerate weights: "error", "warn" or "silent".

    Returns
    -------
    state : ParticleFilterState
        The same state, resized.
    """
    require_full_state(state, "optimal_resize")
    n_old = state.n_particles
    if n_particles > n_old:
        raise ValueError(
            f"Optimal resizing cannot grow a filter from {n_old} "
            f"to {n_particles} particles."
        )
    if n_particles == n_old:
        state.parents = jnp.arange(n_old)
        return state

    log_weights = state.log_weights
    weights, invalid = checked_softmax(log_weights, on_invalid)
    inv_threshold, n_lower = optimal_inverse_threshold(weights, n_particles)

    order = jnp.argsort(weights)
    keep_idxs = jnp.sort(order[n_lower:])
    strat_idxs = jnp.sort(order[:n_lower])
    n_keep = keep_idxs.shape[0]
    n_resample = n_particles - n_keep

    if n_resample > 0:
        strat_weights, _ = checked_softmax(log_weights[strat_idxs], on_invalid)
        picks = systematic_indices(key, strat_weights, n_resample)
        resample_idxs = strat_idxs[picks]
    else:
        resample_idxs = jnp.zeros(0, dtype=int)
    parents = jnp.concatenate([keep_idxs, resample_idxs])

    if invalid:
        new_log_weights = jnp.zeros(n_particles)
    else:
        log_n_ratio = jnp.log(n_particles) - jnp.log(n_old)
        resample_log_weight = logsumexp(log_weights) - jnp.log(inv_threshold)
        new_log_weights = jnp.concatenate(
            [
                log_weights[keep_idxs] + log_n_ratio,
                jnp.full(n_resample, resample_log_weight + log_n_ratio),
            ]
        )

    logger.debug(
        "Optimal resize kept %d and resampled %d particles.", n_keep, n_resample
    )
    state._commit(parents, new_log_weights)
    return state


def resize(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    n_particles: int,
    method: str = "multinomial",
    **kwargs,
) -> ParticleFilterState:
    """Resize a particle filter by resampling until ``n_particles`` are drawn.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key.
    state : ParticleFilterState
        State to resize in place.
    n_particles : int
        Number of particles after resizing.
    method : str
        "multinomial", "residual" or "optimal".
    **kwargs
        Passed on to the method (``priority_fn`` for multinomial and residual
        resizing, ``on_invalid`` for all).

    Returns
    -------
    state : ParticleFilterState
        The same state, resized.
    """
    methods = {
        "multinomial": multinomial_resize,
        "residual": residual_resize,
        "optimal": optimal_resize,
    }
    if method not in methods:
        raise ConfigurationError(f"Resizing method {method!r} not recognized.")
    return methods[method](key, state, n_particles, **kwargs)


def _layout_indices(n_particles: int, n_replicates: int, layout: str) -> Array:
    idxs = jnp.arange(n_particles)
    if layout == "contiguous":
        return jnp.repeat(idxs, n_replicates)
    if layout == "interleaved":
        return jnp.tile(idxs, n_replicates)
    raise ConfigurationError(f"Layout {layout!r} not recognized.")


def replicate(
    state: ParticleFilterState,
    n_replicates: int,
    layout: str = "contiguous",
) -> ParticleFilterState:
    """Expand a particle filter by replicating each particle ``n_replicates`` times.

    With the "contiguous" layout the replicates of particle ``i`` occupy
    indices ``[i*k, (i+1)*k)``; with the "interleaved" layout they occupy
    ``i, i + N, i + 2N, ...``. Each replicate keeps its parent's weight.
    """
    require_full_state(state, "replicate")
    if n_replicates < 1:
        raise ValueError(f"n_replicates must be positive, got {n_replicates}.")
    parents = _layout_indices(state.n_particles, n_replicates, layout)
    state._commit(parents, state.log_weights[parents])
    return state


def dereplicate(
    state: ParticleFilterState,
    n_replicates: int,
    layout: str = "contiguous",
    method: str = "keepfirst",
    key: PRNGKeyArray | None = None,
) -> ParticleFilterState:
    """Shrink a particle filter by retaining one of every ``n_replicates`` particles.

    Parameters
    ----------
    state : ParticleFilterState
        State to shrink in place. Its size must be a multiple of
        ``n_replicates``.
    n_replicates : int
        Size of each block of replicates.
    layout : str
        "contiguous" if each block occupies consecutive indices,
        "interleaved" if block ``i`` is ``i, i + N/k, i + 2N/k, ...``.
    method : str
        "keepfirst" retains the first particle of each block with its weight,
        exactly undoing :func:`replicate`. "sample" draws one particle per
        block according to the normalized weights within the block, and gives
        it the block's average weight.
    key : PRNGKeyArray, optional
        JAX random key, required by the "sample" method.

    Returns
    -------
    state : ParticleFilterState
        The same state, shrunk.
    """
    require_full_state(state, "dereplicate")
    n_old = state.n_particles
    if n_replicates < 1 or n_old % n_replicates != 0:
        raise ValueError(
            f"Cannot dereplicate {n_old} particles in blocks of {n_replicates}."
        )
    n_new = n_old // n_replicates
    if layout == "contiguous":
        blocks = jnp.arange(n_old).reshape(n_new, n_replicates)
    elif layout == "interleaved":
        blocks = jnp.arange(n_old).reshape(n_replicates, n_new).T
    else:
        raise ConfigurationError(f"Layout {layout!r} not recognized.")

    log_weights = state.log_weights
    if method == "keepfirst":
        parents = blocks[:, 0]
        new_log_weights = log_weights[parents]
    elif method == "sample":
        if key is None:
            raise ValueError("Dereplicating by sampling requires a random key.")
        block_log_weights = log_weights[blocks]
        choice = jax.random.categorical(key, block_log_weights, axis=-1)
        parents = blocks[jnp.arange(n_new), choice]
        new_log_weights = logsumexp(block_log_weights, axis=1) - jnp.log(n_replicates)
    else:
        raise ConfigurationError(f"Dereplication method {method!r} not recognized.")

    state._commit(parents, new_log_weights)
    return state


def _choices_key(trace: Any) -> Hashable:
    return frozenset(trace.get_choices().items())


def coalesce(
    state: ParticleFilterState,
    by: Callable[[Any], Hashable] | None = None,
) -> ParticleFilterState:
    """Merge traces that are equivalent under ``by``.

    Each group of equivalent traces is replaced by its first member, with
    weight equal to the group's total weight times ``N_new / N_old``. By
    default traces are equivalent when their choices are equal.

    Parameters
    ----------
    state : ParticleFilterState
        State to coalesce in place.
    by : Callable, optional
        Maps a trace to a hashable key. Defaults to the frozen set of its
        choices.

    Returns
    -------
    state : ParticleFilterState
        The same state, coalesced.
    """
    require_full_state(state, "coalesce")
    if state.n_particles == 0:
        return state
    by = _choices_key if by is None else by

    groups: dict[Hashable, list[int]] = {}
    for i, trace in enumerate(state.traces):
        groups.setdefault(by(trace), []).append(i)

    n_old = state.n_particles
    n_new = len(groups)
    log_weights = state.log_weights
    parents = jnp.asarray([members[0] for members in groups.values()], dtype=int)
    group_log_weights = jnp.stack(
        [logsumexp(log_weights[jnp.asarray(members)]) for members in groups.values()]
    )
    new_log_weights = group_log_weights + jnp.log(n_new) - jnp.log(n_old)

    logger.debug("Coalesced %d particles into %d.", n_old, n_new)
    state._commit(parents, new_log_weights)
    return state


def introduce(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    observations: Mapping[Hashable, Any],
    n_particles: int,
    model: Any | None = None,
    model_args: tuple | None = None,
    proposal: Any | None = None,
    proposal_args: tuple = (),
) -> ParticleFilterState:
    """Append ``n_particles`` freshly generated particles to a particle filter.

    New traces are generated from ``model`` constrained to ``observations``,
    optionally using ``proposal`` to propose the unobserved choices. If the
    model or its arguments are omitted, those of the first existing trace
    are used. The running log marginal likelihood is first folded into the
    weights of the existing particles, so that old and new particles are
    weighted on the same scale.

    New particles have no parent and are marked ``-1`` in ``state.parents``.
    """
    require_full_state(state, "introduce")
    if model is None or model_args is None:
        if state.n_particles == 0:
            raise ValueError(
                "Cannot infer the model of an empty particle filter; "
                "pass model and model_args explicitly."
            )
        first = state.traces[0]
        model = first.get_gen_fn() if model is None else model
        model_args = first.get_args() if model_args is None else model_args

    log_weights = state.log_weights
    if state.log_ml_est != 0.0:
        log_weights = log_weights + state.log_ml_est
        state.log_ml_est = 0.0

    new_traces = list(state.traces)
    new_log_weights = []
    for subkey in jax.random.split(key, n_particles):
        trace, log_weight = generate_particle(
            subkey, model, model_args, observations, proposal, proposal_args
        )
        new_traces.append(trace)
        new_log_weights.append(log_weight)

    n_old = state.n_particles
    state.parents = jnp.concatenate(
        [jnp.arange(n_old), jnp.full(n_particles, -1, dtype=int)]
    )
    log_weights = jnp.concatenate(
        [log_weights, jnp.asarray(new_log_weights, dtype=log_weights.dtype)]
    )
    state._commit_traces(new_traces, log_weights)
    return state
