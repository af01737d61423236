"""Log-weight normalization and degeneracy handling.

This module provides the weight arithmetic shared by every resampling and
resizing scheme:
- Log-space normalization and softmax
- Effective sample size (ESS)
- Softmax with detection of degenerate (NaN, all -inf, all zero) weights
- Policy-driven fallback for degenerate weights
"""

from __future__ import annotations

import logging

import jax.numpy as jnp
from beartype import beartype
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float, jaxtyped

from tracefilter.errors import ConfigurationError, InvalidWeightsError

__all__ = [
    "normalize_log_weights",
    "softmax",
    "safe_softmax",
    "checked_softmax",
    "compute_ess",
    "log_mean_exp",
    "INVALID_WEIGHT_POLICIES",
]

logger = logging.getLogger(__name__)

INVALID_WEIGHT_POLICIES = ("error", "warn", "silent")


@jaxtyped(typechecker=beartype)
def normalize_log_weights(
    log_weights: Float[Array, " n_particles"],
) -> Float[Array, " n_particles"]:
    """Normalize log-weights so that they logsumexp to zero."""
    return log_weights - logsumexp(log_weights)


@jaxtyped(typechecker=beartype)
def softmax(
    log_weights: Float[Array, " n_particles"],
) -> Float[Array, " n_particles"]:
    """Normalized (non-log) weights of a vector of unnormalized log-weights."""
    if log_weights.shape[0] == 0:
        return log_weights
    weights = jnp.exp(log_weights - jnp.max(log_weights))
    return weights / jnp.sum(weights)


@jaxtyped(typechecker=beartype)
def safe_softmax(
    log_weights: Float[Array, " n_particles"],
    warn: bool = True,
) -> tuple[Float[Array, " n_particles"], bool]:
    """Softmax that reports degenerate inputs instead of propagating them.

    Parameters
    ----------
    log_weights : Array
        Unnormalized log-weights.
    warn : bool
        Log a warning describing the degenerate case, if any.

    Returns
    -------
    weights : Array
        Normalized weights. All NaN if the input contained NaN or the
        total weight was NaN; uniform if every input was -inf or the total
        weight underflowed to zero.
    invalid : bool
        Whether ``weights`` is a fallback rather than a true softmax.
    """
    n_particles = log_weights.shape[0]
    if n_particles == 0:
        return log_weights, False
    if bool(jnp.any(jnp.isnan(log_weights))):
        if warn:
            logger.warning("NaN found in log weights. Returning NaN weights.")
        return jnp.full(n_particles, jnp.nan), True
    if bool(jnp.all(log_weights == -jnp.inf)):
        if warn:
            logger.warning("All log weights are -inf. Returning uniform weights.")
        return jnp.full(n_particles, 1.0 / n_particles), True

    weights = jnp.exp(log_weights - jnp.max(log_weights))
    total = jnp.sum(weights)
    if bool(total == 0):
        if warn:
            logger.warning("All weights are zero. Returning uniform weights.")
        return jnp.full(n_particles, 1.0 / n_particles), True
    if bool(jnp.isnan(total)):
        if warn:
            logger.warning("Total weight is NaN. Returning NaN weights.")
        return jnp.full(n_particles, jnp.nan), True
    return weights / total, False


@jaxtyped(typechecker=beartype)
def checked_softmax(
    log_weights: Float[Array, " n_particles"],
    on_invalid: str = "warn",
) -> tuple[Float[Array, " n_particles"], bool]:
    """Softmax with a caller-selected policy for degenerate weights.

    Parameters
    ----------
    log_weights : Array
        Unnormalized log-weights (or log-priorities).
    on_invalid : str
        "error" raises :class:`InvalidWeightsError`, "warn" logs a warning
        and falls back to uniform weights, "silent" falls back to uniform
        weights without logging.

    Returns
    -------
    weights : Array
        Normalized weights, uniform if the input was degenerate.
    invalid : bool
        Whether the fallback was used.
    """
    if on_invalid not in INVALID_WEIGHT_POLICIES:
        raise ConfigurationError(
            f"Invalid weight policy {on_invalid!r} not recognized, "
            f"expected one of {INVALID_WEIGHT_POLICIES}."
        )
    weights, invalid = safe_softmax(log_weights, warn=on_invalid == "warn")
    if not invalid:
        return weights, False
    if on_invalid == "error":
        raise InvalidWeightsError(
            "Particle weights are degenerate (NaN, all -inf, or all zero)."
        )
    n_particles = log_weights.shape[0]
    return jnp.full(n_particles, 1.0 / n_particles), True


@jaxtyped(typechecker=beartype)
def compute_ess(
    log_weights: Float[Array, " n_particles"],
) -> Float[Array, ""]:
    """Effective sample size ``1 / sum(w_i^2)`` of normalized weights."""
    return jnp.exp(2 * logsumexp(log_weights) - logsumexp(2 * log_weights))


@jaxtyped(typechecker=beartype)
def log_mean_exp(
    log_values: Float[Array, " n"],
) -> Float[Array, ""]:
    """Compute ``log(mean(exp(log_values)))`` stably."""
    return logsumexp(log_values) - jnp.log(log_values.shape[0])
