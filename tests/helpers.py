"""Test models and state builders shared across the test modules."""

import jax.numpy as jnp

from tracefilter.core.particles import ParticleFilterState
from tracefilter.models import Bernoulli, Normal, UniformDiscrete, generative


@generative
def line_model(ctx, n):
    """Line through the origin with a discrete slope and outlier noise."""
    slope = ctx.sample("slope", UniformDiscrete(-2, 2))
    x = 0
    for i in range(1, n + 1):
        x = i
        outlier = ctx.sample(("outlier", i), Bernoulli(0.1))
        ctx.sample(("y", i), Normal(x * slope, 10.0 if outlier else 1.0))
    return x


def line_choicemap(n, slope=0):
    """Observations lying exactly on the line with the given slope."""
    return {("y", i): float(i * slope) for i in range(1, n + 1)}


@generative
def gaussian_model(ctx, n_steps):
    """Independent latent x_t ~ N(0, 1), each observed as y_t ~ N(x_t, 1)."""
    for t in range(1, n_steps + 1):
        x = ctx.sample(("x", t), Normal(0.0, 1.0))
        ctx.sample(("y", t), Normal(x, 1.0))
    return n_steps


@generative
def x_proposal(ctx, trace, t):
    """Propose the next latent state from its prior."""
    ctx.sample(("x", t), Normal(0.0, 1.0))


@generative
def u_proposal(ctx, trace):
    """Propose a standard normal auxiliary variable."""
    ctx.sample("u", Normal(0.0, 1.0))


@generative
def slope_proposal(ctx, trace):
    """Propose a new slope uniformly."""
    ctx.sample("slope", UniformDiscrete(-2, 2))


def make_state(log_weights):
    """State whose traces are the integers 0..N-1."""
    log_weights = jnp.asarray(log_weights, dtype=float)
    traces = list(range(log_weights.shape[0]))
    return ParticleFilterState.from_traces(traces, log_weights)
