"""Weighted empirical statistics of a particle filter.

Statistics are computed over values read from each trace: the value at one
or more addresses, or the trace's return value if no address is given. An
optional ``fn`` maps these values to the quantity of interest.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable
from typing import Any

import jax.numpy as jnp
from jaxtyping import Array, Float

from tracefilter.core.particles import ParticleFilterView

__all__ = [
    "trace_values",
    "mean",
    "var",
    "proportion_map",
]


def trace_values(
    state: ParticleFilterView,
    *addrs: Hashable,
    fn: Callable[..., Any] | None = None,
) -> list[Any]:
    """Read ``fn(trace[addr_1], ..., trace[addr_k])`` from every trace.

    Without addresses, ``fn`` is applied to each trace's return value. Without
    ``fn``, a single address (or the return value) is read as is.
    """
    if addrs:
        values = [tuple(trace[addr] for addr in addrs) for trace in state.traces]
    else:
        values = [(trace.get_retval(),) for trace in state.traces]
    if fn is None:
        if len(addrs) > 1:
            raise ValueError("A function is required to combine several addresses.")
        return [vals[0] for vals in values]
    return [fn(*vals) for vals in values]


def mean(
    state: ParticleFilterView,
    *addrs: Hashable,
    fn: Callable[..., Any] | None = None,
) -> Float[Array, "..."]:
    """Weighted empirical mean of the values at ``addrs``.

    Parameters
    ----------
    state : ParticleFilterView
        Particle filter state or view.
    *addrs : Hashable
        Trace addresses. If omitted, the return value of each trace is used.
    fn : Callable, optional
        Function applied to the values at ``addrs``, taking one argument per
        address.

    Returns
    -------
    mean : Array
        Weighted mean, with the shape of a single value.
    """
    values = jnp.asarray(trace_values(state, *addrs, fn=fn), dtype=float)
    weights = state.normalized_weights()
    return jnp.tensordot(weights, values, axes=1)


def var(
    state: ParticleFilterView,
    *addrs: Hashable,
    fn: Callable[..., Any] | None = None,
) -> Float[Array, "..."]:
    """Weighted empirical variance (uncorrected) of the values at ``addrs``.

    Arguments are as for :func:`mean`.
    """
    values = jnp.asarray(trace_values(state, *addrs, fn=fn), dtype=float)
    weights = state.normalized_weights()
    centered = values - jnp.tensordot(weights, values, axes=1)
    return jnp.tensordot(weights, centered**2, axes=1)


def proportion_map(
    state: ParticleFilterView,
    *addrs: Hashable,
    fn: Callable[..., Any] | None = None,
) -> dict[Any, float]:
    """Map each distinct value at ``addrs`` to its total normalized weight.

    Arguments are as for :func:`mean`; values must be hashable.
    """
    values = trace_values(state, *addrs, fn=fn)
    weights = state.normalized_weights().tolist()
    proportions: dict[Any, float] = {}
    for value, weight in zip(values, weights, strict=True):
        proportions[value] = proportions.get(value, 0.0) + weight
    return proportions
