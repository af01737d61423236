"""Particle filter state management.

This module provides the mutable ensemble of weighted traces that every
particle filter operation reads and writes, along with index-range views into
it and per-step diagnostics.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import chex
import jax
import jax.numpy as jnp
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float, Int, PRNGKeyArray

from tracefilter.core.weights import compute_ess, normalize_log_weights, softmax

__all__ = [
    "ParticleFilterView",
    "ParticleFilterState",
    "ParticleFilterSubState",
    "SMCInfo",
    "require_full_state",
]


class ParticleFilterView(ABC):
    """Operations shared by full particle filter states and their views.

    Subclasses provide ``traces``, ``log_weights``, ``parents`` and the
    commit hooks used by mutating operations.
    """

    traces: Sequence[Any]
    log_weights: Float[Array, " n_particles"]
    parents: Int[Array, " n_particles"]

    @property
    def n_particles(self) -> int:
        """Number of particles."""
        return len(self.traces)

    def __len__(self) -> int:
        return self.n_particles

    def get_traces(self) -> list[Any]:
        """Return the current traces as a list."""
        return list(self.traces)

    def get_log_weights(self) -> Float[Array, " n_particles"]:
        """Return the current unnormalized log-weights."""
        return self.log_weights

    def log_normalized_weights(self) -> Float[Array, " n_particles"]:
        """Return normalized log-weights."""
        return normalize_log_weights(self.log_weights)

    def normalized_weights(self) -> Float[Array, " n_particles"]:
        """Return normalized weights (not log)."""
        return softmax(self.log_weights)

    def effective_sample_size(self) -> Float[Array, ""]:
        """Effective sample size of the current weights."""
        return compute_ess(self.log_weights)

    def log_ml_estimate(self) -> float:
        """Current estimate of the log marginal likelihood."""
        return float(
            self.log_ml_est + logsumexp(self.log_weights) - jnp.log(self.n_particles)
        )

    def sample_unweighted_traces(self, key: PRNGKeyArray, n_samples: int) -> list[Any]:
        """Draw traces with replacement according to their normalized weights."""
        idxs = jax.random.categorical(
            key, self.log_normalized_weights(), shape=(n_samples,)
        )
        traces = self.traces
        return [traces[i] for i in idxs.tolist()]

    # Hooks used by mutating operations

    @abstractmethod
    def _absorb_log_ml_increment(self, n_new: int) -> float:
        pass

    @abstractmethod
    def _commit(
        self,
        parents: Int[Array, " n_new"],
        log_weights: Float[Array, " n_new"],
    ) -> None:
        pass

    @abstractmethod
    def _commit_traces(
        self,
        new_traces: Sequence[Any],
        log_weights: Float[Array, " n_particles"],
    ) -> None:
        pass


@chex.dataclass(mappable_dataclass=False)
class ParticleFilterState(ParticleFilterView):
    """Mutable particle filter state.

    Attributes
    ----------
    traces : list
        Current traces, one per particle.
    new_traces : list
        Staging buffer for the next generation of traces. Swapped with
        ``traces`` at the end of every mutating call.
    log_weights : Array
        Unnormalized log-weights with shape [n_particles].
    log_ml_est : float
        Running log marginal likelihood accumulated over resampling steps.
    parents : Array
        Index of the pre-call particle each current particle descends from,
        with shape [n_particles]. Newly introduced particles are marked -1.
    """

    traces: list
    new_traces: list
    log_weights: Float[Array, " n_particles"]
    log_ml_est: float
    parents: Int[Array, " n_particles"]

    @classmethod
    def from_traces(
        cls,
        traces: Sequence[Any],
        log_weights: Float[Array, " n_particles"] | Sequence[float] | None = None,
        log_ml_est: float = 0.0,
    ) -> ParticleFilterState:
        """Construct a state from traces and (optionally) their log-weights."""
        traces = list(traces)
        n_particles = len(traces)
        if log_weights is None:
            log_weights = jnp.zeros(n_particles)
        else:
            log_weights = jnp.asarray(log_weights, dtype=jnp.float64)
        if log_weights.shape != (n_particles,):
            raise ValueError(
                f"Expected {n_particles} log weights, got shape {log_weights.shape}."
            )
        return cls(
            traces=traces,
            new_traces=[None] * n_particles,
            log_weights=log_weights,
            log_ml_est=float(log_ml_est),
            parents=jnp.arange(n_particles),
        )

    def __getitem__(self, indices) -> ParticleFilterSubState:
        return ParticleFilterSubState(self, indices)

    def copy(self) -> ParticleFilterState:
        """Snapshot of the state that later mutations will not affect."""
        return ParticleFilterState(
            traces=list(self.traces),
            new_traces=list(self.new_traces),
            log_weights=self.log_weights,
            log_ml_est=self.log_ml_est,
            parents=self.parents,
        )

    def _absorb_log_ml_increment(self, n_new: int) -> float:
        # Accumulate the normalizer of the outgoing generation, and return
        # the log total weight of the incoming one.
        increment = logsumexp(self.log_weights) - jnp.log(self.n_particles)
        self.log_ml_est = float(self.log_ml_est + increment)
        return float(jnp.log(n_new))

    def _commit(self, parents, log_weights) -> None:
        traces = self.traces
        self.new_traces[:] = [traces[i] for i in parents.tolist()]
        self.parents = parents
        self.log_weights = log_weights
        self._swap()

    def _commit_traces(self, new_traces, log_weights) -> None:
        self.new_traces[:] = new_traces
        self.log_weights = log_weights
        self._swap()

    def _swap(self) -> None:
        self.traces, self.new_traces = self.new_traces, self.traces
        n_particles = len(self.traces)
        del self.new_traces[n_particles:]
        self.new_traces.extend([None] * (n_particles - len(self.new_traces)))


class ParticleFilterSubState(ParticleFilterView):
    """View into a subset of the particles of a :class:`ParticleFilterState`.

    Reads and writes go through to the source state. A view supports every
    operation that preserves the number of particles. It never modifies the
    source's running log marginal likelihood; resampling a view instead
    keeps the view's total weight, so that disjoint views can be processed
    independently without double counting.

    Parameters
    ----------
    source : ParticleFilterState
        The state being viewed.
    indices : slice, range, sequence of int, or Array
        Indices of the source particles in the view.
    """

    def __init__(self, source: ParticleFilterState, indices) -> None:
        if isinstance(indices, slice):
            indices = range(source.n_particles)[indices]
        if isinstance(indices, range):
            indices = list(indices)
        slots = [int(i) for i in jnp.asarray(indices, dtype=int).reshape(-1).tolist()]
        n_source = source.n_particles
        if any(i < 0 or i >= n_source for i in slots):
            raise IndexError(f"View indices out of range for {n_source} particles.")
        self.source = source
        self.slots = slots
        self.indices = jnp.asarray(slots, dtype=int)

    @property
    def traces(self) -> list[Any]:
        source_traces = self.source.traces
        return [source_traces[i] for i in self.slots]

    @property
    def log_weights(self) -> Float[Array, " n_particles"]:
        return self.source.log_weights[self.indices]

    @log_weights.setter
    def log_weights(self, value) -> None:
        self.source.log_weights = self.source.log_weights.at[self.indices].set(value)

    @property
    def parents(self) -> Int[Array, " n_particles"]:
        return self.source.parents[self.indices]

    @parents.setter
    def parents(self, value) -> None:
        self.source.parents = self.source.parents.at[self.indices].set(value)

    @property
    def log_ml_est(self) -> float:
        return self.source.log_ml_est

    def __getitem__(self, indices) -> ParticleFilterSubState:
        local = ParticleFilterSubState(self, indices)
        return ParticleFilterSubState(self.source, [self.slots[i] for i in local.slots])

    def copy(self):
        raise TypeError(
            "Cannot copy a particle filter view. Copy the whole state instead."
        )

    def _absorb_log_ml_increment(self, n_new: int) -> float:
        # Fold the increment into the view's own weights instead.
        return float(
            logsumexp(self.log_weights) - jnp.log(self.n_particles) + jnp.log(n_new)
        )

    def _commit(self, parents, log_weights) -> None:
        traces = self.traces
        staging = [traces[i] for i in parents.tolist()]
        self.parents = parents
        self.log_weights = log_weights
        self._write_traces(staging)

    def _commit_traces(self, new_traces, log_weights) -> None:
        self.log_weights = log_weights
        self._write_traces(list(new_traces))

    def _write_traces(self, staging: list[Any]) -> None:
        source_traces = self.source.traces
        for slot, trace in zip(self.slots, staging, strict=True):
            source_traces[slot] = trace


@chex.dataclass(frozen=True)
class SMCInfo:
    """Diagnostic information from a particle filter step.

    Attributes
    ----------
    ess : float
        Effective sample size before any resampling at this step.
    resampled : bool
        Whether resampling was performed.
    log_ml_estimate : float
        Log marginal likelihood estimate after the step.
    """

    ess: float
    resampled: bool
    log_ml_estimate: float


def require_full_state(state: ParticleFilterView, operation: str) -> None:
    """Raise if ``state`` is a view and ``operation`` changes population size."""
    if not isinstance(state, ParticleFilterState):
        raise TypeError(
            f"{operation} changes the number of particles and cannot be applied "
            "to a particle filter view."
        )
