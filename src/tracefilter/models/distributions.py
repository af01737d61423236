"""Primitive distributions for the reference probabilistic-program runtime.

Each distribution is an immutable container with ``sample(key)`` returning a
0-d array and ``log_prob(x)`` returning the log density (or mass) at ``x``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import chex
import jax
import jax.numpy as jnp
from jax.scipy import stats
from jaxtyping import Array, Float, PRNGKeyArray

__all__ = [
    "Distribution",
    "Normal",
    "Uniform",
    "Bernoulli",
    "UniformDiscrete",
]


class Distribution(ABC):
    """Base class for primitive distributions."""

    @abstractmethod
    def sample(self, key: PRNGKeyArray) -> Array:
        pass

    @abstractmethod
    def log_prob(self, x) -> Float[Array, ""]:
        pass


@chex.dataclass(frozen=True, mappable_dataclass=False)
class Normal(Distribution):
    """Univariate normal distribution.

    Attributes
    ----------
    loc : float
        Mean.
    scale : float
        Standard deviation.
    """

    loc: float = 0.0
    scale: float = 1.0

    def sample(self, key: PRNGKeyArray) -> Float[Array, ""]:
        return self.loc + self.scale * jax.random.normal(key)

    def log_prob(self, x) -> Float[Array, ""]:
        return stats.norm.logpdf(x, self.loc, self.scale)


@chex.dataclass(frozen=True, mappable_dataclass=False)
class Uniform(Distribution):
    """Continuous uniform distribution on ``[low, high]``."""

    low: float = 0.0
    high: float = 1.0

    def sample(self, key: PRNGKeyArray) -> Float[Array, ""]:
        return jax.random.uniform(key, minval=self.low, maxval=self.high)

    def log_prob(self, x) -> Float[Array, ""]:
        return stats.uniform.logpdf(x, self.low, self.high - self.low)


@chex.dataclass(frozen=True, mappable_dataclass=False)
class Bernoulli(Distribution):
    """Bernoulli distribution over ``{False, True}`` with success probability ``p``."""

    p: float = 0.5

    def sample(self, key: PRNGKeyArray) -> Array:
        return jax.random.bernoulli(key, self.p)

    def log_prob(self, x) -> Float[Array, ""]:
        p = jnp.asarray(self.p, dtype=float)
        return jnp.where(jnp.asarray(x, dtype=bool), jnp.log(p), jnp.log1p(-p))


@chex.dataclass(frozen=True, mappable_dataclass=False)
class UniformDiscrete(Distribution):
    """Uniform distribution over the integers ``low, low + 1, ..., high``."""

    low: int = 0
    high: int = 1

    def sample(self, key: PRNGKeyArray) -> Array:
        return jax.random.randint(key, (), self.low, self.high + 1)

    def log_prob(self, x) -> Float[Array, ""]:
        x = jnp.asarray(x)
        in_support = (x >= self.low) & (x <= self.high) & (jnp.floor(x) == x)
        log_mass = -jnp.log(float(self.high - self.low + 1))
        return jnp.where(in_support, log_mass, -jnp.inf)
