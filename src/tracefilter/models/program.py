"""Reference probabilistic-program runtime.

A generative function is a plain Python function whose first argument is an
execution context. Random choices are made with ``ctx.sample(addr, dist)``,
and the context decides what happens at each address: sample it, read it
from a set of constraints, score it, or carry it over from a previous trace.

Example
-------
>>> @generative
... def model(ctx, n):
...     mu = ctx.sample("mu", Normal(0.0, 1.0))
...     for i in range(n):
...         ctx.sample(("y", i), Normal(mu, 1.0))
...     return mu
>>> trace, log_weight = model.generate(key, (3,), {("y", 0): 0.5})
"""

from __future__ import annotations

import functools
from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable
from typing import Any

import chex
import jax
import jax.numpy as jnp
from jaxtyping import PRNGKeyArray

from tracefilter.models.base import ChoiceMap, GenerativeFunction, Trace
from tracefilter.models.distributions import Distribution

__all__ = [
    "ProgramTrace",
    "Program",
    "generative",
    "ExecutionContext",
]


def _as_choice_value(value: Any) -> Any:
    # Store scalars as Python values so choice maps are hashable.
    if jnp.ndim(value) == 0 and hasattr(value, "item"):
        return value.item()
    return value


@chex.dataclass(frozen=True, eq=False, mappable_dataclass=False)
class ProgramTrace(Trace):
    """Trace of a :class:`Program`.

    Attributes
    ----------
    gen_fn : Program
        The program that produced this trace.
    args : tuple
        Program arguments.
    choices : dict
        Mapping from address to sampled value.
    retval : Any
        Return value of the program.
    score : float
        Log joint density of all choices.
    """

    gen_fn: GenerativeFunction
    args: tuple
    choices: dict
    retval: Any
    score: float

    def get_gen_fn(self) -> GenerativeFunction:
        return self.gen_fn

    def get_args(self) -> tuple:
        return self.args

    def get_choices(self) -> dict[Hashable, Any]:
        return dict(self.choices)

    def get_retval(self) -> Any:
        return self.retval

    def get_score(self) -> float:
        return self.score

    def __getitem__(self, addr: Hashable) -> Any:
        return self.choices[addr]


class ExecutionContext(ABC):
    """Handles the random choices of one program execution.

    Subclasses decide the value and log density recorded at each address.
    """

    def __init__(self, key: PRNGKeyArray | None = None) -> None:
        self.key = key
        self.choices: dict[Hashable, Any] = {}
        self.score = 0.0

    def sample(self, addr: Hashable, dist: Distribution) -> Any:
        """Make a random choice at ``addr`` and return its value."""
        if addr in self.choices:
            raise ValueError(f"Address {addr!r} was visited more than once.")
        value, log_prob = self._choose(addr, dist)
        self.choices[addr] = value
        self.score += log_prob
        return value

    @abstractmethod
    def _choose(self, addr: Hashable, dist: Distribution) -> tuple[Any, float]:
        pass

    def _draw(self, dist: Distribution) -> tuple[Any, float]:
        if self.key is None:
            raise ValueError("A random key is required to sample new choices.")
        self.key, subkey = jax.random.split(self.key)
        value = _as_choice_value(dist.sample(subkey))
        return value, float(dist.log_prob(value))


class _Simulating(ExecutionContext):
    def _choose(self, addr, dist):
        return self._draw(dist)


class _Generating(ExecutionContext):
    def __init__(self, key, constraints: ChoiceMap) -> None:
        super().__init__(key)
        self.constraints = constraints
        self.weight = 0.0

    def _choose(self, addr, dist):
        if addr not in self.constraints:
            return self._draw(dist)
        value = _as_choice_value(self.constraints[addr])
        log_prob = float(dist.log_prob(value))
        self.weight += log_prob
        return value, log_prob


class _Assessing(ExecutionContext):
    def __init__(self, choices: ChoiceMap) -> None:
        super().__init__(None)
        self.given = choices

    def _choose(self, addr, dist):
        if addr not in self.given:
            raise ValueError(f"Missing choice at address {addr!r}.")
        value = _as_choice_value(self.given[addr])
        return value, float(dist.log_prob(value))


class _Updating(ExecutionContext):
    def __init__(self, key, old_choices: ChoiceMap, constraints: ChoiceMap) -> None:
        super().__init__(key)
        self.old_choices = old_choices
        self.constraints = constraints
        self.discard: dict[Hashable, Any] = {}
        self.fresh_score = 0.0

    def _choose(self, addr, dist):
        if addr in self.constraints:
            if addr in self.old_choices:
                self.discard[addr] = self.old_choices[addr]
            value = _as_choice_value(self.constraints[addr])
            return value, float(dist.log_prob(value))
        if addr in self.old_choices:
            value = self.old_choices[addr]
            return value, float(dist.log_prob(value))
        value, log_prob = self._draw(dist)
        self.fresh_score += log_prob
        return value, log_prob


def _check_visited(constraints: ChoiceMap, visited: ChoiceMap) -> None:
    unvisited = [addr for addr in constraints if addr not in visited]
    if unvisited:
        raise ValueError(f"Constrained addresses were never visited: {unvisited}")


class Program(GenerativeFunction):
    """Generative function defined by a Python function ``fn(ctx, *args)``."""

    def __init__(self, fn: Callable[..., Any]) -> None:
        self.fn = fn
        functools.update_wrapper(self, fn)

    def __repr__(self) -> str:
        return f"Program({self.fn.__name__})"

    def _run(self, ctx: ExecutionContext, args: tuple) -> ProgramTrace:
        args = tuple(args)
        retval = self.fn(ctx, *args)
        return ProgramTrace(
            gen_fn=self, args=args, choices=ctx.choices, retval=retval, score=ctx.score
        )

    def simulate(self, key: PRNGKeyArray, args: tuple) -> ProgramTrace:
        return self._run(_Simulating(key), args)

    def generate(
        self,
        key: PRNGKeyArray,
        args: tuple,
        constraints: ChoiceMap | None = None,
    ) -> tuple[ProgramTrace, float]:
        ctx = _Generating(key, constraints or {})
        trace = self._run(ctx, args)
        _check_visited(ctx.constraints, ctx.choices)
        return trace, ctx.weight

    def propose(
        self, key: PRNGKeyArray, args: tuple
    ) -> tuple[dict[Hashable, Any], float, Any]:
        trace = self.simulate(key, args)
        return trace.get_choices(), trace.get_score(), trace.get_retval()

    def assess(self, args: tuple, choices: ChoiceMap) -> tuple[float, Any]:
        ctx = _Assessing(choices)
        trace = self._run(ctx, args)
        _check_visited(choices, ctx.choices)
        return trace.get_score(), trace.get_retval()

    def update(
        self,
        key: PRNGKeyArray,
        trace: Trace,
        new_args: tuple,
        constraints: ChoiceMap | None = None,
    ) -> tuple[ProgramTrace, float, dict[Hashable, Any]]:
        old_choices = trace.get_choices()
        ctx = _Updating(key, old_choices, constraints or {})
        new_trace = self._run(ctx, new_args)
        _check_visited(ctx.constraints, ctx.choices)

        discard = ctx.discard
        for addr, value in old_choices.items():
            if addr not in ctx.choices:
                discard[addr] = value
        log_weight = new_trace.get_score() - trace.get_score() - ctx.fresh_score
        return new_trace, log_weight, discard


def generative(fn: Callable[..., Any]) -> Program:
    """Decorator turning ``fn(ctx, *args)`` into a :class:`Program`."""
    return Program(fn)
