"""Interfaces to probabilistic-program runtimes.

Particle filter operations treat traces as opaque records. They only rely on
the abstract interface below, which any runtime can implement; see
:mod:`tracefilter.models.program` for the reference implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Hashable, Mapping
from typing import Any

import jax
from jaxtyping import PRNGKeyArray

__all__ = [
    "ChoiceMap",
    "Trace",
    "GenerativeFunction",
    "merge_choices",
    "generate_particle",
]

ChoiceMap = Mapping[Hashable, Any]


class Trace(ABC):
    """Record of one execution of a generative function."""

    @abstractmethod
    def get_gen_fn(self) -> GenerativeFunction:
        pass

    @abstractmethod
    def get_args(self) -> tuple:
        pass

    @abstractmethod
    def get_choices(self) -> dict[Hashable, Any]:
        pass

    @abstractmethod
    def get_retval(self) -> Any:
        pass

    @abstractmethod
    def get_score(self) -> float:
        pass

    def __getitem__(self, addr: Hashable) -> Any:
        return self.get_choices()[addr]


class GenerativeFunction(ABC):
    """A probabilistic program that can be run, constrained and scored."""

    @abstractmethod
    def simulate(self, key: PRNGKeyArray, args: tuple) -> Trace:
        """Run the program, sampling every choice."""

    @abstractmethod
    def generate(
        self,
        key: PRNGKeyArray,
        args: tuple,
        constraints: ChoiceMap | None = None,
    ) -> tuple[Trace, float]:
        """Run the program with some choices fixed to ``constraints``.

        Returns the trace and the log importance weight, i.e. the log density
        of the constrained choices.
        """

    @abstractmethod
    def propose(
        self, key: PRNGKeyArray, args: tuple
    ) -> tuple[dict[Hashable, Any], float, Any]:
        """Sample choices. Returns ``(choices, log_score, retval)``."""

    @abstractmethod
    def assess(self, args: tuple, choices: ChoiceMap) -> tuple[float, Any]:
        """Score a complete set of choices. Returns ``(log_score, retval)``."""

    @abstractmethod
    def update(
        self,
        key: PRNGKeyArray,
        trace: Trace,
        new_args: tuple,
        constraints: ChoiceMap | None = None,
    ) -> tuple[Trace, float, dict[Hashable, Any]]:
        """Rerun the program from ``trace`` under new arguments and constraints.

        Returns ``(new_trace, log_weight, discard)``, where ``log_weight`` is
        ``new_score - old_score - log q(fresh choices)`` and ``discard`` holds
        the old values that were overwritten or no longer visited.
        """


def merge_choices(*choice_maps: ChoiceMap | None) -> dict[Hashable, Any]:
    """Merge choice maps, raising ``ValueError`` on conflicting addresses."""
    merged: dict[Hashable, Any] = {}
    for choices in choice_maps:
        if not choices:
            continue
        for addr, value in choices.items():
            if addr in merged:
                raise ValueError(f"Address {addr!r} is constrained more than once.")
            merged[addr] = value
    return merged


def generate_particle(
    key: PRNGKeyArray,
    model: GenerativeFunction,
    model_args: tuple,
    constraints: ChoiceMap | None,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
) -> tuple[Trace, float]:
    """Generate one weighted particle.

    Without a proposal, the model is run with ``constraints`` and the trace
    is weighted by the constrained log density. With a proposal, its choices
    are merged into the constraints and the weight is corrected by the
    proposal's log score.
    """
    if proposal is None:
        return model.generate(key, model_args, constraints)
    prop_key, model_key = jax.random.split(key)
    prop_choices, prop_score, _ = proposal.propose(prop_key, proposal_args)
    trace, model_weight = model.generate(
        model_key, model_args, merge_choices(constraints, prop_choices)
    )
    return trace, model_weight - prop_score

