"""Probabilistic-program runtime interface and reference implementation."""

from tracefilter.models.base import (
    ChoiceMap,
    GenerativeFunction,
    Trace,
    generate_particle,
    merge_choices,
)
from tracefilter.models.distributions import (
    Bernoulli,
    Distribution,
    Normal,
    Uniform,
    UniformDiscrete,
)
from tracefilter.models.program import (
    ExecutionContext,
    Program,
    ProgramTrace,
    generative,
)

__all__ = [
    "ChoiceMap",
    "GenerativeFunction",
    "Trace",
    "generate_particle",
    "merge_choices",
    "Bernoulli",
    "Distribution",
    "Normal",
    "Uniform",
    "UniformDiscrete",
    "ExecutionContext",
    "Program",
    "ProgramTrace",
    "generative",
]
