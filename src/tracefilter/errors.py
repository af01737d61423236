"""Exceptions raised by particle filter operations."""

from __future__ import annotations

__all__ = [
    "ParticleFilterError",
    "InvalidWeightsError",
    "StructuralUpdateError",
    "ConfigurationError",
    "RoundTripAssertionError",
]


class ParticleFilterError(Exception):
    """Base class for all particle filter errors."""


class InvalidWeightsError(ParticleFilterError, ValueError):
    """Normalized weights are degenerate (NaN, all -inf, or all zero)."""


class StructuralUpdateError(ParticleFilterError):
    """A trace update removed or changed previously committed choices."""


class ConfigurationError(ParticleFilterError, ValueError):
    """An algorithm, layout or policy selector was not recognized."""


class RoundTripAssertionError(ParticleFilterError, AssertionError):
    """A paired bijection did not map its output back to its input.

    Attributes
    ----------
    component : str
        Which part of the round trip mismatched, either ``"model trace"``
        or ``"auxiliary trace"``.
    """

    def __init__(self, component: str, message: str) -> None:
        super().__init__(f"Round trip failed for {component}: {message}")
        self.component = component
