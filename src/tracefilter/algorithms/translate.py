"""Trace translators for generalized sequential Monte Carlo.

A trace translator maps a particle's trace to a new trace (possibly of a
different model, or with new arguments and observations) and returns the
incremental log importance weight of the move.

- :class:`ExtendingTraceTranslator` only adds choices: a forward proposal
  samples auxiliary choices, which are optionally transformed by a bijection
  and then merged into the trace.
- :class:`UpdatingTraceTranslator` may also change existing choices. It
  needs a backward proposal that scores the choices the bijection maps the
  discarded values to, and an inverse bijection for the round-trip check.

Bijections are plain functions ``f(model_trace, aux_choices)`` returning
``(model_constraints, aux_choices_out, log_abs_det)`` and wrapped in a
:class:`TraceTransform`. Use :func:`pair_bijections` or :func:`is_involution`
to register the inverse.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Mapping
from typing import Any

import chex
import jax
import jax.numpy as jnp
from jaxtyping import PRNGKeyArray

from tracefilter.core.particles import ParticleFilterView
from tracefilter.errors import RoundTripAssertionError, StructuralUpdateError
from tracefilter.models.base import ChoiceMap, GenerativeFunction, Trace, merge_choices

__all__ = [
    "TraceTransform",
    "pair_bijections",
    "is_involution",
    "ExtendingTraceTranslator",
    "UpdatingTraceTranslator",
    "check_observations",
    "check_round_trip",
    "translate",
]

logger = logging.getLogger(__name__)

TransformFn = Callable[[Trace, ChoiceMap], tuple[ChoiceMap, ChoiceMap, float]]


class TraceTransform:
    """A deterministic bijection between (model trace, auxiliary choices) pairs.

    Parameters
    ----------
    fn : Callable
        ``fn(model_trace, aux_choices)`` returning
        ``(model_constraints, aux_choices_out, log_abs_det)``. The model
        constraints are applied to ``model_trace`` with an update,
        ``aux_choices_out`` are the choices of the reverse proposal, and
        ``log_abs_det`` is the log absolute Jacobian determinant.
    """

    def __init__(self, fn: TransformFn) -> None:
        self.fn = fn
        self._inverse: TraceTransform | None = None

    def __call__(
        self, model_trace: Trace, aux_choices: ChoiceMap
    ) -> tuple[dict[Hashable, Any], dict[Hashable, Any], float]:
        constraints, aux_out, log_abs_det = self.fn(model_trace, aux_choices)
        return dict(constraints), dict(aux_out or {}), float(log_abs_det)

    @property
    def inverse(self) -> TraceTransform:
        if self._inverse is None:
            raise ValueError(
                "Transform has no registered inverse. "
                "Use pair_bijections or is_involution."
            )
        return self._inverse


def _as_transform(f: TraceTransform | TransformFn) -> TraceTransform:
    return f if isinstance(f, TraceTransform) else TraceTransform(f)


def pair_bijections(
    f: TraceTransform | TransformFn,
    g: TraceTransform | TransformFn,
) -> tuple[TraceTransform, TraceTransform]:
    """Register ``f`` and ``g`` as inverses of each other."""
    f, g = _as_transform(f), _as_transform(g)
    f._inverse = g
    g._inverse = f
    return f, g


def is_involution(f: TraceTransform | TransformFn) -> TraceTransform:
    """Register ``f`` as its own inverse."""
    f = _as_transform(f)
    f._inverse = f
    return f


def _values_match(a: Any, b: Any) -> bool:
    if isinstance(a, (bool, int, float)) or hasattr(a, "dtype"):
        a, b = jnp.asarray(a, dtype=float), jnp.asarray(b, dtype=float)
        return bool(jnp.allclose(a, b))
    return a == b


def _choices_match(a: ChoiceMap, b: ChoiceMap) -> bool:
    if set(a) != set(b):
        return False
    return all(_values_match(a[addr], b[addr]) for addr in a)


def check_observations(trace: Trace, observations: ChoiceMap | None) -> None:
    """Raise ``StructuralUpdateError`` if ``trace`` contradicts ``observations``."""
    if not observations:
        return
    choices = trace.get_choices()
    for addr, value in observations.items():
        if addr not in choices or not _values_match(choices[addr], value):
            logger.error("Observation at %r is not preserved by the update.", addr)
            raise StructuralUpdateError(
                f"Observed choice at {addr!r} was changed or removed."
            )


def check_round_trip(
    prev_trace: Trace,
    prev_trace_rt: Trace,
    forward_choices: ChoiceMap,
    forward_choices_rt: ChoiceMap,
) -> None:
    """Raise :class:`RoundTripAssertionError` if a round trip is not the identity."""
    if not _choices_match(prev_trace.get_choices(), prev_trace_rt.get_choices()):
        raise RoundTripAssertionError(
            "model trace",
            f"Choices after the round trip {prev_trace_rt.get_choices()} "
            f"differ from the original {prev_trace.get_choices()}.",
        )
    if not _choices_match(forward_choices, forward_choices_rt):
        raise RoundTripAssertionError(
            "auxiliary trace",
            f"Forward choices after the round trip {dict(forward_choices_rt)} "
            f"differ from the original {dict(forward_choices)}.",
        )


@chex.dataclass(frozen=True, kw_only=True, mappable_dataclass=False)
class ExtendingTraceTranslator:
    """Trace translator that extends traces with new choices.

    Attributes
    ----------
    q_forward : GenerativeFunction
        Forward proposal, called with arguments ``(trace, *q_forward_args)``.
    q_forward_args : tuple
        Additional forward proposal arguments.
    new_args : tuple, optional
        New model arguments. Defaults to the trace's current arguments.
    new_observations : dict, optional
        New observed choices.
    transform : TraceTransform, optional
        Bijection applied to the forward choices. Its first argument is the
        previous model trace.
    allow_discard : bool
        Allow the update to remove or overwrite existing choices.
    """

    q_forward: GenerativeFunction
    q_forward_args: tuple = ()
    new_args: tuple | None = None
    new_observations: Mapping | None = None
    transform: TraceTransform | None = None
    allow_discard: bool = False

    def __call__(
        self, key: PRNGKeyArray, trace: Trace, check: bool = False
    ) -> tuple[Trace, float]:
        """Translate ``trace``. Returns ``(new_trace, log_weight)``."""
        fwd_key, update_key = jax.random.split(key)
        fwd_choices, fwd_score, _ = self.q_forward.propose(
            fwd_key, (trace, *self.q_forward_args)
        )
        if self.transform is None:
            constraints, log_abs_det = fwd_choices, 0.0
        else:
            constraints, _, log_abs_det = self.transform(trace, fwd_choices)
        constraints = merge_choices(constraints, self.new_observations)

        new_args = trace.get_args() if self.new_args is None else self.new_args
        new_trace, model_weight, discard = trace.get_gen_fn().update(
            update_key, trace, new_args, constraints
        )
        if discard and not self.allow_discard:
            logger.error("Extending update discarded choices: %s", discard)
            raise StructuralUpdateError(
                f"Can only extend traces with new choices, but the update "
                f"discarded {sorted(map(repr, discard))}."
            )
        if check:
            check_observations(new_trace, self.new_observations)
        return new_trace, model_weight - fwd_score + log_abs_det


@chex.dataclass(frozen=True, kw_only=True, mappable_dataclass=False)
class UpdatingTraceTranslator:
    """Trace translator that may change existing choices.

    The forward proposal samples auxiliary choices ``u``; the transform maps
    ``(trace, u)`` to constraints on the new trace and backward choices
    ``v``; the backward proposal scores ``v`` given the new trace. The log
    weight is ``new_score - old_score + log q_b(v) - log q_f(u) + log|det J|``.

    Attributes
    ----------
    q_forward : GenerativeFunction
        Forward proposal, called with arguments ``(trace, *q_forward_args)``.
    q_backward : GenerativeFunction
        Backward proposal, called with ``(new_trace, *q_backward_args)``.
    transform : TraceTransform
        Bijection, with a registered inverse if ``check`` is used.
    q_forward_args, q_backward_args : tuple
        Additional proposal arguments.
    new_args : tuple, optional
        New model arguments. Defaults to the trace's current arguments.
    new_observations : dict, optional
        New observed choices.
    """

    q_forward: GenerativeFunction
    q_backward: GenerativeFunction
    transform: TraceTransform
    q_forward_args: tuple = ()
    q_backward_args: tuple = ()
    new_args: tuple | None = None
    new_observations: Mapping | None = None

    def inverse(
        self, prev_trace: Trace, prev_observations: ChoiceMap | None = None
    ) -> UpdatingTraceTranslator:
        """Translator mapping translated traces back to ``prev_trace``'s model."""
        return UpdatingTraceTranslator(
            q_forward=self.q_backward,
            q_backward=self.q_forward,
            transform=self.transform.inverse,
            q_forward_args=self.q_backward_args,
            q_backward_args=self.q_forward_args,
            new_args=prev_trace.get_args(),
            new_observations=prev_observations,
        )

    def run_transform(
        self, key: PRNGKeyArray, prev_trace: Trace, forward_choices: ChoiceMap
    ) -> tuple[Trace, dict[Hashable, Any], float]:
        """Apply the bijection and update the trace.

        Returns the new trace, the backward choices and the log absolute
        Jacobian determinant.
        """
        constraints, backward_choices, log_abs_det = self.transform(
            prev_trace, forward_choices
        )
        constraints = merge_choices(constraints, self.new_observations)
        new_args = prev_trace.get_args() if self.new_args is None else self.new_args
        new_trace, _, _ = prev_trace.get_gen_fn().update(
            key, prev_trace, new_args, constraints
        )
        return new_trace, backward_choices, log_abs_det

    def __call__(
        self,
        key: PRNGKeyArray,
        trace: Trace,
        check: bool = False,
        prev_observations: ChoiceMap | None = None,
    ) -> tuple[Trace, float]:
        """Translate ``trace``. Returns ``(new_trace, log_weight)``.

        With ``check``, also verifies that the new observations hold and that
        the inverse translator maps the result back to ``trace``;
        ``prev_observations`` are the observed choices of ``trace``.
        """
        fwd_key, update_key = jax.random.split(key)
        fwd_choices, fwd_score, _ = self.q_forward.propose(
            fwd_key, (trace, *self.q_forward_args)
        )
        new_trace, bwd_choices, log_abs_det = self.run_transform(
            update_key, trace, fwd_choices
        )
        bwd_score, _ = self.q_backward.assess(
            (new_trace, *self.q_backward_args), bwd_choices
        )
        log_weight = (
            new_trace.get_score()
            - trace.get_score()
            + bwd_score
            - fwd_score
            + log_abs_det
        )

        if check:
            check_observations(new_trace, self.new_observations)
            inverter = self.inverse(trace, prev_observations)
            trace_rt, fwd_choices_rt, _ = inverter.run_transform(
                update_key, new_trace, bwd_choices
            )
            check_round_trip(trace, trace_rt, fwd_choices, fwd_choices_rt)
        return new_trace, log_weight


def translate(
    key: PRNGKeyArray,
    state: ParticleFilterView,
    translator: Callable[..., tuple[Trace, float]],
    check: bool = False,
    **kwargs,
) -> ParticleFilterView:
    """Apply ``translator`` to every particle and add the returned log weights.

    Parameters
    ----------
    key : PRNGKeyArray
        JAX random key, split once per particle.
    state : ParticleFilterView
        State or view to translate in place.
    translator : Callable
        Called as ``translator(key, trace, check=check, **kwargs)``.
    check : bool
        Run the translator's self-checks.

    Returns
    -------
    state : ParticleFilterView
        The same state, translated.
    """
    if state.n_particles == 0:
        return state
    new_traces = []
    increments = []
    keys = jax.random.split(key, state.n_particles)
    for subkey, trace in zip(keys, state.traces):
        new_trace, log_weight = translator(subkey, trace, check=check, **kwargs)
        new_traces.append(new_trace)
        increments.append(log_weight)
    log_weights = state.log_weights + jnp.asarray(increments, dtype=float)
    state._commit_traces(new_traces, log_weights)
    return state
