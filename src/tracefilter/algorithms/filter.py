"""Sequential particle filter driver.

Runs a particle filter over a sequence of model arguments and observations:
initialize on the first step, then at every following step resample when
the effective sample size drops below the configured threshold, optionally
rejuvenate, and update to the next arguments and observations.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import jax
from jaxtyping import PRNGKeyArray

from tracefilter.algorithms.initialize import initialize
from tracefilter.algorithms.rejuvenate import Kernel, rejuvenate
from tracefilter.algorithms.update import update
from tracefilter.config import SMCConfig
from tracefilter.core.particles import ParticleFilterState, SMCInfo
from tracefilter.core.resampling import resample
from tracefilter.models.base import ChoiceMap, GenerativeFunction

__all__ = ["smc_step", "run_particle_filter"]

logger = logging.getLogger(__name__)


def smc_step(
    key: PRNGKeyArray,
    state: ParticleFilterState,
    new_args: tuple,
    observations: ChoiceMap | None,
    config: SMCConfig,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
    kernel: Kernel | None = None,
    kernel_args: tuple = (),
) -> tuple[ParticleFilterState, SMCInfo]:
    """One resample-rejuvenate-update step.

    Parameters
    ----------
    key : PRNGKeyArray
        Random key.
    state : ParticleFilterState
        Current state, modified in place.
    new_args : tuple
        Model arguments for this step.
    observations : dict
        Observations for this step.
    config : SMCConfig
        Filter settings.
    proposal : GenerativeFunction, optional
        Update proposal, called with ``(trace, *proposal_args)``.
    kernel : Callable, optional
        Rejuvenation kernel, applied after resampling.

    Returns
    -------
    state : ParticleFilterState
        The updated state.
    info : SMCInfo
        Step diagnostics.
    """
    resample_key, rejuv_key, update_key = jax.random.split(key, 3)

    ess = float(state.effective_sample_size())
    resampled = ess < config.ess_threshold * state.n_particles
    if resampled:
        logger.info(
            "ESS %.2f below threshold, resampling %d particles (%s).",
            ess,
            state.n_particles,
            config.resampling_method,
        )
        kwargs = {"on_invalid": config.on_invalid}
        if config.resampling_method == "stratified":
            kwargs["sort_particles"] = config.sort_particles
        resample(resample_key, state, config.resampling_method, **kwargs)
        if kernel is not None and config.n_rejuvenation_steps > 0:
            rejuvenate(
                rejuv_key,
                state,
                kernel,
                kernel_args,
                config.n_rejuvenation_steps,
                method=config.rejuvenation_method,
            )

    update(
        update_key,
        state,
        new_args,
        observations,
        proposal=proposal,
        proposal_args=proposal_args,
    )
    info = SMCInfo(
        ess=ess, resampled=bool(resampled), log_ml_estimate=state.log_ml_estimate()
    )
    return state, info


def run_particle_filter(
    key: PRNGKeyArray,
    model: GenerativeFunction,
    args_sequence: Sequence[tuple],
    observations_sequence: Sequence[ChoiceMap | None],
    config: SMCConfig | None = None,
    *,
    proposal: GenerativeFunction | None = None,
    proposal_args: tuple = (),
    kernel: Kernel | None = None,
    kernel_args: tuple = (),
) -> tuple[ParticleFilterState, list[SMCInfo]]:
    """Run a particle filter over a sequence of steps.

    Parameters
    ----------
    key : PRNGKeyArray
        Random key.
    model : GenerativeFunction
        Model to filter.
    args_sequence : sequence of tuple
        Model arguments at each step.
    observations_sequence : sequence of dict
        Observations at each step; each step's observations are new.
    config : SMCConfig, optional
        Filter settings.
    proposal : GenerativeFunction, optional
        Proposal used by the updates after the first step.
    proposal_args : tuple
        Additional proposal arguments.
    kernel : Callable, optional
        Rejuvenation kernel, required if ``config.n_rejuvenation_steps > 0``.
    kernel_args : tuple
        Additional kernel arguments.

    Returns
    -------
    state : ParticleFilterState
        Final particle filter state.
    infos : list of SMCInfo
        Diagnostics for every step, including the first.
    """
    config = SMCConfig() if config is None else config
    if len(args_sequence) != len(observations_sequence):
        raise ValueError(
            f"Got {len(args_sequence)} argument tuples but "
            f"{len(observations_sequence)} observation sets."
        )
    if not args_sequence:
        raise ValueError("At least one step is required.")
    if config.n_rejuvenation_steps > 0 and kernel is None:
        raise ValueError("A kernel is required for rejuvenation steps.")

    n_steps = len(args_sequence)
    init_key, *step_keys = jax.random.split(key, n_steps)
    state = initialize(
        init_key,
        model,
        args_sequence[0],
        observations_sequence[0],
        config.n_particles,
    )
    infos = [
        SMCInfo(
            ess=float(state.effective_sample_size()),
            resampled=False,
            log_ml_estimate=state.log_ml_estimate(),
        )
    ]

    for t, step_key in enumerate(step_keys, start=1):
        state, info = smc_step(
            step_key,
            state,
            args_sequence[t],
            observations_sequence[t],
            config,
            proposal=proposal,
            proposal_args=proposal_args,
            kernel=kernel,
            kernel_args=kernel_args,
        )
        logger.debug(
            "Step %d: ESS %.2f, log ML estimate %.4f.", t, info.ess, info.log_ml_estimate
        )
        infos.append(info)

    return state, infos
