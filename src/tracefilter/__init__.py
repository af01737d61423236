"""Particle filtering over probabilistic program traces.

Weighted ensembles of traces with resampling, resizing, rejuvenation,
particle filter updates and trace translators.
"""

from __future__ import annotations

import jax

jax.config.update("jax_enable_x64", True)

from tracefilter.algorithms import (  # noqa: E402
    ExtendingTraceTranslator,
    TraceTransform,
    UpdatingTraceTranslator,
    initialize,
    is_involution,
    metropolis_hastings,
    move_accept,
    move_reweight,
    move_reweight_kernel,
    pair_bijections,
    rejuvenate,
    run_particle_filter,
    smc_step,
    translate,
    update,
)
from tracefilter.config import SMCConfig  # noqa: E402
from tracefilter.core.particles import (  # noqa: E402
    ParticleFilterState,
    ParticleFilterSubState,
    SMCInfo,
)
from tracefilter.core.resampling import (  # noqa: E402
    multinomial_resample,
    resample,
    residual_resample,
    stratified_resample,
)
from tracefilter.core.resizing import (  # noqa: E402
    coalesce,
    dereplicate,
    introduce,
    multinomial_resize,
    optimal_resize,
    replicate,
    residual_resize,
    resize,
)
from tracefilter.core.statistics import mean, proportion_map, var  # noqa: E402
from tracefilter.core.stratification import choice_product  # noqa: E402
from tracefilter.errors import (  # noqa: E402
    ConfigurationError,
    InvalidWeightsError,
    ParticleFilterError,
    RoundTripAssertionError,
    StructuralUpdateError,
)

__version__ = "0.1.0"

__all__ = [
    # State
    "ParticleFilterState",
    "ParticleFilterSubState",
    "SMCInfo",
    "SMCConfig",
    # Particle filter operations
    "initialize",
    "update",
    "translate",
    "rejuvenate",
    "move_accept",
    "move_reweight",
    "run_particle_filter",
    "smc_step",
    # Resampling and resizing
    "resample",
    "multinomial_resample",
    "residual_resample",
    "stratified_resample",
    "resize",
    "multinomial_resize",
    "residual_resize",
    "optimal_resize",
    "replicate",
    "dereplicate",
    "coalesce",
    "introduce",
    # Kernels and translators
    "metropolis_hastings",
    "move_reweight_kernel",
    "ExtendingTraceTranslator",
    "UpdatingTraceTranslator",
    "TraceTransform",
    "pair_bijections",
    "is_involution",
    # Statistics
    "mean",
    "var",
    "proportion_map",
    "choice_product",
    # Errors
    "ParticleFilterError",
    "InvalidWeightsError",
    "StructuralUpdateError",
    "ConfigurationError",
    "RoundTripAssertionError",
]
