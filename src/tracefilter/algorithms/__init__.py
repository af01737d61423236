"""Particle filter algorithms.

This module provides the operations that advance a particle filter:

- Initialization (optionally stratified, optionally with a custom proposal)
- Updates to new arguments and observations
- Trace translators for generalized SMC moves
- Rejuvenation (move-accept and move-reweight)
- A sequential driver combining the above
"""

from __future__ import annotations

# Filtering driver
from tracefilter.algorithms.filter import run_particle_filter, smc_step

# Initialization
from tracefilter.algorithms.initialize import initialize

# Rejuvenation
from tracefilter.algorithms.rejuvenate import (
    metropolis_hastings,
    move_accept,
    move_reweight,
    move_reweight_kernel,
    rejuvenate,
)

# Trace translators
from tracefilter.algorithms.translate import (
    ExtendingTraceTranslator,
    TraceTransform,
    UpdatingTraceTranslator,
    is_involution,
    pair_bijections,
    translate,
)

# Update
from tracefilter.algorithms.update import update, update_particle

__all__ = [
    # Driver
    "run_particle_filter",
    "smc_step",
    # Initialization
    "initialize",
    # Rejuvenation
    "metropolis_hastings",
    "move_accept",
    "move_reweight",
    "move_reweight_kernel",
    "rejuvenate",
    # Trace translators
    "ExtendingTraceTranslator",
    "TraceTransform",
    "UpdatingTraceTranslator",
    "is_involution",
    "pair_bijections",
    "translate",
    # Update
    "update",
    "update_particle",
]
