"""Configuration models for particle filter runs."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "InvalidWeightPolicy",
    "SMCConfig",
]

InvalidWeightPolicy = Literal["error", "warn", "silent"]


class SMCConfig(BaseModel):
    """Settings for a sequential particle filter run.

    Attributes
    ----------
    n_particles : int
        Number of particles.
    ess_threshold : float
        Resample whenever ESS falls below ``ess_threshold * n_particles``.
    resampling_method : str
        "multinomial", "residual" or "stratified".
    sort_particles : bool
        Sort particles by weight before stratified resampling.
    on_invalid : str
        Policy for degenerate weights: "error", "warn" or "silent".
    n_rejuvenation_steps : int
        Kernel applications per particle after each resampling step.
    rejuvenation_method : str
        "move" (accept/reject kernel) or "reweight" (move-reweight kernel).
    """

    model_config = ConfigDict(frozen=True)

    n_particles: int = Field(default=100, gt=0)
    ess_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    resampling_method: Literal["multinomial", "residual", "stratified"] = "multinomial"
    sort_particles: bool = True
    on_invalid: InvalidWeightPolicy = "warn"
    n_rejuvenation_steps: int = Field(default=0, ge=0)
    rejuvenation_method: Literal["move", "reweight"] = "move"
