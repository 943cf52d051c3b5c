"""
Trickle correction for a biased non-essential load sensor.

The current sensor on the non-essential port reads a small non-zero value
even when nothing is drawing power. Small readings are therefore treated as
pure bias: the zero-export (trickle) setting is moved so that the next
reading should land on the configured target. Readings at or above the
power threshold are genuine load and leave the setting alone, which keeps
real consumption out of the bias estimate.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Protocol

from socit.src.models import CoilBiasState

logger = logging.getLogger(__name__)


class CoilConfig(Protocol):
    """Subset of the coil settings the corrector needs."""

    power_threshold: float
    trickle_target: float
    max_trickle: float | None


def update(
    measured_non_essential_power: float,
    prior_trickle: float,
    config: CoilConfig,
) -> float:
    """Return the new trickle setting.

    Below ``power_threshold`` the whole reading is bias and the setting
    moves by ``measured - trickle_target``. The result is never negative and
    never exceeds ``max_trickle`` when one is configured.
    """
    if measured_non_essential_power >= config.power_threshold:
        return prior_trickle
    trickle = prior_trickle + (measured_non_essential_power - config.trickle_target)
    trickle = max(trickle, 0.0)
    if config.max_trickle is not None:
        trickle = min(trickle, config.max_trickle)
    return trickle


def correct(
    measured_non_essential_power: float,
    state: CoilBiasState,
    config: CoilConfig,
) -> CoilBiasState:
    """Apply :func:`update` to the carried state and record whether it ran."""
    active = measured_non_essential_power < config.power_threshold
    trickle = update(measured_non_essential_power, state.trickle, config)
    if active:
        logger.info(
            "Non-essential reading %.0f W treated as bias, trickle %.0f -> %.0f W",
            measured_non_essential_power,
            state.trickle,
            trickle,
        )
    else:
        logger.debug(
            "Non-essential load %.0f W at or above threshold, trickle unchanged",
            measured_non_essential_power,
        )
    return CoilBiasState(trickle=trickle, active=active)
