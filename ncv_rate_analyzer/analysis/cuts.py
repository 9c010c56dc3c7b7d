"""Event approval cut cascade for candidate pulses on the primary NCV channel."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from ncv_rate_analyzer.models.profile import AnalysisProfile
from ncv_rate_analyzer.models.pulses import Pulse, ReconstructedReadout


CUT_DEAD_TIME = "dead_time"
CUT_TANK_CHANNELS = "tank_channels"
CUT_TANK_CHARGE = "tank_charge"
CUT_COINCIDENCE = "coincidence"

CUT_NAMES = (CUT_DEAD_TIME, CUT_TANK_CHANNELS, CUT_TANK_CHARGE, CUT_COINCIDENCE)


def first_failed_cut(
    event_time: float,
    previous_accepted_time: float,
    pulse: Pulse,
    readout: ReconstructedReadout,
    minibuffer_index: int,
    profile: Optional[AnalysisProfile] = None,
) -> Optional[str]:
    """Return the name of the first cut the candidate fails, or ``None`` if it passes.

    Cuts, in order:
      1. dead time: ``event_time <= previous_accepted_time + veto_time_ns``
      2. tank activity in ``[start, start + tank_charge_window_ns)``: too many
         distinct tank channels, then too much summed charge
      3. coincidence: no paired-channel pulse within ``coincidence_tolerance_ns``
    """
    p = profile or AnalysisProfile()

    if event_time <= previous_accepted_time + p.veto_time_ns:
        return CUT_DEAD_TIME

    start = float(pulse.start_time)
    charge, n_channels = readout.tank_charge(
        minibuffer_index,
        start,
        start + p.tank_charge_window_ns,
        excluded=p.tank_charge_excluded,
    )
    if n_channels >= p.unique_channel_cut:
        return CUT_TANK_CHANNELS
    if charge >= p.tank_charge_cut:
        return CUT_TANK_CHARGE

    d, c = p.paired_channel
    for other in readout.get_pulses(d, c, minibuffer_index):
        if abs(float(other.start_time) - start) < p.coincidence_tolerance_ns:
            return None
    return CUT_COINCIDENCE


def approve_event(
    event_time: float,
    previous_accepted_time: float,
    pulse: Pulse,
    readout: ReconstructedReadout,
    minibuffer_index: int,
    profile: Optional[AnalysisProfile] = None,
) -> bool:
    return first_failed_cut(event_time, previous_accepted_time, pulse, readout, minibuffer_index, profile) is None


@dataclass
class VetoCursor:
    """Time of the last accepted event in the current minibuffer stream."""

    previous_accepted_time: float = -math.inf

    def reset(self) -> None:
        self.previous_accepted_time = -math.inf

    def accept(self, event_time: float) -> None:
        self.previous_accepted_time = float(event_time)
