"""Minibuffer time reconstruction relative to the last beam trigger.

Pulse start times are relative to the start of their minibuffer. In Hefty mode
each minibuffer also carries an absolute timestamp, so the time since the most
recent beam minibuffer can be rebuilt as::

    event_time = start_time + (minibuffer_timestamp - last_beam_timestamp)

Calibration-source minibuffers have no beam offset; their start times are used
as they are.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ncv_rate_analyzer.errors import InvalidTimestamp, UnknownReferenceTime
from ncv_rate_analyzer.models.minibuffer import MinibufferLabel


@dataclass
class ReferenceClock:
    """Tracks the timestamp of the last beam minibuffer [ns since the epoch].

    ``last_reference_time`` is ``None`` until the first beam minibuffer is seen.
    The owner decides when to :meth:`reset` (per run chunk or per readout).
    """

    last_reference_time: Optional[int] = None

    def reset(self) -> None:
        self.last_reference_time = None

    @property
    def known(self) -> bool:
        return self.last_reference_time is not None

    def observe(self, label: int, timestamp: int) -> None:
        """Update the reference with a minibuffer, before its pulses are processed."""
        if int(label) == MinibufferLabel.BEAM:
            self.last_reference_time = int(timestamp)

    def offset(self, label: int, timestamp: int) -> int:
        """Time between the last beam minibuffer and this minibuffer [ns]."""
        if int(label) == MinibufferLabel.CALIBRATION_SOURCE:
            return 0
        if self.last_reference_time is None:
            raise UnknownReferenceTime(f"No beam minibuffer seen before timestamp {int(timestamp)}")
        ts = int(timestamp)
        if ts < self.last_reference_time:
            raise InvalidTimestamp(
                f"Minibuffer timestamp {ts} precedes the last beam timestamp {self.last_reference_time}"
            )
        return ts - self.last_reference_time

    def event_time(self, start_time: int, label: int, timestamp: int) -> float:
        return float(int(start_time) + self.offset(label, timestamp))
