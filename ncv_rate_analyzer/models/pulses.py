"""Reconstructed pulses and the per-readout pulse index.

Pulses are produced by an external pulse-finding routine. This module only
stores them and answers the two queries the cut cascade needs: exact lookup by
``(device, channel, minibuffer)`` and the tank-wide charge in a time window.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from ncv_rate_analyzer.errors import MalformedBuffer, MissingKey
from ncv_rate_analyzer.models.minibuffer import NUM_HEFTY_MINIBUFFERS


PulseKey = Tuple[int, int, int]  # (device, channel, minibuffer)
ChannelKey = Tuple[int, int]  # (device, channel)


@dataclass(frozen=True)
class Pulse:
    """
    One reconstructed pulse.

    start_time: buffer-relative start time [ns], non-negative.
    amplitude: baseline-subtracted amplitude.
    charge: integrated charge (same units as the tank-charge cut).
    raw_amplitude: peak ADC value before baseline subtraction.
    """
    start_time: int
    amplitude: float = 0.0
    charge: float = 0.0
    raw_amplitude: int = 0

    def __post_init__(self) -> None:
        if self.start_time < 0:
            raise ValueError(f"Pulse start_time must be non-negative, got {self.start_time}")


class ReconstructedReadout:
    """Pulses of one readout indexed by the compound key (device, channel, minibuffer).

    The index is a flat dict keyed by tuples. Registering a key with an empty batch
    is meaningful: it records that the channel was searched and nothing was found,
    so a later lookup returns an empty list instead of raising :class:`MissingKey`.
    """

    def __init__(self, sequence_id: Optional[int] = None):
        self.sequence_id = sequence_id
        self._pulses: Dict[PulseKey, List[Pulse]] = {}

    def __repr__(self) -> str:
        n = sum(len(v) for v in self._pulses.values())
        return f"ReconstructedReadout(sequence_id={self.sequence_id}, keys={len(self._pulses)}, pulses={n})"

    def __contains__(self, key: object) -> bool:
        return key in self._pulses

    def _insert_key(self, device: int, channel: int, minibuffer: int) -> PulseKey:
        mb = int(minibuffer)
        if not 0 <= mb < NUM_HEFTY_MINIBUFFERS:
            raise MalformedBuffer(
                f"Minibuffer index {mb} outside [0, {NUM_HEFTY_MINIBUFFERS}) "
                f"(device={device} channel={channel}, readout {self.sequence_id})"
            )
        return (int(device), int(channel), mb)

    def add_pulse(self, device: int, channel: int, minibuffer: int, pulse: Pulse) -> None:
        key = self._insert_key(device, channel, minibuffer)
        self._pulses.setdefault(key, []).append(pulse)

    def add_pulses(self, device: int, channel: int, minibuffer: int, pulses: Iterable[Pulse]) -> None:
        key = self._insert_key(device, channel, minibuffer)
        self._pulses.setdefault(key, []).extend(pulses)

    def get_pulses(self, device: int, channel: int, minibuffer: int) -> Sequence[Pulse]:
        key = (int(device), int(channel), int(minibuffer))
        try:
            return tuple(self._pulses[key])
        except KeyError:
            raise MissingKey(
                f"No pulses registered for device={device} channel={channel} minibuffer={minibuffer} "
                f"in readout {self.sequence_id}"
            ) from None

    def keys(self) -> List[PulseKey]:
        return sorted(self._pulses)

    def devices(self) -> List[int]:
        return sorted({k[0] for k in self._pulses})

    def items(self) -> Iterator[Tuple[PulseKey, Sequence[Pulse]]]:
        for key in sorted(self._pulses):
            yield key, tuple(self._pulses[key])

    def tank_charge(
        self,
        minibuffer: int,
        start_time: float,
        end_time: float,
        *,
        excluded: Iterable[ChannelKey] = (),
    ) -> Tuple[float, int]:
        """Sum pulse charge over all channels in ``[start_time, end_time)``.

        Parameters
        ----------
        minibuffer:
            Minibuffer index to search.
        start_time, end_time:
            Half-open window on the pulse start time [ns].
        excluded:
            ``(device, channel)`` pairs left out of the sum (detector under study,
            trigger inputs).

        Returns
        -------
        charge, n_unique_channels
            Total charge and the number of distinct channels with at least one
            pulse in the window.
        """
        skip: Set[ChannelKey] = {(int(d), int(c)) for d, c in excluded}
        mb = int(minibuffer)
        charge = 0.0
        channels: Set[ChannelKey] = set()
        for (d, c, m), pulses in self._pulses.items():
            if m != mb or (d, c) in skip:
                continue
            for p in pulses:
                if start_time <= p.start_time < end_time:
                    charge += float(p.charge)
                    channels.add((d, c))
        return charge, len(channels)
