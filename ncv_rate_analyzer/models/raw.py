from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from ncv_rate_analyzer.errors import DuplicateChannel, DuplicateDevice


@dataclass(frozen=True, eq=False)
class Channel:
    """
    One logical channel waveform of a device, after demultiplexing.

    Notes
    - ``data`` holds signed 16-bit ADC samples and is read-only.
    - The waveform is split into ``num_minibuffers`` equal-length windows.
    """
    channel_id: int
    rate: int
    data: np.ndarray
    num_minibuffers: int

    def __post_init__(self) -> None:
        arr = np.array(self.data, dtype=np.int16, copy=True)
        arr.setflags(write=False)
        object.__setattr__(self, "data", arr)
        if self.num_minibuffers <= 0:
            raise ValueError("num_minibuffers must be > 0")

    @property
    def n_samples(self) -> int:
        return int(self.data.size)

    @property
    def minibuffer_size(self) -> int:
        return self.n_samples // int(self.num_minibuffers)

    def minibuffer_data(self, index: int) -> np.ndarray:
        """Return the samples of minibuffer ``index`` (a read-only view)."""
        i = int(index)
        if not (0 <= i < self.num_minibuffers):
            raise IndexError(f"minibuffer index {i} out of range [0, {self.num_minibuffers})")
        n = self.minibuffer_size
        return self.data[i * n:(i + 1) * n]


@dataclass
class Device:
    """
    One acquisition unit (VME card) within a readout.

    Reference timestamps are kept exactly as recorded.
    """
    device_id: int
    last_sync: int = 0
    start_time_sec: int = 0
    start_time_nsec: int = 0
    start_count: int = 0
    trigger_counts: Tuple[int, ...] = ()
    channels: Dict[int, Channel] = field(default_factory=dict)

    @property
    def num_minibuffers(self) -> int:
        return len(self.trigger_counts)

    def add_channel(self, channel: Channel, *, overwrite_ok: bool = False) -> None:
        cid = int(channel.channel_id)
        if cid in self.channels and not overwrite_ok:
            raise DuplicateChannel(f"Channel {cid} already present on device {self.device_id}")
        self.channels[cid] = channel

    def channel(self, channel_id: int) -> Channel:
        return self.channels[int(channel_id)]


@dataclass
class Readout:
    """All raw data captured for one trigger, keyed by device id."""
    sequence_id: Optional[int] = None
    devices: Dict[int, Device] = field(default_factory=dict)

    def add_device(self, device: Device, *, overwrite_ok: bool = False) -> None:
        did = int(device.device_id)
        if did in self.devices and not overwrite_ok:
            raise DuplicateDevice(f"Device {did} already present in readout {self.sequence_id}")
        self.devices[did] = device

    def device(self, device_id: int) -> Device:
        return self.devices[int(device_id)]

    def channel(self, device_id: int, channel_id: int) -> Channel:
        return self.devices[int(device_id)].channel(channel_id)
