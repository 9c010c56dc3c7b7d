from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence

import numpy as np

from ncv_rate_analyzer.errors import MalformedBuffer
from ncv_rate_analyzer.models.raw import Channel, Device, Readout


# Converts the stored event size to the minibuffer size (in samples)
EVENT_SIZE_TO_MINIBUFFER_SIZE = 4


@dataclass(frozen=True)
class DeviceRecord:
    """
    One row of the raw device stream: the full buffer of one device for one readout.

    Field semantics follow the DAQ output:
      - buffer_size: samples per channel (both halves together)
      - full_buffer_size: total length of ``data``
      - event_size: minibuffer size in units of EVENT_SIZE_TO_MINIBUFFER_SIZE samples
      - trigger_number: number of entries in ``trigger_counts`` (one per minibuffer)
    """
    sequence_id: int
    card_id: int
    channels: int
    buffer_size: int
    full_buffer_size: int
    event_size: int
    trigger_number: int
    data: Sequence[int]
    trigger_counts: Sequence[int]
    rates: Sequence[int]
    last_sync: int = 0
    start_time_sec: int = 0
    start_time_nsec: int = 0
    start_count: int = 0

    @property
    def minibuffer_size(self) -> int:
        return int(self.event_size) * EVENT_SIZE_TO_MINIBUFFER_SIZE


def _channel_samples(data: np.ndarray, channel_index: int, buffer_size: int) -> np.ndarray:
    """Concatenate the two half-length regions that hold one channel's waveform.

    The first halves of all channels fill the first half of the device buffer, in
    channel order; the second halves fill the second half in the same order.
    """
    half = buffer_size // 2
    midpoint = data.size // 2
    first = data[channel_index * half:(channel_index + 1) * half]
    second = data[midpoint + channel_index * half:midpoint + (channel_index + 1) * half]
    return np.concatenate([first, second])


def demultiplex_device(
    *,
    device_id: int,
    channel_count: int,
    buffer_size: int,
    minibuffer_size: int,
    data: Sequence[int],
    trigger_counts: Sequence[int],
    rates: Sequence[int],
    last_sync: int = 0,
    start_time_sec: int = 0,
    start_time_nsec: int = 0,
    start_count: int = 0,
) -> Device:
    """Split one shared device buffer into per-channel waveforms.

    Parameters
    ----------
    device_id:
        Device (card) id.
    channel_count:
        Number of channels multiplexed into ``data``.
    buffer_size:
        Samples per channel. Must be positive and even.
    minibuffer_size:
        Samples per channel per minibuffer.
    data:
        Flat sample buffer, ``channel_count * buffer_size`` long.
    trigger_counts:
        One counter per minibuffer (``buffer_size // minibuffer_size`` entries).
    rates:
        Per-channel rates, at least ``channel_count`` entries.

    Returns
    -------
    Device
        Device with one :class:`Channel` per channel index.
    """
    n_ch = int(channel_count)
    S = int(buffer_size)
    mb = int(minibuffer_size)
    buf = np.asarray(data)

    if n_ch < 0:
        raise MalformedBuffer(f"Negative channel count {n_ch} for device {device_id}")
    if S <= 0 or S % 2 != 0:
        raise MalformedBuffer(f"Per-channel buffer size must be positive and even, got {S} (device {device_id})")
    if mb <= 0:
        raise MalformedBuffer(f"Minibuffer size must be > 0, got {mb} (device {device_id})")
    if buf.ndim != 1 or buf.size != n_ch * S:
        raise MalformedBuffer(
            f"Mismatch between number of channels and channel buffer size for device {device_id}: "
            f"len(data)={buf.size}, channels*buffer_size={n_ch * S}"
        )
    n_minibuffers = S // mb
    if len(trigger_counts) != n_minibuffers:
        raise MalformedBuffer(
            f"Mismatch between number of minibuffers and minibuffer size for device {device_id}: "
            f"{len(trigger_counts)} trigger counts, buffer_size/minibuffer_size={n_minibuffers}"
        )
    if len(rates) < n_ch:
        raise MalformedBuffer(f"Missing rates for device {device_id}: {len(rates)} < {n_ch} channels")

    device = Device(
        device_id=int(device_id),
        last_sync=int(last_sync),
        start_time_sec=int(start_time_sec),
        start_time_nsec=int(start_time_nsec),
        start_count=int(start_count),
        trigger_counts=tuple(int(x) for x in trigger_counts),
    )
    # ADC words are unsigned on the wire; channels keep them as signed 16-bit samples.
    signed = buf.astype(np.int64).astype(np.int16)
    for c in range(n_ch):
        device.add_channel(
            Channel(
                channel_id=c,
                rate=int(rates[c]),
                data=_channel_samples(signed, c, S),
                num_minibuffers=n_minibuffers,
            )
        )
    return device


def device_from_record(rec: DeviceRecord) -> Device:
    """Validate a raw stream row and demultiplex it into a :class:`Device`."""
    if rec.full_buffer_size < 0:
        raise MalformedBuffer(f"Negative full_buffer_size value {rec.full_buffer_size} (sequence {rec.sequence_id})")
    if rec.trigger_number < 0:
        raise MalformedBuffer(f"Negative trigger_number value {rec.trigger_number} (sequence {rec.sequence_id})")
    if rec.channels < 0:
        raise MalformedBuffer(f"Negative channels value {rec.channels} (sequence {rec.sequence_id})")
    if len(rec.data) != rec.full_buffer_size:
        raise MalformedBuffer(
            f"len(data)={len(rec.data)} does not match full_buffer_size={rec.full_buffer_size} "
            f"(sequence {rec.sequence_id}, card {rec.card_id})"
        )
    if len(rec.trigger_counts) != rec.trigger_number:
        raise MalformedBuffer(
            f"len(trigger_counts)={len(rec.trigger_counts)} does not match trigger_number={rec.trigger_number} "
            f"(sequence {rec.sequence_id}, card {rec.card_id})"
        )
    return demultiplex_device(
        device_id=rec.card_id,
        channel_count=rec.channels,
        buffer_size=rec.buffer_size,
        minibuffer_size=rec.minibuffer_size,
        data=rec.data,
        trigger_counts=rec.trigger_counts,
        rates=rec.rates,
        last_sync=rec.last_sync,
        start_time_sec=rec.start_time_sec,
        start_time_nsec=rec.start_time_nsec,
        start_count=rec.start_count,
    )


@dataclass
class RawReader:
    """
    Groups consecutive device rows sharing a sequence id into :class:`Readout` objects.

    Rows repeating the sequence id of the last loaded readout are skipped, so
    alternating ``next()`` / ``previous()`` calls never return the same readout twice
    in a row. A readout cut short by the end of the stream is still returned.
    """
    records: Sequence[DeviceRecord]
    _entry: int = field(default=0, init=False, repr=False)
    _last_sequence_id: Optional[int] = field(default=None, init=False, repr=False)

    def __iter__(self) -> Iterator[Readout]:
        while True:
            readout = self.next()
            if readout is None:
                return
            yield readout

    def next(self) -> Optional[Readout]:
        return self._load(step=1)

    def previous(self) -> Optional[Readout]:
        if self._entry <= 0:
            return None
        self._entry -= 1
        return self._load(step=-1)

    def _load(self, *, step: int) -> Optional[Readout]:
        readout: Optional[Readout] = None
        n = len(self.records)
        while 0 <= self._entry < n:
            rec = self.records[self._entry]
            if rec.sequence_id == self._last_sequence_id:
                self._entry += step
                continue
            if readout is None:
                readout = Readout(sequence_id=int(rec.sequence_id))
            elif rec.sequence_id != readout.sequence_id:
                break
            readout.add_device(device_from_record(rec))
            self._entry += step

        if self._entry < 0:
            self._entry = 0
        if readout is None:
            return None
        self._last_sequence_id = readout.sequence_id
        return readout


def read_all(records: Sequence[DeviceRecord]) -> List[Readout]:
    return list(RawReader(records))
