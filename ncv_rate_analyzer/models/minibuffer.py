from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import FrozenSet

import numpy as np


NUM_HEFTY_MINIBUFFERS = 40


class MinibufferLabel(IntEnum):
    """Trigger-source label of a Hefty-mode minibuffer (values as written by the DAQ)."""

    UNKNOWN = 0
    BEAM = 1
    SELF_TRIGGER = 2
    COSMIC = 3
    CALIBRATION_SOURCE = 4
    PERIODIC = 5
    MINIMUM_RATE = 6
    SOFTWARE = 7


# Random-in-time triggers used to estimate backgrounds (minimum-rate buffers had the LEDs enabled)
BACKGROUND_LABELS: FrozenSet[int] = frozenset(
    {MinibufferLabel.SOFTWARE, MinibufferLabel.PERIODIC, MinibufferLabel.MINIMUM_RATE}
)


def is_background_label(label: int) -> bool:
    return int(label) in BACKGROUND_LABELS


def _readonly(values, dtype) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class MinibufferRecord:
    """
    One row of the Hefty timing (minibuffer metadata) stream.

    Arrays are indexed by minibuffer number and have length ``n_minibuffers``.

    label: trigger-source labels (see :class:`MinibufferLabel`).
    time_since_reference: signed offset from the last beam trigger [ns]; only valid for some labels.
    timestamp: absolute minibuffer time [ns since the Unix epoch].
    more: reserved; only the last element is meaningful.
    """
    sequence_id: int
    label: np.ndarray
    time_since_reference: np.ndarray
    timestamp: np.ndarray
    more: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "label", _readonly(self.label, np.int64))
        object.__setattr__(self, "time_since_reference", _readonly(self.time_since_reference, np.int64))
        object.__setattr__(self, "timestamp", _readonly(self.timestamp, np.uint64))
        object.__setattr__(self, "more", _readonly(self.more, np.int64))
        n = self.label.size
        for name in ("time_since_reference", "timestamp", "more"):
            if getattr(self, name).size != n:
                raise ValueError(f"MinibufferRecord.{name} has length {getattr(self, name).size}, expected {n}")
        if n > NUM_HEFTY_MINIBUFFERS:
            raise ValueError(f"At most {NUM_HEFTY_MINIBUFFERS} minibuffers per record, got {n}")

    @property
    def n_minibuffers(self) -> int:
        return int(self.label.size)

    def label_at(self, index: int) -> MinibufferLabel:
        try:
            return MinibufferLabel(int(self.label[index]))
        except ValueError:
            return MinibufferLabel.UNKNOWN

    def timestamp_at(self, index: int) -> int:
        return int(self.timestamp[index])

    def count_label(self, label: int) -> int:
        return int(np.count_nonzero(self.label == int(label)))
