from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ncv_rate_analyzer.errors import MalformedBuffer
from ncv_rate_analyzer.models.minibuffer import NUM_HEFTY_MINIBUFFERS, MinibufferRecord
from ncv_rate_analyzer.models.profile import AnalysisProfile
from ncv_rate_analyzer.models.pulses import ChannelKey, Pulse, ReconstructedReadout


logger = logging.getLogger(__name__)


PULSE_COLUMNS = (
    "sequence_id",
    "device",
    "channel",
    "minibuffer",
    "start_time",
    "amplitude",
    "charge",
    "raw_amplitude",
)


def _require_columns(df: pd.DataFrame, cols: Sequence[str], what: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{what} table is missing columns: {missing}")


class PulseTableSource:
    """
    Waveform-stream chunk backed by a long-format pulse table (one row per pulse).

    Readouts without any pulse are kept as placeholder rows whose ``start_time`` is
    empty (NaN). Each loaded :class:`ReconstructedReadout` registers an empty pulse
    list for every ``(device, channel)`` of ``layout`` and every minibuffer, so the
    cut cascade can look up channels that saw nothing.

    Parameters
    ----------
    table:
        DataFrame with the columns of :data:`PULSE_COLUMNS`.
    num_minibuffers:
        Minibuffers per readout (1 in non-Hefty mode, 40 in Hefty mode).
    layout:
        Channels to register. Defaults to the channels present in ``table`` plus the
        primary and paired channels of ``profile``.
    sequence_ids:
        Row order of the chunk. Defaults to the ids in order of first appearance.
    """

    def __init__(
        self,
        table: pd.DataFrame,
        *,
        num_minibuffers: int = 1,
        layout: Optional[Sequence[ChannelKey]] = None,
        sequence_ids: Optional[Sequence[int]] = None,
        profile: Optional[AnalysisProfile] = None,
    ):
        _require_columns(table, PULSE_COLUMNS, "Pulse")
        if not 0 < int(num_minibuffers) <= NUM_HEFTY_MINIBUFFERS:
            raise ValueError(f"num_minibuffers must be in [1, {NUM_HEFTY_MINIBUFFERS}], got {num_minibuffers}")
        self.num_minibuffers = int(num_minibuffers)
        profile = profile or AnalysisProfile()

        pulses = table.dropna(subset=["start_time"])
        mb = pulses["minibuffer"].to_numpy()
        if mb.size and (mb.min() < 0 or mb.max() >= NUM_HEFTY_MINIBUFFERS):
            raise MalformedBuffer(f"Pulse minibuffer index outside [0, {NUM_HEFTY_MINIBUFFERS})")

        pulses = pulses.sort_values(["sequence_id", "device", "channel", "minibuffer", "start_time"], kind="stable")
        self._groups: Dict[int, pd.DataFrame] = {
            int(sid): g for sid, g in pulses.groupby("sequence_id", sort=False)
        }

        if sequence_ids is None:
            sequence_ids = pd.unique(table["sequence_id"])
        self._ids: List[int] = [int(x) for x in sequence_ids]

        if layout is None:
            pairs = {(int(d), int(c)) for d, c in pulses[["device", "channel"]].drop_duplicates().itertuples(index=False)}
            pairs.add(tuple(profile.primary_channel))
            pairs.add(tuple(profile.paired_channel))
            layout = sorted(pairs)
        self.layout: Tuple[ChannelKey, ...] = tuple((int(d), int(c)) for d, c in layout)

    def __len__(self) -> int:
        return len(self._ids)

    def sequence_id_at(self, row: int) -> int:
        return self._ids[row]

    def load(self, row: int) -> ReconstructedReadout:
        sid = self._ids[row]
        readout = ReconstructedReadout(sequence_id=sid)
        for d, c in self.layout:
            for m in range(self.num_minibuffers):
                readout.add_pulses(d, c, m, ())

        group = self._groups.get(sid)
        if group is not None:
            for r in group.itertuples(index=False):
                readout.add_pulse(
                    int(r.device),
                    int(r.channel),
                    int(r.minibuffer),
                    Pulse(
                        start_time=int(r.start_time),
                        amplitude=float(r.amplitude),
                        charge=float(r.charge),
                        raw_amplitude=int(r.raw_amplitude),
                    ),
                )
        return readout


class MinibufferTableSource:
    """
    Metadata-stream chunk backed by a wide table (one row per readout).

    Columns: ``sequence_id``, ``label_<i>``, ``t_since_beam_<i>``, ``time_<i>`` for each
    minibuffer ``i`` and ``more``. The number of minibuffers is taken from the
    ``label_<i>`` columns.
    """

    def __init__(self, table: pd.DataFrame):
        _require_columns(table, ("sequence_id", "more"), "Minibuffer")
        n = 0
        while f"label_{n}" in table.columns:
            n += 1
        if n == 0:
            raise ValueError("Minibuffer table has no label_<i> columns")
        if n > NUM_HEFTY_MINIBUFFERS:
            raise MalformedBuffer(f"Minibuffer table has {n} minibuffers, at most {NUM_HEFTY_MINIBUFFERS} allowed")
        _require_columns(table, [f"t_since_beam_{i}" for i in range(n)] + [f"time_{i}" for i in range(n)], "Minibuffer")

        self.n_minibuffers = n
        self._ids = table["sequence_id"].to_numpy(dtype=np.int64)
        self._labels = table[[f"label_{i}" for i in range(n)]].to_numpy(dtype=np.int64)
        self._tsb = table[[f"t_since_beam_{i}" for i in range(n)]].to_numpy(dtype=np.int64)
        self._times = table[[f"time_{i}" for i in range(n)]].to_numpy(dtype=np.uint64)
        self._more = table["more"].to_numpy(dtype=np.int64)

    def __len__(self) -> int:
        return int(self._ids.size)

    def sequence_id_at(self, row: int) -> int:
        return int(self._ids[row])

    def load(self, row: int) -> MinibufferRecord:
        more = np.zeros(self.n_minibuffers, dtype=np.int64)
        more[-1] = self._more[row]
        return MinibufferRecord(
            sequence_id=int(self._ids[row]),
            label=self._labels[row],
            time_since_reference=self._tsb[row],
            timestamp=self._times[row],
            more=more,
        )


def read_pulse_table(
    path: str | Path,
    *,
    num_minibuffers: int = 1,
    layout: Optional[Sequence[ChannelKey]] = None,
    profile: Optional[AnalysisProfile] = None,
) -> PulseTableSource:
    path = Path(path)
    df = pd.read_csv(path)
    logger.info("Read %d pulse rows from %s", len(df), path)
    return PulseTableSource(df, num_minibuffers=num_minibuffers, layout=layout, profile=profile)


def read_minibuffer_table(path: str | Path) -> MinibufferTableSource:
    path = Path(path)
    # timestamps exceed float precision, keep them integral
    df = pd.read_csv(path, dtype={c: "int64" for c in ("sequence_id", "more")})
    logger.info("Read %d minibuffer rows from %s", len(df), path)
    return MinibufferTableSource(df)


def read_capture_times(path: str | Path, *, column: str = "capture_time") -> np.ndarray:
    """Load simulated neutron capture times [ns] from a CSV file.

    The ``column`` column is used when present, otherwise the first column.
    """
    df = pd.read_csv(Path(path))
    series = df[column] if column in df.columns else df.iloc[:, 0]
    times = series.to_numpy(dtype=float)
    return times[np.isfinite(times)]
