"""Event-time histograms, background estimates and normalized NCV rates.

Two acquisition modes are supported:

- non-Hefty: one minibuffer per readout, times are buffer-relative. Background
  is counted in an early window and scaled to the signal window length.
- Hefty: forty minibuffers per readout, each with a trigger label and an
  absolute timestamp. Event times are rebuilt relative to the last beam
  minibuffer; minibuffers with random-trigger labels give the background rate.

All counts are Poisson. Every rate is normalized by ``1 / (POT * efficiency)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from ncv_rate_analyzer.analysis.cuts import VetoCursor, approve_event
from ncv_rate_analyzer.analysis.histogram import TimeHistogram
from ncv_rate_analyzer.analysis.timing import ReferenceClock
from ncv_rate_analyzer.errors import UnknownReferenceTime
from ncv_rate_analyzer.ingest.streams import RecordSource, build_sequence_index, iter_synchronized
from ncv_rate_analyzer.models.minibuffer import MinibufferLabel, is_background_label
from ncv_rate_analyzer.models.profile import AnalysisProfile
from ncv_rate_analyzer.models.results import ValueWithError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimingResult:
    """
    Output of one timing pass over a run (or a set of runs at one position).

    raw_signal and background are normalized (events per POT once divided by
    POT x efficiency); the ``*_counts`` fields are the raw integer counts.
    """
    histogram: TimeHistogram
    raw_signal: ValueWithError
    background: ValueWithError
    signal_counts: int
    background_counts: int
    n_readouts: int
    hefty: bool = False
    norm_factor: float = 1.0
    n_background_minibuffers: int = 0
    n_beam_minibuffers: int = 0
    pre_beam_counts: int = 0
    pre_beam_rate: Optional[ValueWithError] = None
    n_unknown_reference: int = 0
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PositionRate:
    """Final background-subtracted rate for one NCV position."""
    position: int
    hefty: bool
    pot: float
    efficiency: float
    timing: TimingResult
    rate: ValueWithError
    water_thickness_in: Optional[Tuple[float, float]] = None  # (vertical, horizontal)
    warnings: Tuple[str, ...] = field(default=())


def normalization_factor(pot: float, efficiency: float) -> float:
    if pot <= 0:
        raise ValueError(f"POT must be > 0, got {pot}")
    if efficiency <= 0:
        raise ValueError(f"Efficiency must be > 0, got {efficiency}")
    return 1.0 / (float(pot) * float(efficiency))


def _in_window(x: float, window: Tuple[float, float]) -> bool:
    return window[0] <= x < window[1]


def _sorted_readouts(chunks: Sequence[RecordSource]) -> Iterable[Tuple[int, object]]:
    """Yield ``(chunk_index, readout)`` in ascending sequence-id order per chunk."""
    for c, chunk in enumerate(chunks):
        logger.info("Reading chunk %d", c)
        index = build_sequence_index(chunk)
        for k, row in enumerate(index.values()):
            if k % 1000 == 0:
                logger.info("Entry %d of %d", k, len(index))
            yield c, chunk.load(row)


def make_nonhefty_timing_hist(
    pulse_chunks: Sequence[RecordSource],
    norm_factor: float,
    *,
    name: str = "nonhefty_time_hist",
    title: str = "",
    profile: Optional[AnalysisProfile] = None,
) -> TimingResult:
    """Histogram approved primary-channel pulses of minibuffer 0 (non-Hefty mode).

    Background and signal windows apply to the pulse start time. The expected
    background in the signal window is the background count scaled by the ratio
    of the window lengths.
    """
    p = profile or AnalysisProfile()
    hist = TimeHistogram.for_profile(name, title, p)
    bg_window = p.background_window(False)
    sig_window = p.signal_window(False)
    d, c = p.primary_channel

    n_readouts = 0
    n_bg = 0
    n_sig = 0
    for _, readout in _sorted_readouts(pulse_chunks):
        n_readouts += 1
        cursor = VetoCursor()
        for pulse in readout.get_pulses(d, c, 0):
            event_time = float(pulse.start_time)
            if not approve_event(event_time, cursor.previous_accepted_time, pulse, readout, 0, p):
                continue
            hist.fill(event_time)
            cursor.accept(event_time)
            if _in_window(pulse.start_time, bg_window):
                n_bg += 1
            if _in_window(pulse.start_time, sig_window):
                n_sig += 1

    background = ValueWithError.poisson(n_bg, floor=p.poisson_floor)
    raw_signal = ValueWithError.poisson(n_sig, floor=p.poisson_floor)

    logger.info("Found %s background events in %d non-Hefty buffers", background, n_readouts)
    logger.info("Found %s raw signal events in %d non-Hefty buffers", raw_signal, n_readouts)

    background_factor = (sig_window[1] - sig_window[0]) / (bg_window[1] - bg_window[0])
    logger.info("Expected background counts = %s", background * background_factor)

    hist.scale_by(norm_factor)
    return TimingResult(
        histogram=hist,
        raw_signal=raw_signal * norm_factor,
        background=background * (background_factor * norm_factor),
        signal_counts=n_sig,
        background_counts=n_bg,
        n_readouts=n_readouts,
        hefty=False,
        norm_factor=norm_factor,
    )


def make_hefty_timing_hist(
    pulse_chunks: Sequence[RecordSource],
    minibuffer_chunks: Sequence[RecordSource],
    norm_factor: float,
    *,
    name: str = "hefty_time_hist",
    title: str = "",
    profile: Optional[AnalysisProfile] = None,
) -> TimingResult:
    """Histogram approved primary-channel pulses in all minibuffers (Hefty mode).

    Event times are measured from the last beam minibuffer. Events seen before any
    beam minibuffer still go through the cuts but are left out of every count and
    the histogram; each one adds a warning.
    """
    p = profile or AnalysisProfile()
    hist = TimeHistogram.for_profile(name, title, p)
    sig_window = p.signal_window(True)
    pre_window = p.background_window(True)
    d, c = p.primary_channel

    clock = ReferenceClock()
    warnings: List[str] = []
    current_chunk = None
    n_readouts = 0
    n_bg_mb = 0
    n_beam_mb = 0
    n_bg = 0
    n_sig = 0
    n_pre = 0
    n_unknown = 0

    for chunk, readout, record in iter_synchronized(pulse_chunks, minibuffer_chunks):
        if p.reference_reset == "readout" or chunk != current_chunk:
            clock.reset()
        current_chunk = chunk
        n_readouts += 1

        n_mb = min(record.n_minibuffers, p.num_hefty_minibuffers)
        for m in range(n_mb):
            label = record.label_at(m)
            timestamp = record.timestamp_at(m)
            if is_background_label(label):
                n_bg_mb += 1
            elif label == MinibufferLabel.BEAM:
                n_beam_mb += 1
            clock.observe(label, timestamp)

            cursor = VetoCursor()
            for pulse in readout.get_pulses(d, c, m):
                try:
                    event_time = clock.event_time(pulse.start_time, label, timestamp)
                    trusted = True
                except UnknownReferenceTime:
                    event_time = float(pulse.start_time)
                    trusted = False

                if not approve_event(event_time, cursor.previous_accepted_time, pulse, readout, m, p):
                    continue

                if trusted:
                    hist.fill(event_time)
                    cursor.accept(event_time)
                    if _in_window(event_time, sig_window):
                        n_sig += 1
                    if is_background_label(label):
                        n_bg += 1
                else:
                    n_unknown += 1
                    msg = (
                        f"Event with unknown beam spill time skipped "
                        f"(SequenceID {readout.sequence_id}, minibuffer {m}, start_time {pulse.start_time})"
                    )
                    logger.warning(msg)
                    warnings.append(msg)

                if label == MinibufferLabel.BEAM and _in_window(pulse.start_time, pre_window):
                    n_pre += 1

    background = ValueWithError.poisson(n_bg, floor=p.poisson_floor)
    raw_signal = ValueWithError.poisson(n_sig, floor=p.poisson_floor)
    pre_beam = ValueWithError.poisson(n_pre, floor=p.poisson_floor)

    logger.info("Found %s background events in %d minibuffers", background, n_bg_mb)
    logger.info("Found %s raw signal events in %d beam spills", raw_signal, n_beam_mb)

    if n_bg_mb > 0:
        bg_rate = background / (p.hefty_minibuffer_time_ns * n_bg_mb)
        logger.info("Background rate = %s events / ns", bg_rate)
    else:
        bg_rate = ValueWithError()
        msg = "No background-labeled minibuffers; expected background set to zero"
        logger.warning(msg)
        warnings.append(msg)

    background_factor = (sig_window[1] - sig_window[0]) * n_beam_mb
    logger.info("Expected background counts = %s", bg_rate * background_factor)

    pre_beam_rate = None
    if n_beam_mb > 0:
        pre_beam_rate = pre_beam / ((pre_window[1] - pre_window[0]) * n_beam_mb)
        logger.info("Pre-beam background rate = %s events / ns", pre_beam_rate)

    hist.scale_by(norm_factor)
    return TimingResult(
        histogram=hist,
        raw_signal=raw_signal * norm_factor,
        background=bg_rate * (background_factor * norm_factor),
        signal_counts=n_sig,
        background_counts=n_bg,
        n_readouts=n_readouts,
        hefty=True,
        norm_factor=norm_factor,
        n_background_minibuffers=n_bg_mb,
        n_beam_minibuffers=n_beam_mb,
        pre_beam_counts=n_pre,
        pre_beam_rate=pre_beam_rate,
        n_unknown_reference=n_unknown,
        warnings=tuple(warnings),
    )


def subtract_background(result: TimingResult, profile: Optional[AnalysisProfile] = None) -> ValueWithError:
    """Final rate of a timing pass: raw signal minus expected background, or raw signal alone."""
    p = profile or AnalysisProfile()
    if p.subtract_background:
        return result.raw_signal - result.background
    return result.raw_signal


def make_timing_distribution(
    position: int,
    *,
    hefty: bool,
    pulse_chunks: Sequence[RecordSource],
    pot: float,
    efficiency: float,
    minibuffer_chunks: Optional[Sequence[RecordSource]] = None,
    water_thickness_in: Optional[Tuple[float, float]] = None,
    profile: Optional[AnalysisProfile] = None,
) -> PositionRate:
    """Estimate the neutron event rate (events / POT) at one NCV position."""
    p = profile or AnalysisProfile()
    norm = normalization_factor(pot, efficiency)
    name = f"pos_{position}_time_hist"
    title = f"position {position} event time distribution"
    logger.info("Creating %s", title)

    if hefty:
        if minibuffer_chunks is None:
            raise ValueError(f"Position {position}: Hefty mode requires minibuffer (timing) data")
        result = make_hefty_timing_hist(pulse_chunks, minibuffer_chunks, norm, name=name, title=title, profile=p)
    else:
        result = make_nonhefty_timing_hist(pulse_chunks, norm, name=name, title=title, profile=p)

    logger.info("Raw event rate = %s events / POT", result.raw_signal)
    logger.info("Background = %s events / POT", result.background)

    rate = subtract_background(result, p)
    return PositionRate(
        position=int(position),
        hefty=bool(hefty),
        pot=float(pot),
        efficiency=float(efficiency),
        timing=result,
        rate=rate,
        water_thickness_in=None if water_thickness_in is None else tuple(float(x) for x in water_thickness_in),
        warnings=result.warnings,
    )


def compute_soft_rate(
    pulse_chunks: Sequence[RecordSource],
    profile: Optional[AnalysisProfile] = None,
) -> ValueWithError:
    """Rate of approved primary-channel pulses in soft-trigger data [pulses / ns]."""
    p = profile or AnalysisProfile()
    d, c = p.primary_channel
    window = p.time_range_ns[1] - p.time_range_ns[0]

    n_readouts = 0
    n_pulses = 0
    for _, readout in _sorted_readouts(pulse_chunks):
        n_readouts += 1
        cursor = VetoCursor()
        for pulse in readout.get_pulses(d, c, 0):
            event_time = float(pulse.start_time)
            if approve_event(event_time, cursor.previous_accepted_time, pulse, readout, 0, p):
                n_pulses += 1
                cursor.accept(event_time)

    if n_readouts == 0:
        raise ValueError("No soft-trigger readouts to compute a rate from")

    rate = ValueWithError.poisson(n_pulses, floor=p.poisson_floor) / (n_readouts * window)
    logger.info("Found %d pulses in %d soft triggers", n_pulses, n_readouts)
    logger.info("Background pulse rate = %s pulses / ns", rate)
    return rate
