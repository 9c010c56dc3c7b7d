from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np

from ncv_rate_analyzer.analysis.baseline import ze3ra_baseline
from ncv_rate_analyzer.models.pulses import Pulse, ReconstructedReadout
from ncv_rate_analyzer.models.raw import Channel, Readout


logger = logging.getLogger(__name__)


# (channel, minibuffer, threshold) -> pulses found in that minibuffer
PulseFinder = Callable[[Channel, int, float], Sequence[Pulse]]

# ADC sampling period of the digitizer cards [ns]
SAMPLE_PERIOD_NS = 2


def reconstruct_readout(
    readout: Readout,
    finder: PulseFinder,
    threshold: float,
) -> ReconstructedReadout:
    """Run ``finder`` over every channel and minibuffer of a raw readout.

    Every searched ``(device, channel, minibuffer)`` key is registered, with an
    empty list when the finder returns nothing.
    """
    reco = ReconstructedReadout(sequence_id=readout.sequence_id)
    for device_id in sorted(readout.devices):
        device = readout.devices[device_id]
        for channel_id in sorted(device.channels):
            channel = device.channels[channel_id]
            for mb in range(channel.num_minibuffers):
                reco.add_pulses(device_id, channel_id, mb, finder(channel, mb, threshold))
    return reco


def threshold_finder(
    channel: Channel,
    minibuffer: int,
    threshold: float,
    *,
    baseline: Optional[float] = None,
    sample_period_ns: int = SAMPLE_PERIOD_NS,
) -> List[Pulse]:
    """Simple threshold-crossing pulse finder.

    A pulse is a run of consecutive samples whose baseline-subtracted value is at or
    above ``threshold``. The baseline is the ZE3RA estimate of the channel unless
    given. Charge is the summed baseline-subtracted ADC counts times the sample
    period (ADC x ns).
    """
    if baseline is None:
        baseline = ze3ra_baseline(channel).mean
    samples = channel.minibuffer_data(minibuffer).astype(float)
    above = (samples - baseline) >= threshold
    if not above.any():
        return []

    # rising and falling edges of the over-threshold mask
    edges = np.diff(np.concatenate([[0], above.astype(np.int8), [0]]))
    starts = np.flatnonzero(edges == 1)
    stops = np.flatnonzero(edges == -1)

    pulses = []
    for a, b in zip(starts, stops):
        window = samples[a:b]
        peak = int(np.argmax(window))
        pulses.append(
            Pulse(
                start_time=int(a) * int(sample_period_ns),
                amplitude=float(window[peak] - baseline),
                charge=float(np.sum(window - baseline)) * sample_period_ns,
                raw_amplitude=int(window[peak]),
            )
        )
    return pulses
