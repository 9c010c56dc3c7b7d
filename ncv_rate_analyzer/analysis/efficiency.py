"""NCV efficiency from a template fit to calibration-source data.

The simulated capture-time distribution (shifted by a mode-dependent offset) is
fitted to the measured source event-time histogram as

    f(t) = p0 * template(t) + p1

where ``template(t)`` is the content of the template bin containing ``t``.
``p0`` is a lower bound on the detector efficiency and ``p1`` the flat
accidental background.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import curve_fit

from ncv_rate_analyzer.analysis.histogram import TimeHistogram
from ncv_rate_analyzer.analysis.rates import make_hefty_timing_hist, make_nonhefty_timing_hist
from ncv_rate_analyzer.ingest.streams import RecordSource
from ncv_rate_analyzer.models.minibuffer import MinibufferLabel
from ncv_rate_analyzer.models.profile import AnalysisProfile


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EfficiencyFit:
    p0: float
    p1: float
    p0_error: float
    p1_error: float
    chi2: float
    ndf: int
    fit_start: float
    fit_end: float
    data: TimeHistogram
    template: TimeHistogram
    fitted: TimeHistogram

    @property
    def efficiency(self) -> float:
        return self.p0

    @property
    def chi2_ndf(self) -> float:
        return self.chi2 / self.ndf if self.ndf > 0 else float("nan")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "p0": self.p0,
            "p0_error": self.p0_error,
            "p1": self.p1,
            "p1_error": self.p1_error,
            "chi2": self.chi2,
            "ndf": self.ndf,
            "fit_start": self.fit_start,
            "fit_end": self.fit_end,
        }


def build_template(
    capture_times: Sequence[float],
    offset: float,
    scale: float = 1e-6,
    *,
    name: str = "capture_time_template",
    profile: Optional[AnalysisProfile] = None,
) -> TimeHistogram:
    """Histogram simulated capture times shifted by ``offset`` and scaled by ``scale``."""
    hist = TimeHistogram.for_profile(name, "Simulated capture times", profile)
    hist.fill_many(np.asarray(capture_times, dtype=float) + float(offset))
    hist.scale_by(scale)
    return hist


def _template_lookup(template: TimeHistogram):
    contents = template.contents()

    def values(t: np.ndarray) -> np.ndarray:
        t = np.asarray(t, dtype=float)
        idx = np.floor((t - template.x_min) / template.bin_width).astype(int)
        inside = (idx >= 0) & (idx < template.n_bins)
        out = np.zeros_like(t)
        out[inside] = contents[idx[inside]]
        return out

    return values


def fit_template(
    data: TimeHistogram,
    template: TimeHistogram,
    fit_start: float,
    fit_end: float,
    *,
    initial: Tuple[float, float] = (1.0, 1e-3),
    floor: bool = True,
) -> EfficiencyFit:
    """Chi-square fit of ``p0 * template + p1`` to ``data`` over bins centered in [fit_start, fit_end]."""
    centers = data.centers
    mask = (centers >= fit_start) & (centers <= fit_end)
    n_points = int(np.count_nonzero(mask))
    if n_points <= 2:
        raise ValueError(f"Fit range [{fit_start}, {fit_end}] covers only {n_points} bins")

    x = centers[mask]
    y = data.contents()[mask]
    sigma = data.errors(floor=floor)[mask]
    if np.any(sigma <= 0):
        raise ValueError("Fit needs strictly positive bin errors; enable the Poisson floor")

    lookup = _template_lookup(template)

    def model(t, p0, p1):
        return p0 * lookup(t) + p1

    popt, pcov = curve_fit(model, x, y, p0=list(initial), sigma=sigma, absolute_sigma=True)
    perr = np.sqrt(np.diag(pcov))
    residual = (y - model(x, *popt)) / sigma
    chi2 = float(np.sum(residual ** 2))
    ndf = n_points - 2

    p0, p1 = float(popt[0]), float(popt[1])
    fitted = TimeHistogram(
        name=f"{template.name}_fit",
        title="Scaled simulated prediction + flat background",
        n_bins=template.n_bins,
        x_min=template.x_min,
        x_max=template.x_max,
        x_label=data.x_label,
        y_label=data.y_label,
        counts=template.contents() * p0 + p1,
    )

    logger.info("Estimate of NCV efficiency = %.6g +/- %.6g (chi2/ndf = %.3g/%d)", p0, perr[0], chi2, ndf)
    return EfficiencyFit(
        p0=p0,
        p1=p1,
        p0_error=float(perr[0]),
        p1_error=float(perr[1]),
        chi2=chi2,
        ndf=ndf,
        fit_start=float(fit_start),
        fit_end=float(fit_end),
        data=data,
        template=template,
        fitted=fitted,
    )


def _fit_for_mode(data: TimeHistogram, capture_times: Sequence[float], hefty: bool, p: AnalysisProfile) -> EfficiencyFit:
    template = build_template(capture_times, p.template_offset(hefty), p.template_scale, profile=p)
    return fit_template(
        data,
        template,
        p.fit_start(hefty),
        p.fit_end_ns,
        initial=p.fit_initial,
        floor=p.poisson_floor,
    )


def calibrate_nonhefty(
    source_chunks: Sequence[RecordSource],
    capture_times: Sequence[float],
    profile: Optional[AnalysisProfile] = None,
) -> EfficiencyFit:
    """Efficiency from non-Hefty source data, normalized per readout."""
    p = profile or AnalysisProfile()
    n_readouts = sum(len(ch) for ch in source_chunks)
    if n_readouts == 0:
        raise ValueError("No source readouts for the efficiency calibration")
    timing = make_nonhefty_timing_hist(
        source_chunks,
        1.0 / n_readouts,
        name="nonhefty_source_data_hist",
        title="Source data event times",
        profile=p,
    )
    return _fit_for_mode(timing.histogram, capture_times, False, p)


def count_calibration_minibuffers(minibuffer_chunks: Sequence[RecordSource]) -> int:
    n = 0
    for chunk in minibuffer_chunks:
        for row in range(len(chunk)):
            n += chunk.load(row).count_label(MinibufferLabel.CALIBRATION_SOURCE)
    return n


def calibrate_hefty(
    source_pulse_chunks: Sequence[RecordSource],
    source_minibuffer_chunks: Sequence[RecordSource],
    capture_times: Sequence[float],
    profile: Optional[AnalysisProfile] = None,
) -> EfficiencyFit:
    """Efficiency from Hefty source data, normalized per calibration-source minibuffer."""
    p = profile or AnalysisProfile()
    n_source = count_calibration_minibuffers(source_minibuffer_chunks)
    if n_source == 0:
        raise ValueError("No calibration-source minibuffers for the efficiency calibration")
    timing = make_hefty_timing_hist(
        source_pulse_chunks,
        source_minibuffer_chunks,
        1.0 / n_source,
        name="hefty_source_data_hist",
        title="Source data event times",
        profile=p,
    )
    return _fit_for_mode(timing.histogram, capture_times, True, p)
