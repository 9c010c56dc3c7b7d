from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from ncv_rate_analyzer.models.profile import AnalysisProfile


@dataclass(eq=False)
class TimeHistogram:
    """
    Fixed-binning event-time histogram.

    ``counts`` holds the unscaled fill counts (unit weights); ``scale`` is applied on
    read, so ``contents() == counts * scale``. Fills outside ``[x_min, x_max)`` go to
    ``underflow`` / ``overflow``.

    Errors are Poisson on the unscaled counts, ``sqrt(count) * scale``. With
    ``floor=True`` an empty bin gets an error of one count.
    """
    name: str
    title: str = ""
    n_bins: int = 100
    x_min: float = 0.0
    x_max: float = 8e4
    x_label: str = "time (ns)"
    y_label: str = "events / POT"
    scale: float = 1.0
    counts: np.ndarray = field(default=None, repr=False)  # type: ignore[assignment]
    underflow: float = 0.0
    overflow: float = 0.0

    def __post_init__(self) -> None:
        if self.n_bins <= 0:
            raise ValueError("n_bins must be > 0")
        if not self.x_max > self.x_min:
            raise ValueError(f"Histogram range must be increasing, got [{self.x_min}, {self.x_max})")
        if self.counts is None:
            self.counts = np.zeros(self.n_bins, dtype=float)
        else:
            self.counts = np.asarray(self.counts, dtype=float).copy()
            if self.counts.shape != (self.n_bins,):
                raise ValueError(f"counts must have shape ({self.n_bins},), got {self.counts.shape}")

    @classmethod
    def for_profile(cls, name: str, title: str = "", profile: Optional[AnalysisProfile] = None, **kw) -> TimeHistogram:
        p = profile or AnalysisProfile()
        lo, hi = p.time_range_ns
        return cls(name=name, title=title, n_bins=p.num_time_bins, x_min=lo, x_max=hi, **kw)

    # ------------------------------------------------------------------
    # Binning
    # ------------------------------------------------------------------

    @property
    def bin_width(self) -> float:
        return (self.x_max - self.x_min) / self.n_bins

    @property
    def edges(self) -> np.ndarray:
        return np.linspace(self.x_min, self.x_max, self.n_bins + 1)

    @property
    def centers(self) -> np.ndarray:
        e = self.edges
        return 0.5 * (e[:-1] + e[1:])

    def find_bin(self, x: float) -> int:
        """Bin index of ``x``; -1 for underflow and ``n_bins`` for overflow."""
        if x < self.x_min:
            return -1
        if x >= self.x_max:
            return self.n_bins
        i = int((x - self.x_min) / self.bin_width)
        return min(i, self.n_bins - 1)

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def fill(self, x: float) -> None:
        i = self.find_bin(float(x))
        if i < 0:
            self.underflow += 1
        elif i >= self.n_bins:
            self.overflow += 1
        else:
            self.counts[i] += 1

    def fill_many(self, values: Iterable[float]) -> None:
        x = np.asarray(values if isinstance(values, np.ndarray) else list(values), dtype=float)
        x = x[np.isfinite(x)]
        self.underflow += float(np.count_nonzero(x < self.x_min))
        self.overflow += float(np.count_nonzero(x >= self.x_max))
        inside = x[(x >= self.x_min) & (x < self.x_max)]
        idx = np.minimum(((inside - self.x_min) / self.bin_width).astype(int), self.n_bins - 1)
        self.counts += np.bincount(idx, minlength=self.n_bins)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def entries(self) -> float:
        return float(self.counts.sum() + self.underflow + self.overflow)

    def contents(self) -> np.ndarray:
        return self.counts * self.scale

    def errors(self, *, floor: bool = True) -> np.ndarray:
        var = self.counts.copy()
        if floor:
            var = np.maximum(var, 1.0)
        return np.sqrt(np.maximum(var, 0.0)) * abs(self.scale)

    def content_at(self, x: float) -> float:
        """Scaled content of the bin containing ``x`` (0 outside the range)."""
        i = self.find_bin(float(x))
        if i < 0 or i >= self.n_bins:
            return 0.0
        return float(self.counts[i] * self.scale)

    def integral(self) -> float:
        return float(self.contents().sum())

    def scale_by(self, factor: float) -> None:
        self.scale *= float(factor)

    def copy(self, name: Optional[str] = None) -> TimeHistogram:
        return TimeHistogram(
            name=name or self.name,
            title=self.title,
            n_bins=self.n_bins,
            x_min=self.x_min,
            x_max=self.x_max,
            x_label=self.x_label,
            y_label=self.y_label,
            scale=self.scale,
            counts=self.counts,
            underflow=self.underflow,
            overflow=self.overflow,
        )

    def to_frame(self, *, floor: bool = True) -> pd.DataFrame:
        e = self.edges
        return pd.DataFrame(
            {
                "histogram": self.name,
                "bin_low": e[:-1],
                "bin_high": e[1:],
                "content": self.contents(),
                "error": self.errors(floor=floor),
            }
        )
