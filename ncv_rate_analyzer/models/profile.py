"""Analysis profile -- bundles all pipeline-relevant configuration.

An AnalysisProfile groups every parameter that affects the analysis output
into one frozen dataclass.  It can be:

- Constructed with defaults (the fixed experimental parameters)
- Overridden field-by-field via ``dataclasses.replace()``
- Serialized to/from a dict for JSON provenance
- Read from the ``profile`` block of a run plan
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Literal, Tuple


ReferenceReset = Literal["chunk", "readout"]
Window = Tuple[float, float]


@dataclass(frozen=True)
class AnalysisProfile:
    """Frozen configuration for the rate analysis pipeline.

    Channels
    --------
    primary_channel : (device, channel)
        Detector whose pulses are counted (NCV PMT 1).
    paired_channel : (device, channel)
        Detector that must see a coincident pulse (NCV PMT 2).
    tank_charge_excluded : tuple of (device, channel)
        Channels left out of the tank-wide charge sum: both NCV PMTs and the
        trigger-input channels.

    Cuts
    ----
    veto_time_ns : float
        Dead time after an accepted event.
    tank_charge_window_ns : float
        Length of the tank-charge window starting at the candidate pulse.
    unique_channel_cut : int
        Reject if at least this many tank channels fire in the window.
    tank_charge_cut : float
        Reject if the summed tank charge reaches this value (nC).
    coincidence_tolerance_ns : float
        Maximum |dt| between primary and paired pulses.

    Histogram and windows
    ---------------------
    num_time_bins, time_range_ns :
        Binning of the event-time histograms.
    nonhefty_background_ns, nonhefty_signal_ns :
        Half-open windows on the pulse start time (non-Hefty mode).
    hefty_background_ns :
        Pre-beam window inside beam minibuffers (Hefty diagnostic).
    hefty_signal_ns :
        Half-open window on the time since beam (Hefty mode).
    num_hefty_minibuffers, hefty_minibuffer_time_ns :
        Hefty readout geometry.

    Efficiency template
    -------------------
    nonhefty_template_offset_ns, hefty_template_offset_ns :
        Shift applied to simulated capture times.
    template_scale :
        Scale applied to the template histogram (per simulated event).
    nonhefty_fit_start_ns, hefty_fit_start_ns, fit_end_ns :
        Fit range.
    fit_initial : (p0, p1)
        Starting values for the template fit.

    Policies
    --------
    reference_reset : "chunk" or "readout"
        When the last beam time is forgotten.  "chunk" keeps it across readouts
        and resets at each input chunk (run); "readout" resets it per readout.
    subtract_background : bool
        Final rate is raw signal minus expected background when True, raw signal
        otherwise.
    poisson_floor : bool
        Floor Poisson errors at one count (variance 1 for zero observed counts).
    """

    primary_channel: Tuple[int, int] = (4, 1)
    paired_channel: Tuple[int, int] = (18, 0)
    tank_charge_excluded: Tuple[Tuple[int, int], ...] = (
        (4, 1), (18, 0), (21, 0), (21, 1), (21, 2), (21, 3),
    )

    veto_time_ns: float = 1e3
    tank_charge_window_ns: float = 40.0
    unique_channel_cut: int = 8
    tank_charge_cut: float = 3.0
    coincidence_tolerance_ns: float = 40.0

    num_time_bins: int = 100
    time_range_ns: Window = (0.0, 8e4)

    nonhefty_background_ns: Window = (10.0, 8000.0)
    nonhefty_signal_ns: Window = (20000.0, 80000.0)
    hefty_background_ns: Window = (10.0, 300.0)
    hefty_signal_ns: Window = (10000.0, 70000.0)

    num_hefty_minibuffers: int = 40
    hefty_minibuffer_time_ns: float = 2e3

    nonhefty_template_offset_ns: float = 2e3
    hefty_template_offset_ns: float = 0.0
    template_scale: float = 1e-6
    nonhefty_fit_start_ns: float = 2400.0
    hefty_fit_start_ns: float = 800.0
    fit_end_ns: float = 8e4
    fit_initial: Tuple[float, float] = (1.0, 1e-3)

    reference_reset: ReferenceReset = "chunk"
    subtract_background: bool = True
    poisson_floor: bool = True

    def __post_init__(self) -> None:
        if self.reference_reset not in ("chunk", "readout"):
            raise ValueError(f"reference_reset must be 'chunk' or 'readout', got {self.reference_reset!r}")
        if self.num_time_bins <= 0:
            raise ValueError("num_time_bins must be > 0")
        lo, hi = self.time_range_ns
        if not hi > lo:
            raise ValueError(f"time_range_ns must be increasing, got {self.time_range_ns}")
        for name in ("nonhefty_background_ns", "nonhefty_signal_ns", "hefty_background_ns", "hefty_signal_ns"):
            a, b = getattr(self, name)
            if not b > a:
                raise ValueError(f"{name} must be a non-empty half-open window, got {(a, b)}")
        if not 0 < self.num_hefty_minibuffers <= 40:
            raise ValueError("num_hefty_minibuffers must be in [1, 40]")
        if self.veto_time_ns < 0:
            raise ValueError("veto_time_ns must be >= 0")

    # ------------------------------------------------------------------
    # Mode helpers
    # ------------------------------------------------------------------

    def signal_window(self, hefty: bool) -> Window:
        return self.hefty_signal_ns if hefty else self.nonhefty_signal_ns

    def background_window(self, hefty: bool) -> Window:
        return self.hefty_background_ns if hefty else self.nonhefty_background_ns

    def template_offset(self, hefty: bool) -> float:
        return self.hefty_template_offset_ns if hefty else self.nonhefty_template_offset_ns

    def fit_start(self, hefty: bool) -> float:
        return self.hefty_fit_start_ns if hefty else self.nonhefty_fit_start_ns

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-friendly dict (tuples become lists)."""
        d = asdict(self)
        for k, v in d.items():
            if isinstance(v, tuple):
                d[k] = [list(x) if isinstance(x, tuple) else x for x in v]
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AnalysisProfile:
        """Reconstruct from a dict (e.g. loaded from JSON).  Unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValueError(f"Unknown AnalysisProfile fields: {unknown}")
        d = dict(d)  # shallow copy
        for k, v in d.items():
            if isinstance(v, list):
                d[k] = tuple(tuple(x) if isinstance(x, list) else x for x in v)
        return cls(**d)

    @classmethod
    def from_plan(cls, plan: Dict[str, Any]) -> AnalysisProfile:
        """Build a profile from the optional ``profile`` block of a run plan."""
        return cls.from_dict(plan.get("profile") or {})
