"""Run the full NCV rate analysis described by a JSON run plan.

Plan layout (paths are relative to the plan file)::

    {
      "profile": {"reference_reset": "chunk"},
      "soft_data": {"pulses": ["soft_pos8.csv"]},
      "calibration": {
        "mode": "nonhefty",
        "pulses": ["source_pos1.csv"],
        "capture_times": "capture_times.csv"
      },
      "hefty_calibration": {...},
      "positions": [
        {"position": 1, "hefty": false, "pulses": ["r650.csv", "r653.csv"],
         "pot": 2.676349e18, "water_thickness_in": [2.25, 40.8125]},
        {"position": 2, "hefty": true, "pulses": ["r798.csv"],
         "minibuffers": ["timing_r798.csv"], "pot": 1.42e19}
      ]
    }

``hefty_calibration`` is optional; without it Hefty positions use the
``calibration`` efficiency. Either block may be replaced by a fixed
``"efficiency": <float>``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ncv_rate_analyzer.analysis.efficiency import EfficiencyFit, calibrate_hefty, calibrate_nonhefty
from ncv_rate_analyzer.analysis.export import build_metadata, export_results, histograms_table, rates_table
from ncv_rate_analyzer.analysis.rates import PositionRate, compute_soft_rate, make_timing_distribution
from ncv_rate_analyzer.errors import NcvAnalysisError
from ncv_rate_analyzer.ingest.tables import PulseTableSource, read_capture_times, read_minibuffer_table, read_pulse_table
from ncv_rate_analyzer.models.profile import AnalysisProfile


logger = logging.getLogger(__name__)

USAGE = "Usage: crank OUTPUT_FILE --plan PLAN.json"


def _paths(base: Path, value: Any) -> List[Path]:
    if value is None:
        return []
    items = [value] if isinstance(value, str) else list(value)
    return [(base / str(v)).expanduser() for v in items]


def _pulse_chunks(base: Path, block: Dict[str, Any], *, hefty: bool, profile: AnalysisProfile) -> List[PulseTableSource]:
    n_mb = profile.num_hefty_minibuffers if hefty else 1
    chunks = [read_pulse_table(p, num_minibuffers=n_mb, profile=profile) for p in _paths(base, block.get("pulses"))]
    if not chunks:
        raise ValueError(f"Plan block {block!r} lists no pulse files")
    return chunks


def _run_calibration(
    base: Path, block: Dict[str, Any], profile: AnalysisProfile
) -> Tuple[float, Optional[EfficiencyFit]]:
    if "efficiency" in block:
        return float(block["efficiency"]), None

    mode = str(block.get("mode", "nonhefty")).lower()
    if mode not in ("nonhefty", "hefty"):
        raise ValueError(f"Calibration mode must be 'nonhefty' or 'hefty', got {mode!r}")
    hefty = mode == "hefty"
    if "capture_times" not in block:
        raise ValueError("Calibration block needs 'capture_times'")
    capture_times = read_capture_times(base / block["capture_times"])
    pulses = _pulse_chunks(base, block, hefty=hefty, profile=profile)

    logger.info("Fitting simulation + flat background to %s source data", mode)
    if hefty:
        minibuffers = [read_minibuffer_table(p) for p in _paths(base, block.get("minibuffers"))]
        fit = calibrate_hefty(pulses, minibuffers, capture_times, profile)
    else:
        fit = calibrate_nonhefty(pulses, capture_times, profile)
    return fit.efficiency, fit


def run_plan(plan: Dict[str, Any], output_file: Path, *, base: Path = Path(".")) -> List[PositionRate]:
    """Execute a run plan and write the rates table, histogram table and JSON sidecar."""
    profile = AnalysisProfile.from_plan(plan)

    soft_rate = None
    if plan.get("soft_data"):
        soft_rate = compute_soft_rate(_pulse_chunks(base, plan["soft_data"], hefty=False, profile=profile), profile)

    if "calibration" not in plan:
        raise ValueError("Run plan needs a 'calibration' block")
    nonhefty_eff, nonhefty_fit = _run_calibration(base, plan["calibration"], profile)
    if plan.get("hefty_calibration"):
        hefty_eff, hefty_fit = _run_calibration(base, plan["hefty_calibration"], profile)
    else:
        hefty_eff, hefty_fit = nonhefty_eff, nonhefty_fit

    results: List[PositionRate] = []
    for pos in plan.get("positions", []):
        hefty = bool(pos.get("hefty", False))
        minibuffers = None
        if hefty:
            minibuffers = [read_minibuffer_table(p) for p in _paths(base, pos.get("minibuffers"))]
        wt = pos.get("water_thickness_in")
        results.append(
            make_timing_distribution(
                int(pos["position"]),
                hefty=hefty,
                pulse_chunks=_pulse_chunks(base, pos, hefty=hefty, profile=profile),
                minibuffer_chunks=minibuffers,
                pot=float(pos["pot"]),
                efficiency=hefty_eff if hefty else nonhefty_eff,
                water_thickness_in=tuple(wt) if wt is not None else None,
                profile=profile,
            )
        )

    logger.info("*** Estimated neutron event rates ***")
    for r in sorted(results, key=lambda r: r.position):
        logger.info("NCV position #%d: %s neutrons / POT", r.position, r.rate)

    histograms = [r.timing.histogram for r in results]
    for fit in (nonhefty_fit, hefty_fit):
        if fit is not None and not any(h is fit.data for h in histograms):
            histograms.extend([fit.data, fit.fitted])

    warnings = [w for r in results for w in r.warnings]
    meta = build_metadata(
        profile=profile,
        efficiency_fit=nonhefty_fit,
        soft_rate=soft_rate,
        warnings=warnings,
        extra={
            "hefty_efficiency_fit": hefty_fit.to_dict() if hefty_fit is not None else None,
            "efficiency": {"nonhefty": nonhefty_eff, "hefty": hefty_eff},
        },
    )
    output_file = Path(output_file)
    export_results(rates_table(results), output_file, meta)
    hist_path = output_file.with_name(output_file.stem + "_histograms.tsv")
    export_results(histograms_table(histograms, floor=profile.poisson_floor), hist_path)
    logger.info("Wrote %s and %s", output_file, hist_path)
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    import argparse

    p = argparse.ArgumentParser(
        prog="crank",
        description="Estimate background neutron rates in the NCV from reconstructed pulse data.",
    )
    p.add_argument("output_file", nargs="?", help="Output rates table (tab-separated); a .json sidecar is written next to it")
    p.add_argument("--plan", default=None, help="JSON run plan (profile, calibration, positions)")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")

    ns = p.parse_args(list(argv) if argv is not None else None)

    if not ns.output_file or not ns.plan:
        print(USAGE)
        return 1

    logging.basicConfig(level=getattr(logging, str(ns.log_level).upper(), logging.INFO), format="%(levelname)s %(name)s: %(message)s")

    plan_path = Path(ns.plan).expanduser()
    try:
        with open(plan_path) as f:
            plan = json.load(f)
        run_plan(plan, Path(ns.output_file), base=plan_path.parent)
    except NcvAnalysisError as exc:
        logger.error("Run aborted: %s: %s", type(exc).__name__, exc)
        return 2
    except (ValueError, KeyError, TypeError, OSError) as exc:
        # malformed plan or unreadable input file
        logger.error("Invalid run plan %s: %s: %s", plan_path, type(exc).__name__, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
