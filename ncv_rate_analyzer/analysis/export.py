"""Result tables and file export (tab-separated CSV plus JSON provenance sidecar)."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import numpy as np
import pandas as pd

from ncv_rate_analyzer.analysis.efficiency import EfficiencyFit
from ncv_rate_analyzer.analysis.histogram import TimeHistogram
from ncv_rate_analyzer.analysis.rates import PositionRate
from ncv_rate_analyzer.models.profile import AnalysisProfile


CM_TO_IN = 1.0 / 2.54
# Assumed uncertainty on the NCV placement [cm]
NCV_HORIZONTAL_POSITION_ERROR_CM = 3.0
NCV_VERTICAL_POSITION_ERROR_CM = 3.0

RATES_COLUMNS = [
    "position",
    "mode",
    "pot",
    "efficiency",
    "rate",
    "rate_error",
    "raw_signal",
    "raw_signal_error",
    "background",
    "background_error",
    "signal_counts",
    "background_counts",
    "n_readouts",
    "n_unknown_reference",
    "water_vertical_in",
    "water_vertical_error_in",
    "water_horizontal_in",
    "water_horizontal_error_in",
]


def rates_table(position_rates: Iterable[PositionRate]) -> pd.DataFrame:
    """One row per NCV position, sorted by position."""
    rows = []
    for pr in sorted(position_rates, key=lambda r: r.position):
        t = pr.timing
        if pr.water_thickness_in is not None:
            vertical, horizontal = pr.water_thickness_in
            v_err = CM_TO_IN * NCV_VERTICAL_POSITION_ERROR_CM
            h_err = CM_TO_IN * NCV_HORIZONTAL_POSITION_ERROR_CM
        else:
            vertical = horizontal = v_err = h_err = np.nan
        rows.append(
            {
                "position": pr.position,
                "mode": "hefty" if pr.hefty else "nonhefty",
                "pot": pr.pot,
                "efficiency": pr.efficiency,
                "rate": pr.rate.value,
                "rate_error": pr.rate.error,
                "raw_signal": t.raw_signal.value,
                "raw_signal_error": t.raw_signal.error,
                "background": t.background.value,
                "background_error": t.background.error,
                "signal_counts": t.signal_counts,
                "background_counts": t.background_counts,
                "n_readouts": t.n_readouts,
                "n_unknown_reference": t.n_unknown_reference,
                "water_vertical_in": vertical,
                "water_vertical_error_in": v_err,
                "water_horizontal_in": horizontal,
                "water_horizontal_error_in": h_err,
            }
        )
    return pd.DataFrame(rows, columns=RATES_COLUMNS)


def histograms_table(histograms: Iterable[TimeHistogram], *, floor: bool = True) -> pd.DataFrame:
    """Long-format table of bin edges, contents and errors for each histogram."""
    frames = [h.to_frame(floor=floor) for h in histograms]
    if not frames:
        return pd.DataFrame(columns=["histogram", "bin_low", "bin_high", "content", "error"])
    return pd.concat(frames, ignore_index=True)


def build_metadata(
    *,
    profile: AnalysisProfile,
    efficiency_fit: Optional[EfficiencyFit] = None,
    soft_rate: Optional[Any] = None,
    warnings: Iterable[str] = (),
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "created_utc": datetime.now(timezone.utc).isoformat(),
        "profile": profile.to_dict(),
        "efficiency_fit": efficiency_fit.to_dict() if efficiency_fit is not None else None,
        "soft_rate": soft_rate.to_dict() if soft_rate is not None else None,
        "warnings": list(warnings),
    }
    if extra:
        meta.update(extra)
    return meta


def export_results(
    table: pd.DataFrame,
    output_path: Path,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    float_format: str = "%.9g",
) -> Path:
    """Write ``table`` as tab-separated text at ``output_path``.

    With ``metadata`` a ``<stem>.json`` file is written beside it, holding the
    run metadata plus the table's column list and row count so the sidecar can
    be matched to its table. Returns ``output_path``.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(output_path, sep="\t", index=False, float_format=float_format)

    if metadata is not None:
        sidecar = dict(metadata)
        sidecar["table"] = {"file": output_path.name, "columns": list(table.columns), "rows": int(len(table))}
        with open(output_path.with_suffix(".json"), "w") as f:
            json.dump(sidecar, f, indent=2, default=str)
    return output_path
