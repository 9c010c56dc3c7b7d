"""End-to-end tests for the crank command-line driver."""

from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

from ncv_rate_analyzer.scripts.crank import main


T0 = 1_600_000_000_000_000_000


def _pulse_rows(readouts):
    """``readouts``: list of (sequence_id, minibuffer, start_time) coincident pairs."""
    rows = []
    for sid, mb, t in readouts:
        for dev, ch in ((4, 1), (18, 0)):
            rows.append(
                {
                    "sequence_id": sid,
                    "device": dev,
                    "channel": ch,
                    "minibuffer": mb,
                    "start_time": t,
                    "amplitude": 10.0,
                    "charge": 0.1,
                    "raw_amplitude": 400,
                }
            )
    return pd.DataFrame(rows)


def _source_times():
    times = []
    for i in range(3, 100):
        times.extend([400 + 800 * i] * (1 + (99 - i) // 10))
    return times


@pytest.fixture()
def plan_dir(tmp_path: Path) -> Path:
    times = _source_times()
    _pulse_rows([(i, 0, t) for i, t in enumerate(times)]).to_csv(tmp_path / "source.csv", index=False)
    pd.DataFrame({"capture_time": [t - 2000 for t in times]}).to_csv(tmp_path / "capture_times.csv", index=False)

    _pulse_rows([(1, 0, 100), (1, 0, 30000), (2, 0, 45000)]).to_csv(tmp_path / "r650.csv", index=False)
    _pulse_rows([(3, 0, 5000)]).to_csv(tmp_path / "r653.csv", index=False)
    _pulse_rows([(1, 0, 50000)]).to_csv(tmp_path / "soft.csv", index=False)

    _pulse_rows([(10, 0, 100), (10, 1, 50)]).to_csv(tmp_path / "r798.csv", index=False)
    pd.DataFrame(
        {
            "sequence_id": [10],
            "label_0": [1],
            "label_1": [7],
            "t_since_beam_0": [0],
            "t_since_beam_1": [0],
            "time_0": [T0],
            "time_1": [T0 + 20_000],
            "more": [0],
        }
    ).to_csv(tmp_path / "timing_r798.csv", index=False)

    plan = {
        "profile": {"reference_reset": "chunk"},
        "soft_data": {"pulses": ["soft.csv"]},
        "calibration": {"mode": "nonhefty", "pulses": ["source.csv"], "capture_times": "capture_times.csv"},
        "positions": [
            {"position": 1, "hefty": False, "pulses": ["r650.csv", "r653.csv"], "pot": 2.0e18, "water_thickness_in": [2.25, 40.8125]},
            {"position": 2, "hefty": True, "pulses": ["r798.csv"], "minibuffers": ["timing_r798.csv"], "pot": 1.0e19},
        ],
    }
    (tmp_path / "plan.json").write_text(json.dumps(plan))
    return tmp_path


def test_missing_output_prints_usage(capsys) -> None:
    assert main([]) == 1
    assert "Usage: crank OUTPUT_FILE" in capsys.readouterr().out


def test_missing_plan_prints_usage(capsys, tmp_path: Path) -> None:
    assert main([str(tmp_path / "out.tsv")]) == 1
    assert "Usage" in capsys.readouterr().out


@pytest.mark.parametrize(
    "plan",
    [
        {"positions": []},
        {"calibration": {"efficiency": 0.5}, "positions": [{"position": 1, "pulses": ["r650.csv"]}]},
        {"calibration": {"efficiency": 0.5}, "positions": [{"position": 1, "pulses": ["missing.csv"], "pot": 1e18}]},
    ],
    ids=["no_calibration", "no_pot", "missing_file"],
)
def test_invalid_plan_returns_usage_code(plan_dir: Path, plan, caplog) -> None:
    (plan_dir / "bad.json").write_text(json.dumps(plan))
    assert main([str(plan_dir / "bad_out.tsv"), "--plan", str(plan_dir / "bad.json")]) == 1
    assert "Invalid run plan" in caplog.text
    assert not (plan_dir / "bad_out.tsv").exists()


def test_unreadable_plan_file(tmp_path: Path) -> None:
    (tmp_path / "plan.json").write_text("{not json")
    assert main([str(tmp_path / "out.tsv"), "--plan", str(tmp_path / "plan.json")]) == 1
    assert main([str(tmp_path / "out.tsv"), "--plan", str(tmp_path / "nope.json")]) == 1


def test_full_run(plan_dir: Path) -> None:
    out = plan_dir / "out" / "rates.tsv"
    assert main([str(out), "--plan", str(plan_dir / "plan.json")]) == 0

    assert out.exists()
    assert out.with_suffix(".json").exists()
    hist_path = out.with_name("rates_histograms.tsv")
    assert hist_path.exists()

    df = pd.read_csv(out, sep="\t")
    assert df["position"].tolist() == [1, 2]
    assert df["mode"].tolist() == ["nonhefty", "hefty"]

    n_source = len(_source_times())
    eff = 1e6 / n_source
    assert df.loc[0, "efficiency"] == pytest.approx(eff, rel=1e-3)
    # hefty positions fall back to the non-Hefty efficiency
    assert df.loc[1, "efficiency"] == pytest.approx(eff, rel=1e-3)

    # position 1: signal 30000, 45000; background 100, 5000
    assert df.loc[0, "signal_counts"] == 2
    assert df.loc[0, "background_counts"] == 2
    norm = 1.0 / (2.0e18 * df.loc[0, "efficiency"])
    assert df.loc[0, "raw_signal"] == pytest.approx(2 * norm)
    assert df.loc[0, "rate"] == pytest.approx(2 * norm - 2 * 60000.0 / 7990.0 * norm)
    assert df.loc[0, "water_vertical_in"] == 2.25

    # position 2: pulse at 20050 ns after beam in a SOFTWARE minibuffer
    assert df.loc[1, "signal_counts"] == 1
    assert df.loc[1, "background_counts"] == 1

    meta = json.loads(out.with_suffix(".json").read_text())
    assert meta["profile"]["reference_reset"] == "chunk"
    assert meta["efficiency_fit"]["p0"] == pytest.approx(eff, rel=1e-3)
    assert meta["soft_rate"]["value"] == pytest.approx(1.0 / 80000.0)
    assert meta["table"] == {"file": "rates.tsv", "columns": list(df.columns), "rows": 2}
    assert not hist_path.with_suffix(".json").exists()

    hists = pd.read_csv(hist_path, sep="\t")
    assert set(hists["histogram"]) >= {"pos_1_time_hist", "pos_2_time_hist", "nonhefty_source_data_hist"}


def test_fixed_efficiency_and_raw_policy(plan_dir: Path) -> None:
    plan = json.loads((plan_dir / "plan.json").read_text())
    plan["calibration"] = {"efficiency": 0.5}
    plan["profile"]["subtract_background"] = False
    del plan["soft_data"]
    (plan_dir / "plan2.json").write_text(json.dumps(plan))

    out = plan_dir / "rates2.tsv"
    assert main([str(out), "--plan", str(plan_dir / "plan2.json")]) == 0
    df = pd.read_csv(out, sep="\t")
    assert df["efficiency"].tolist() == [0.5, 0.5]
    assert df["rate"].tolist() == pytest.approx(df["raw_signal"].tolist())


def test_mismatched_streams_abort_run(plan_dir: Path) -> None:
    timing = pd.read_csv(plan_dir / "timing_r798.csv")
    timing["sequence_id"] = [11]
    timing.to_csv(plan_dir / "timing_r798.csv", index=False)
    plan = json.loads((plan_dir / "plan.json").read_text())
    plan["calibration"] = {"efficiency": 0.5}
    (plan_dir / "plan3.json").write_text(json.dumps(plan))

    assert main([str(plan_dir / "rates3.tsv"), "--plan", str(plan_dir / "plan3.json")]) == 2
