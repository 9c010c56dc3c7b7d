"""Tests for minibuffer time reconstruction and the event approval cuts."""

from __future__ import annotations

import math
import unittest

import pytest

from ncv_rate_analyzer.analysis.cuts import (
    CUT_COINCIDENCE,
    CUT_DEAD_TIME,
    CUT_TANK_CHANNELS,
    CUT_TANK_CHARGE,
    VetoCursor,
    approve_event,
    first_failed_cut,
)
from ncv_rate_analyzer.analysis.timing import ReferenceClock
from ncv_rate_analyzer.errors import InvalidTimestamp, UnknownReferenceTime
from ncv_rate_analyzer.models.minibuffer import MinibufferLabel
from ncv_rate_analyzer.models.profile import AnalysisProfile
from ncv_rate_analyzer.models.pulses import Pulse, ReconstructedReadout


PRIMARY = (4, 1)
PAIRED = (18, 0)


def _readout(primary, paired, *, minibuffer=0, tank=()) -> ReconstructedReadout:
    rr = ReconstructedReadout(sequence_id=1)
    rr.add_pulses(*PRIMARY, minibuffer, [Pulse(t) for t in primary])
    rr.add_pulses(*PAIRED, minibuffer, [Pulse(t) for t in paired])
    for (d, c, t, q) in tank:
        rr.add_pulse(d, c, minibuffer, Pulse(t, charge=q))
    return rr


class TestReferenceClock(unittest.TestCase):
    def test_beam_then_self_trigger(self):
        clock = ReferenceClock()
        clock.observe(MinibufferLabel.BEAM, 1_000_000)
        clock.observe(MinibufferLabel.SELF_TRIGGER, 1_002_050)
        self.assertEqual(clock.event_time(50, MinibufferLabel.SELF_TRIGGER, 1_002_050), 2100)

    def test_pulse_in_beam_minibuffer(self):
        clock = ReferenceClock()
        clock.observe(MinibufferLabel.BEAM, 5_000)
        self.assertEqual(clock.event_time(120, MinibufferLabel.BEAM, 5_000), 120)

    def test_calibration_source_has_zero_offset(self):
        clock = ReferenceClock()
        self.assertEqual(clock.event_time(300, MinibufferLabel.CALIBRATION_SOURCE, 10**18), 300)
        clock.observe(MinibufferLabel.BEAM, 10)
        self.assertEqual(clock.event_time(300, MinibufferLabel.CALIBRATION_SOURCE, 10**18), 300)

    def test_unknown_reference(self):
        clock = ReferenceClock()
        self.assertFalse(clock.known)
        with self.assertRaises(UnknownReferenceTime):
            clock.event_time(50, MinibufferLabel.PERIODIC, 1_000)

    def test_clock_running_backwards(self):
        clock = ReferenceClock()
        clock.observe(MinibufferLabel.BEAM, 2_000)
        with self.assertRaises(InvalidTimestamp):
            clock.event_time(50, MinibufferLabel.SOFTWARE, 1_999)

    def test_reset(self):
        clock = ReferenceClock()
        clock.observe(MinibufferLabel.BEAM, 2_000)
        clock.reset()
        self.assertIsNone(clock.last_reference_time)

    def test_large_timestamps_stay_exact(self):
        clock = ReferenceClock()
        t0 = 1_500_000_000_123_456_789
        clock.observe(MinibufferLabel.BEAM, t0)
        self.assertEqual(clock.offset(MinibufferLabel.COSMIC, t0 + 7), 7)


def test_beam_self_trigger_scenario_is_accepted() -> None:
    clock = ReferenceClock()
    clock.observe(MinibufferLabel.BEAM, 1_000_000)
    rr = _readout([50], [55], minibuffer=1)
    pulse = rr.get_pulses(*PRIMARY, 1)[0]
    t = clock.event_time(pulse.start_time, MinibufferLabel.SELF_TRIGGER, 1_002_050)
    assert t == 2100
    assert approve_event(t, -math.inf, pulse, rr, 1)


def test_dead_time_rejects_second_pulse_500ns_later() -> None:
    rr = _readout([100, 600], [100, 600])
    cursor = VetoCursor()
    decisions = []
    for pulse in rr.get_pulses(*PRIMARY, 0):
        ok = approve_event(float(pulse.start_time), cursor.previous_accepted_time, pulse, rr, 0)
        decisions.append(ok)
        if ok:
            cursor.accept(pulse.start_time)
    assert decisions == [True, False]
    second = rr.get_pulses(*PRIMARY, 0)[1]
    assert first_failed_cut(600.0, 100.0, second, rr, 0) == CUT_DEAD_TIME


def test_dead_time_boundary_is_inclusive() -> None:
    rr = _readout([1100], [1100])
    pulse = rr.get_pulses(*PRIMARY, 0)[0]
    assert first_failed_cut(1100.0, 100.0, pulse, rr, 0) == CUT_DEAD_TIME
    assert first_failed_cut(1100.5, 100.0, pulse, rr, 0) is None


def test_coincidence_tolerance() -> None:
    pulse_rr = _readout([100], [140])
    pulse = pulse_rr.get_pulses(*PRIMARY, 0)[0]
    assert first_failed_cut(100.0, -math.inf, pulse, pulse_rr, 0) == CUT_COINCIDENCE
    near = _readout([100], [61])
    assert first_failed_cut(100.0, -math.inf, near.get_pulses(*PRIMARY, 0)[0], near, 0) is None


def test_coincidence_needs_same_minibuffer() -> None:
    rr = _readout([100], [])
    rr.add_pulse(*PAIRED, 1, Pulse(100))
    assert first_failed_cut(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0) == CUT_COINCIDENCE


def test_tank_unique_channel_cut() -> None:
    tank = [(5, c, 110, 0.01) for c in range(8)]
    rr = _readout([100], [100], tank=tank)
    assert first_failed_cut(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0) == CUT_TANK_CHANNELS

    rr = _readout([100], [100], tank=tank[:7])
    assert first_failed_cut(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0) is None


def test_tank_charge_cut() -> None:
    rr = _readout([100], [100], tank=[(5, 0, 100, 2.0), (5, 1, 139, 1.0)])
    assert first_failed_cut(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0) == CUT_TANK_CHARGE

    # outside the 40 ns window
    rr = _readout([100], [100], tank=[(5, 0, 100, 2.0), (5, 1, 140, 1.0)])
    assert first_failed_cut(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0) is None


def test_trigger_channels_do_not_count_as_tank() -> None:
    tank = [(21, c, 100, 5.0) for c in range(4)]
    rr = _readout([100], [100], tank=tank)
    assert approve_event(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0)


def test_custom_profile_thresholds() -> None:
    p = AnalysisProfile(veto_time_ns=100.0, coincidence_tolerance_ns=200.0)
    rr = _readout([100], [250])
    pulse = rr.get_pulses(*PRIMARY, 0)[0]
    assert approve_event(250.0, 100.0, pulse, rr, 0, p)
    assert not approve_event(250.0, 100.0, pulse, rr, 0)


def test_missing_paired_channel_is_fatal() -> None:
    rr = ReconstructedReadout(sequence_id=1)
    rr.add_pulse(*PRIMARY, 0, Pulse(100))
    with pytest.raises(KeyError):
        approve_event(100.0, -math.inf, rr.get_pulses(*PRIMARY, 0)[0], rr, 0)


def test_replay_gives_same_decisions() -> None:
    rr = _readout([100, 600, 1500, 1520, 4000], [101, 600, 1490, 3990], tank=[(5, 0, 4000, 3.5)])

    def run():
        cursor = VetoCursor()
        out = []
        for pulse in rr.get_pulses(*PRIMARY, 0):
            why = first_failed_cut(float(pulse.start_time), cursor.previous_accepted_time, pulse, rr, 0)
            out.append(why)
            if why is None:
                cursor.accept(pulse.start_time)
        return out

    first = run()
    assert first == [None, CUT_DEAD_TIME, None, CUT_DEAD_TIME, CUT_TANK_CHARGE]
    assert run() == first
