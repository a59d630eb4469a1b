from __future__ import annotations

import threading

import pytest


class FakeLoad:
    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    def _rec(self, *call):
        if call[0] == self.fail_on:
            raise RuntimeError(f"{call[0]} failed")
        self.calls.append(call)

    def set_ac_dc(self, ac):
        self._rec("ac_dc", ac)

    def set_function(self, f):
        self._rec("function", f)

    def set_pf_cf(self, pf, cf):
        self._rec("pf_cf", pf, cf)

    def set_setpoint(self, v):
        self._rec("setpoint", v)

    def enable_input(self, on):
        self._rec("input", on)


def test_preflight_reports_every_problem():
    from benchlink.sequence import SequenceStep, preflight

    assert preflight([]) == ["No steps."]
    assert preflight([SequenceStep(index=1)]) == []

    bad = SequenceStep(index=1, duration_ms=1, ac_dc="XX", function="ZAP", repeat=0)
    assert preflight([SequenceStep(), bad]) == [
        "Step 2: duration too small.",
        "Step 2: AC/DC invalid.",
        "Step 2: function invalid.",
        "Step 2: repeat out of range.",
    ]


def test_run_sequence_applies_steps_and_disables_input():
    from benchlink.sequence import SequenceStep, run_sequence

    load = FakeLoad()
    logs = []
    steps = [
        SequenceStep(index=1, duration_ms=5, ac_dc="DC", function="CURR", setpoint=2.0),
        SequenceStep(index=2, duration_ms=5, function="RES", setpoint=50.0, pf=0.8, repeat=2, note="hot"),
    ]
    assert run_sequence(steps, load, log_fn=logs.append) is True

    assert load.calls[:5] == [
        ("ac_dc", False),
        ("function", "CURR"),
        ("pf_cf", 1.0, 1.41),
        ("setpoint", 2.0),
        ("input", True),
    ]
    assert load.calls.count(("setpoint", 50.0)) == 2
    assert load.calls[-1] == ("input", False)
    assert logs[0] == "SEQ start: 2 steps, loop=False"
    assert any(m.startswith("STEP 2 rep 2:") and "note=hot" in m for m in logs)
    assert logs[-1] == "SEQ done."


def test_run_sequence_stop_event():
    from benchlink.sequence import SequenceStep, run_sequence

    load = FakeLoad()
    stop = threading.Event()
    stop.set()
    logs = []
    assert run_sequence([SequenceStep()], load, stop_event=stop, log_fn=logs.append) is False
    assert load.calls == [("input", False)]
    assert logs[-1] == "SEQ stopped."


def test_looping_sequence_runs_until_stopped():
    from benchlink.sequence import SequenceStep, run_sequence

    load = FakeLoad()
    stop = threading.Event()
    timer = threading.Timer(0.1, stop.set)
    timer.start()
    try:
        assert run_sequence([SequenceStep(duration_ms=10)], load, stop_event=stop, loop=True, log_fn=lambda _m: None) is False
    finally:
        timer.cancel()
    assert load.calls.count(("input", True)) >= 2
    assert load.calls[-1] == ("input", False)


def test_run_sequence_rejects_bad_input():
    from benchlink.sequence import SequenceStep, run_sequence

    with pytest.raises(ValueError, match="not connected"):
        run_sequence([SequenceStep()], None)
    with pytest.raises(ValueError, match="Preflight failed: No steps."):
        run_sequence([], FakeLoad())


def test_load_error_still_disables_input():
    from benchlink.sequence import SequenceStep, run_sequence

    load = FakeLoad(fail_on="setpoint")
    with pytest.raises(RuntimeError):
        run_sequence([SequenceStep()], load, log_fn=lambda _m: None)
    assert load.calls[-1] == ("input", False)


def test_sequence_against_scheduled_load(scripted):
    from benchlink.devices.electronic_load import ElectronicLoad
    from benchlink.scheduler import CommandScheduler
    from benchlink.sequence import SequenceStep, run_sequence

    t = scripted()
    with CommandScheduler(t, log_fn=lambda _m: None) as s:
        load = ElectronicLoad(s, log_fn=lambda _m: None)
        assert run_sequence([SequenceStep(index=1, duration_ms=5)], load, log_fn=lambda _m: None)

    assert t.sent[1:] == [
        "SYST:MODE AC",
        "SOUR:FUNC CURR",
        "SOUR:PFAC 1;:SOUR:CFAC 1.41",
        "SOUR:CURR 1",
        "INP:STAT ON",
        "INP:STAT OFF",
    ]
