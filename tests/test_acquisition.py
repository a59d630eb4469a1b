from __future__ import annotations

import csv
import itertools
import math
import threading
import time


def _wait_for(pred, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.005)
    return pred()


def test_sample_from_reply():
    from benchlink.acquisition import Sample

    s = Sample.from_reply(" +1.5E+0,OHM ")
    assert s.value == 1.5
    assert s.raw == "+1.5E+0,OHM"
    assert s.timestamp.tzinfo is not None

    assert math.isnan(Sample.from_reply("overload").value)
    assert Sample.from_reply(None).raw == ""
    assert Sample.from_reply("2.0").csv_row()[1:] == ["2.0", "2.0"]


def test_loop_samples_until_stopped():
    from benchlink.acquisition import AcquisitionLoop

    counter = itertools.count()
    seen = []
    acq = AcquisitionLoop(lambda: next(counter), capacity=100, log_fn=lambda _m: None)
    acq.subscribe(seen.append)

    acq.start(rate_hz=200.0)
    assert acq.is_running
    assert _wait_for(lambda: acq.samples >= 3)
    assert acq.stop() is True
    assert not acq.is_running

    n = acq.samples
    time.sleep(0.05)
    assert acq.samples == n
    assert acq.snapshot()[:3] == [0, 1, 2]
    assert seen[:3] == [0, 1, 2]


def test_period_has_a_floor():
    from benchlink.acquisition import AcquisitionLoop

    acq = AcquisitionLoop(lambda: 1, min_period_s=0.05, log_fn=lambda _m: None)
    acq.start(rate_hz=1000.0)
    try:
        assert acq.period_s == 0.05
    finally:
        acq.stop()

    acq.start(rate_hz=10.0)
    try:
        assert acq.period_s == 0.1
    finally:
        acq.stop()


def test_failing_samples_do_not_stop_the_loop():
    from benchlink.acquisition import AcquisitionLoop

    calls = itertools.count()
    logs = []

    def flaky():
        n = next(calls)
        if n % 2 == 0:
            raise TimeoutError("no reply")
        return n

    acq = AcquisitionLoop(flaky, capacity=10, min_period_s=0.001, log_fn=logs.append)
    acq.start(rate_hz=500.0)
    assert _wait_for(lambda: acq.samples >= 2 and acq.errors >= 2)
    acq.stop()

    assert all(v % 2 == 1 for v in acq.snapshot())
    assert "ACQ: no reply" in logs


def test_buffer_keeps_latest_samples():
    from benchlink.acquisition import AcquisitionLoop

    counter = itertools.count()
    acq = AcquisitionLoop(lambda: next(counter), capacity=3, min_period_s=0.001, log_fn=lambda _m: None)
    acq.start(rate_hz=500.0)
    assert _wait_for(lambda: acq.samples >= 6)
    acq.stop()

    snap = acq.snapshot()
    assert len(snap) == 3
    assert snap == sorted(snap)
    assert snap[-1] == acq.samples - 1


def test_stop_is_bounded_for_a_stuck_read():
    from benchlink.acquisition import AcquisitionLoop

    release = threading.Event()
    entered = threading.Event()

    def stuck():
        entered.set()
        release.wait(5.0)
        return 1

    logs = []
    acq = AcquisitionLoop(stuck, stop_timeout_s=0.05, log_fn=logs.append)
    acq.start(rate_hz=10.0)
    assert entered.wait(2.0)
    try:
        assert acq.stop() is False
        assert any("still busy" in m for m in logs)
    finally:
        release.set()
    # A sample that completes after stop() is discarded.
    time.sleep(0.05)
    assert acq.samples == 0


def test_export_csv_uses_csv_rows(tmp_path):
    from benchlink.acquisition import SAMPLE_HEADER, AcquisitionLoop, Sample

    acq = AcquisitionLoop(lambda: Sample.from_reply("1.25"), capacity=5, log_fn=lambda _m: None)
    for _ in range(2):
        acq.buffer.add(Sample.from_reply("1.25"))
    out = acq.export_csv(tmp_path / "out" / "samples.csv", header=SAMPLE_HEADER)

    with out.open(newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == list(SAMPLE_HEADER)
    assert [r[1:] for r in rows[1:]] == [["1.25", "1.25"], ["1.25", "1.25"]]
