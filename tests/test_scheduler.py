from __future__ import annotations

import threading
import time

import pytest


def _sched(transport, **kw):
    from benchlink.scheduler import CommandScheduler

    kw.setdefault("log_fn", lambda _m: None)
    kw.setdefault("backoff_initial_s", 0.0)
    kw.setdefault("min_capacity", 1)
    return CommandScheduler(transport, **kw)


def _wait_for(pred, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.005)
    return pred()


def test_commands_run_in_submission_order(scripted):
    t = scripted({"MEAS?": "1.0", "FUNC?": "VOLT"})
    with _sched(t) as s:
        futs = [
            s.submit_write("CONF:VOLT"),
            s.submit_query("FUNC?"),
            s.submit_write("TRIG:COUN INF"),
            s.submit_query("MEAS?"),
        ]
        assert futs[-1].result(timeout=2) == "1.0"
        assert futs[1].result(timeout=2) == "VOLT"
        assert futs[0].result(timeout=2) is None

    assert t.sent[1:] == ["CONF:VOLT", "FUNC?", "TRIG:COUN INF", "MEAS?"]


def test_callbacks_fire_exactly_once(scripted):
    t = scripted({"MEAS?": "2.5"})
    replies, done, errors = [], [], []
    with _sched(t) as s:
        assert s.enqueue_write("VOLT 1", on_done=lambda: done.append(True)) is True
        assert s.enqueue_query("MEAS?", replies.append, on_error=errors.append) is True
        assert _wait_for(lambda: replies)

    assert done == [True]
    assert replies == ["2.5"]
    assert errors == []


def test_capacity_has_a_floor(scripted):
    from benchlink.scheduler import CommandScheduler

    s = CommandScheduler(scripted(), capacity=4, start=False, log_fn=lambda _m: None)
    assert s.capacity == 64
    s.dispose()


def test_full_queue_evicts_oldest_write(scripted):
    from benchlink.errors import QueueFullError

    t = scripted()
    s = _sched(t, capacity=4, enqueue_wait_s=0, start=False)
    errors = {}

    def on_err(name):
        return lambda e: errors.setdefault(name, e)

    s.enqueue_write("W1", on_error=on_err("W1"))
    s.enqueue_write("W2", on_error=on_err("W2"))
    s.enqueue_query("Q1", lambda _r: None, on_error=on_err("Q1"))
    s.enqueue_write("W3", on_error=on_err("W3"))
    assert len(s) == 4

    assert s.enqueue_query("Q2", lambda _r: None, on_error=on_err("Q2")) is True
    assert [c.command for c in s.pending()] == ["W2", "Q1", "W3", "Q2"]
    assert list(errors) == ["W1"]
    assert isinstance(errors["W1"], QueueFullError)
    s.dispose()


def test_full_queue_of_queries_rejects_new_command(scripted):
    from benchlink.errors import QueueFullError

    s = _sched(scripted(), capacity=2, enqueue_wait_s=0, start=False)
    s.submit_query("Q1")
    s.submit_query("Q2")

    errors = []
    assert s.enqueue_query("Q3", lambda _r: None, on_error=errors.append) is False
    assert isinstance(errors[0], QueueFullError)
    assert [c.command for c in s.pending()] == ["Q1", "Q2"]

    fut = s.submit_query("Q4")
    with pytest.raises(QueueFullError):
        fut.result(timeout=0)
    s.dispose()


def test_retry_recovers_from_transient_timeouts(scripted):
    t = scripted({"MEAS?": "1.5"})
    t.errors["MEAS?"] = [TimeoutError("slow"), TimeoutError("slow")]
    with _sched(t) as s:
        assert s.submit_query("MEAS?", retries=2).result(timeout=2) == "1.5"
    assert t.sent.count("MEAS?") == 3


def test_retries_are_bounded(scripted):
    from benchlink.errors import InstrumentTimeoutError

    t = scripted({"MEAS?": "1.5"})
    t.errors["MEAS?"] = [TimeoutError("slow")] * 5
    with _sched(t) as s:
        fut = s.submit_query("MEAS?", retries=1)
        with pytest.raises(InstrumentTimeoutError):
            fut.result(timeout=2)
        # Worker keeps going after a failed command.
        assert s.submit_write("VOLT 1", retries=0).result(timeout=2) is None
    assert t.sent.count("MEAS?") == 2


def test_zero_retries_means_one_attempt(scripted):
    from benchlink.errors import InstrumentIOError

    t = scripted()
    t.errors["VOLT 1"] = [OSError("gone")]
    with _sched(t) as s:
        with pytest.raises(InstrumentIOError):
            s.submit_write("VOLT 1", retries=0).result(timeout=2)
    assert t.sent.count("VOLT 1") == 1


def test_dispose_fails_everything_pending(scripted):
    from benchlink.errors import DisposedError

    t = scripted()
    s = _sched(t, start=False)
    futs = [s.submit_query(f"Q{i}?") for i in range(5)]
    s.dispose()

    for f in futs:
        with pytest.raises(DisposedError):
            f.result(timeout=0)
    assert s.is_disposed
    assert len(s) == 0

    errors = []
    assert s.enqueue_write("LATE", on_error=errors.append) is False
    assert isinstance(errors[0], DisposedError)
    with pytest.raises(DisposedError):
        s.start()
    # Not owned, so still open.
    assert t.is_open
    assert t.sent[1:] == []


def test_dispose_aborts_backoff(scripted):
    from benchlink.errors import DisposedError

    t = scripted()
    t.errors["MEAS?"] = [TimeoutError("slow")] * 10
    s = _sched(t, backoff_initial_s=5.0, backoff_max_s=5.0)
    fut = s.submit_query("MEAS?", retries=5)
    assert _wait_for(lambda: "MEAS?" in t.sent)

    s.dispose()
    with pytest.raises(DisposedError) as ei:
        fut.result(timeout=2)
    assert ei.value.__cause__ is not None


def test_owned_transport_is_disconnected_on_dispose(scripted):
    from benchlink.transport.base import ConnectionState

    t = scripted()
    with _sched(t, owns_transport=True):
        pass
    assert t.state is ConnectionState.DISCONNECTED


def test_timeout_override_is_restored(scripted):
    t = scripted({"CURV?": "x"})
    t.blocks["CURV?"] = b"\x01"
    with _sched(t) as s:
        assert s.submit_query("CURV?", timeout_ms=4000).result(timeout=2) == "x"
        assert s.submit_query_binary("CURV?", timeout_ms=6000).result(timeout=2) == b"\x01"
    assert t.timeout_ms == 1000
    assert t.timeouts[1:] == [4000, 1000, 6000, 1000]


def test_wait_opc_and_error_drain(scripted):
    t = scripted({"*OPC?": "1", "SYST:ERR?": ['-113,"Undefined header"', '+0,"No error"']})
    logs = []
    with _sched(t, error_query="SYST:ERR?", log_fn=logs.append) as s:
        s.submit_write("INIT", wait_opc=True).result(timeout=2)

    assert t.sent[1:] == ["INIT", "*OPC?", "SYST:ERR?", "SYST:ERR?"]
    assert any('-113,"Undefined header"' in m for m in logs)


def test_cancelled_future_is_skipped(scripted):
    t = scripted({"MEAS?": "1"})
    s = _sched(t, start=False)
    fut = s.submit_query("SLOW?")
    assert fut.cancel() is True
    s.start()
    assert s.submit_query("MEAS?").result(timeout=2) == "1"
    s.dispose()
    assert "SLOW?" not in t.sent


def test_failing_sink_does_not_stop_worker(scripted):
    t = scripted({"MEAS?": "1"})
    logs = []

    def bad_sink(_reply):
        raise RuntimeError("ui bug")

    with _sched(t, log_fn=logs.append) as s:
        s.enqueue_query("MEAS?", bad_sink)
        assert s.submit_query("MEAS?").result(timeout=2) == "1"
    assert any("sink error" in m for m in logs)


def test_command_log_tracks_health(scripted):
    from benchlink.core.diagnostics import CommandLog

    t = scripted({"MEAS?": "1"})
    t.errors["MEAS?"] = [TimeoutError("slow")]
    cmd_log = CommandLog(dedupe_window_s=0, path="")
    with _sched(t, command_log=cmd_log) as s:
        s.submit_query("MEAS?", retries=1).result(timeout=2)

    st = cmd_log.health_snapshot()["scripted"]
    assert st["ok_count"] == 1
    assert st["error_count"] == 1
    assert "(MEAS?)" in st["last_error"]


def test_concurrent_producers_all_complete(scripted):
    t = scripted({"MEAS?": "1"})
    results = []
    lock = threading.Lock()

    with _sched(t) as s:

        def worker():
            for _ in range(10):
                r = s.submit_query("MEAS?").result(timeout=5)
                with lock:
                    results.append(r)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for th in threads:
            th.start()
        for th in threads:
            th.join(timeout=10)

    assert results == ["1"] * 40


def test_scheduled_command_settles_once():
    from concurrent.futures import Future

    from benchlink.scheduler import CommandKind, ScheduledCommand

    got = []
    sc = ScheduledCommand("X", CommandKind.QUERY, on_success=got.append, on_error=got.append, future=Future())
    sc.succeed("a")
    sc.fail(RuntimeError("late"))
    sc.succeed("b")
    assert got == ["a"]
    assert sc.settled
    assert sc.future.result(timeout=0) == "a"
