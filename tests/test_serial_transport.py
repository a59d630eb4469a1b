from __future__ import annotations

from typing import Callable, List, Optional

import pytest
import serial


class FakeSerial:
    """Loopback stand-in for serial.Serial.

    `responder(fake, data)` returns the bytes the "device" sends back for one
    write (or b"" for silence).
    """

    instances: List["FakeSerial"] = []
    responder: Optional[Callable[["FakeSerial", bytes], bytes]] = None
    fail_write_timeout = False

    def __init__(self, port, baudrate=9600, **kw):
        self.port = port
        self.baudrate = baudrate
        self.kw = kw
        self.timeout = kw.get("timeout")
        self.write_timeout = kw.get("write_timeout")
        self.is_open = True
        self.rx = bytearray()
        self.written: List[bytes] = []
        FakeSerial.instances.append(self)

    def write(self, data: bytes) -> int:
        if FakeSerial.fail_write_timeout:
            raise serial.SerialTimeoutException("Write timeout")
        self.written.append(bytes(data))
        if FakeSerial.responder is not None:
            self.rx.extend(FakeSerial.responder(self, bytes(data)))
        return len(data)

    def flush(self) -> None:
        pass

    def read(self, n: int = 1) -> bytes:
        out = bytes(self.rx[:n])
        del self.rx[:n]
        return out

    def read_until(self, expected: bytes = b"\n") -> bytes:
        i = self.rx.find(expected)
        end = len(self.rx) if i < 0 else i + len(expected)
        out = bytes(self.rx[:end])
        del self.rx[:end]
        return out

    def reset_input_buffer(self) -> None:
        self.rx.clear()

    def reset_output_buffer(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


@pytest.fixture
def fake_serial(monkeypatch):
    FakeSerial.instances = []
    FakeSerial.responder = None
    FakeSerial.fail_write_timeout = False
    monkeypatch.setattr(serial, "Serial", FakeSerial)
    return FakeSerial


def _make(**kw):
    from benchlink.transport.serial_transport import SerialTransport

    kw.setdefault("log_fn", lambda _m: None)
    kw.setdefault("line_ending", "\n")
    kw.setdefault("baud_fallbacks", [])
    return SerialTransport("/dev/ttyFAKE", 9600, **kw)


def _idn_only(reply: bytes, ending: bytes = b"\n"):
    def _resp(_fake, data: bytes) -> bytes:
        if data.startswith(b"*IDN?"):
            return reply + ending
        return b""

    return _resp


def test_port_settings_are_validated():
    from benchlink.transport.serial_transport import SerialTransport

    with pytest.raises(ValueError):
        SerialTransport("", 9600)
    with pytest.raises(ValueError):
        SerialTransport("/dev/ttyX", 9600, parity="X")
    with pytest.raises(ValueError):
        SerialTransport("/dev/ttyX", 9600, stop_bits=3)
    with pytest.raises(ValueError):
        SerialTransport("/dev/ttyX", 9600, handshake="carrier-pigeon")


def test_open_passes_port_settings(fake_serial):
    fake_serial.responder = _idn_only(b"ACME,DMM")
    t = _make(parity="E", stop_bits=2, handshake="rtscts", timeout_ms=500)
    t.connect()

    ser = fake_serial.instances[0]
    assert ser.baudrate == 9600
    assert ser.kw["parity"] == serial.PARITY_EVEN
    assert ser.kw["stopbits"] == serial.STOPBITS_TWO
    assert ser.kw["rtscts"] is True
    assert ser.kw["xonxoff"] is False
    assert ser.timeout == 0.5
    assert t.identity == "ACME,DMM"
    assert t.describe() == "serial /dev/ttyFAKE@9600"


def test_reply_skips_echo_and_blank_lines(fake_serial):
    def resp(_fake, data):
        cmd = data.strip()
        if cmd == b"MEAS?":
            return b"MEAS?\n\n1.25E+0\n"
        return b"ACME\n"

    fake_serial.responder = resp
    t = _make()
    t.connect()
    assert t.query("MEAS?") == "1.25E+0"
    assert fake_serial.instances[0].written[-1] == b"MEAS?\n"


def test_echo_only_reply_times_out(fake_serial):
    from benchlink.errors import InstrumentTimeoutError

    fake_serial.responder = lambda _f, data: data
    t = _make(identity_query="")
    t.connect()
    with pytest.raises(InstrumentTimeoutError) as ei:
        t.query("MEAS?")
    assert "echo only" in str(ei.value)

    fake_serial.responder = None
    with pytest.raises(InstrumentTimeoutError) as ei:
        t.query("MEAS?")
    assert "Timeout on command 'MEAS?'" in str(ei.value)


def test_identity_falls_back_to_other_line_ending(fake_serial):
    from benchlink.transport.base import ConnectionState

    def resp(_fake, data):
        return b"ACME,CRLF\r\n" if data == b"*IDN?\r\n" else b""

    fake_serial.responder = resp
    logs = []
    t = _make(log_fn=logs.append)
    t.connect()

    assert t.state is ConnectionState.CONNECTED
    assert t.identity == "ACME,CRLF"
    assert t.line_ending == "\r\n"
    assert any("line ending switched" in m for m in logs)


def test_identity_falls_back_to_other_baud(fake_serial):
    def resp(fake, data):
        return b"ACME,19200\n" if fake.baudrate == 19200 and data.startswith(b"*IDN?") else b""

    fake_serial.responder = resp
    t = _make(baud_fallbacks=[9600, 19200, 115200])
    t.connect()

    assert t.identity == "ACME,19200"
    assert t.baud == 19200
    assert t.describe() == "serial /dev/ttyFAKE@19200"
    assert [s.baudrate for s in fake_serial.instances] == [9600, 19200]


def test_no_identity_still_connects_at_original_baud(fake_serial):
    from benchlink.transport.base import ConnectionState

    logs = []
    t = _make(baud_fallbacks=[19200], log_fn=logs.append)
    t.connect()

    assert t.state is ConnectionState.CONNECTED
    assert t.identity == ""
    assert t.baud == 9600
    assert fake_serial.instances[-1].baudrate == 9600
    assert any("did not identify" in m for m in logs)


def test_write_timeout_is_surfaced(fake_serial):
    from benchlink.errors import InstrumentTimeoutError
    from benchlink.transport.base import ConnectionState

    fake_serial.responder = _idn_only(b"ACME")
    t = _make()
    t.connect()

    fake_serial.fail_write_timeout = True
    with pytest.raises(InstrumentTimeoutError):
        t.write("VOLT 1")
    assert t.state is ConnectionState.CONNECTED


def test_binary_block_over_serial(fake_serial):
    def resp(_fake, data):
        if data.startswith(b"CURV?"):
            return b"#15hello\n"
        return b"ACME\n"

    fake_serial.responder = resp
    t = _make()
    t.connect()
    assert t.query_binary("CURV?") == b"hello"


def test_watchdog_reopens_after_repeated_timeouts(fake_serial):
    from benchlink.errors import InstrumentTimeoutError, ProtocolError
    from benchlink.transport.base import ConnectionState

    fake_serial.responder = _idn_only(b"ACME")
    t = _make()
    t.connect()
    states = []
    t.subscribe(states.append)

    timeout = InstrumentTimeoutError("slow")
    assert t.watchdog_bump(timeout) is False
    assert t.watchdog_bump(timeout) is False
    # A non-timeout error resets the streak.
    assert t.watchdog_bump(ProtocolError("bad readback")) is False
    assert t.watchdog_bump(timeout) is False
    assert t.watchdog_bump(timeout) is False
    assert t.watchdog_bump(timeout) is True

    assert len(fake_serial.instances) == 2
    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert t.identity == "ACME"

    # Restarts are rate limited.
    for _ in range(3):
        assert t.watchdog_bump(timeout) is False


def test_watchdog_ignores_disconnected_transport(fake_serial):
    from benchlink.errors import InstrumentTimeoutError

    t = _make()
    t.watchdog_min_restart_s = 0.0
    for _ in range(t.watchdog_threshold - 1):
        t.watchdog_bump(InstrumentTimeoutError("slow"))
    assert t.watchdog_bump(InstrumentTimeoutError("slow")) is False
    assert fake_serial.instances == []


def test_scattered_timeouts_do_not_reopen_a_healthy_port(fake_serial):
    from benchlink.scheduler import CommandScheduler
    from benchlink.transport.base import ConnectionState

    calls = {"MEAS?": 0}

    def resp(_fake, data: bytes) -> bytes:
        if data.startswith(b"*IDN?"):
            return b"ACME\n"
        if data.startswith(b"MEAS?"):
            calls["MEAS?"] += 1
            # Every fifth reading is lost on the wire.
            return b"" if calls["MEAS?"] % 5 == 0 else b"+1.0\n"
        return b""

    fake_serial.responder = resp
    t = _make()
    t.watchdog_min_restart_s = 0.0
    t.connect()
    states = []
    t.subscribe(states.append)

    with CommandScheduler(t, default_retries=1, backoff_initial_s=0.0, log_fn=lambda _m: None) as s:
        futures = [s.submit_query("MEAS?") for _ in range(15)]
        assert [f.result(timeout=5.0) for f in futures] == ["+1.0"] * 15

    assert calls["MEAS?"] > 15
    assert len(fake_serial.instances) == 1
    assert states == []
    assert t.state is ConnectionState.CONNECTED
