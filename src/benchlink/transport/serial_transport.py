"""Byte-stream (pyserial) transport with explicit line-ending framing.

Bench meters on USB-serial adapters are the least forgiving channel we talk
to: they may echo commands, answer with a different line ending than the one
we send, or come up at a different baud rate after a power cycle. This
transport therefore:
  - clears the input buffer before every command so stale replies never
    pair with the wrong query
  - skips echoed command lines when reading a reply
  - tries alternative line endings / baud rates when the identity handshake
    fails (without ever failing connect() for it)
  - reopens the port after repeated timeouts (`watchdog_bump`)

Write-timeout policy: surfaced. pyserial raises SerialTimeoutException when
`write_timeout` expires; it is mapped to InstrumentTimeoutError and raised.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Sequence

import serial  # pyserial

from .. import config
from ..core.ieee_block import read_block
from ..errors import ErrorKind, InstrumentTimeoutError, classify
from .base import ConnectionState, Transport

PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}

HANDSHAKES = ("none", "rtscts", "xonxoff", "dsrdtr")

LINE_ENDINGS = ("\r\n", "\r", "\n")


def _parse_bauds(s: str) -> list[int]:
    out: list[int] = []
    for tok in str(s or "").split(","):
        tok = tok.strip()
        if not tok:
            continue
        try:
            out.append(int(tok))
        except ValueError:
            continue
    return out


class SerialTransport(Transport):
    """SCPI over a serial port. Port settings are fixed at construction."""

    name = "serial"
    swallow_write_timeout = False

    def __init__(
        self,
        port: Optional[str] = None,
        baud: Optional[int] = None,
        *,
        parity: Optional[str] = None,
        data_bits: Optional[int] = None,
        stop_bits: Optional[float] = None,
        handshake: Optional[str] = None,
        line_ending: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        read_lines: Optional[int] = None,
        baud_fallbacks: Optional[Sequence[int]] = None,
        identity_query: str = "*IDN?",
        log_fn: Callable[[str], None] = print,
        debug: Optional[bool] = None,
    ) -> None:
        super().__init__(
            line_ending=line_ending or str(getattr(config, "SERIAL_LINE_ENDING", "\n")),
            timeout_ms=int(timeout_ms if timeout_ms is not None else getattr(config, "SERIAL_TIMEOUT_MS", 600)),
            identity_query=identity_query,
            log_fn=log_fn,
            debug=debug,
        )
        port_s = str(port if port is not None else getattr(config, "SERIAL_PORT", "")).strip()
        if not port_s:
            raise ValueError("port name is required")

        self.port = port_s
        self.baud = int(baud if baud is not None else getattr(config, "SERIAL_BAUD", 9600))
        self.parity = str(parity if parity is not None else getattr(config, "SERIAL_PARITY", "N")).strip().upper()[:1] or "N"
        if self.parity not in PARITY_MAP:
            raise ValueError(f"unsupported parity {parity!r}")
        self.data_bits = int(data_bits if data_bits is not None else getattr(config, "SERIAL_DATA_BITS", 8))
        sb = float(stop_bits if stop_bits is not None else getattr(config, "SERIAL_STOP_BITS", 1))
        self.stop_bits = int(sb) if sb.is_integer() else sb
        if self.stop_bits not in STOPBITS_MAP:
            raise ValueError(f"unsupported stop bits {stop_bits!r}")
        self.handshake = str(handshake if handshake is not None else getattr(config, "SERIAL_HANDSHAKE", "none")).strip().lower()
        if self.handshake not in HANDSHAKES:
            raise ValueError(f"unsupported handshake {handshake!r}")
        self.read_lines = max(1, int(read_lines if read_lines is not None else getattr(config, "SERIAL_READ_LINES", 4)))
        if baud_fallbacks is None:
            baud_fallbacks = _parse_bauds(str(getattr(config, "SERIAL_BAUD_FALLBACKS", "")))
        self.baud_fallbacks = [int(b) for b in baud_fallbacks]

        self._ser: Optional[serial.Serial] = None

        # Watchdog bookkeeping
        self._wd_lock = threading.Lock()
        self._wd_consecutive = 0
        self._wd_last_restart = float("-inf")
        self.watchdog_threshold = int(getattr(config, "WATCHDOG_TIMEOUT_THRESHOLD", 3))
        self.watchdog_min_restart_s = float(getattr(config, "WATCHDOG_MIN_RESTART_SEC", 2.0))

    def describe(self) -> str:
        return f"serial {self.port}@{self.baud}"

    # ------------------------------------------------------------------
    # Channel primitives
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._ser is not None and bool(getattr(self._ser, "is_open", True))

    def _build_port(self, baud: int) -> serial.Serial:
        t = self._timeout_ms / 1000.0
        return serial.Serial(
            self.port,
            int(baud),
            bytesize=self.data_bits,
            parity=PARITY_MAP[self.parity],
            stopbits=STOPBITS_MAP[self.stop_bits],
            timeout=t,
            write_timeout=t,
            rtscts=self.handshake == "rtscts",
            xonxoff=self.handshake == "xonxoff",
            dsrdtr=self.handshake == "dsrdtr",
        )

    def _open(self) -> None:
        ser = self._build_port(self.baud)
        # Clear any garbage that could cause decode issues.
        try:
            ser.reset_input_buffer()
            ser.reset_output_buffer()
        except Exception:
            pass
        self._ser = ser

    def _close(self) -> None:
        ser, self._ser = self._ser, None
        if ser is not None:
            ser.close()

    def _apply_timeout(self, timeout_ms: int) -> None:
        if self._ser is None:
            return
        t = max(1, int(timeout_ms)) / 1000.0
        self._ser.timeout = t
        self._ser.write_timeout = t

    def _clear_channel(self) -> None:
        if self._ser is None:
            return
        self._ser.reset_input_buffer()
        self._ser.reset_output_buffer()

    def _send(self, command: str) -> None:
        assert self._ser is not None
        try:
            self._ser.reset_input_buffer()
        except Exception:
            pass
        self._ser.write(command.encode("ascii", errors="ignore"))
        try:
            self._ser.flush()
        except Exception:
            pass

    def _read_reply(self, command: str) -> str:
        """Return the first non-echo, non-empty line."""

        assert self._ser is not None
        term = self._line_ending.encode("ascii")

        # Common echoes are exactly the command, or the command without spaces.
        echo = command.strip().upper().replace(" ", "")

        got_any = False
        for _ in range(self.read_lines):
            raw = self._ser.read_until(term)
            if not raw:
                break
            got_any = True
            line = raw.decode("ascii", errors="replace").strip()
            if not line:
                continue
            if echo and line.upper().replace(" ", "").startswith(echo):
                continue
            return line
        if got_any:
            raise InstrumentTimeoutError(f"No reply to '{command.strip()}' (echo only)")
        raise InstrumentTimeoutError(f"Timeout on command '{command.strip()}'")

    def _read_block(self) -> bytes:
        assert self._ser is not None
        return read_block(self._ser.read, terminator=self._line_ending.encode("ascii"))

    # ------------------------------------------------------------------
    # Handshake fallbacks
    # ------------------------------------------------------------------

    def _soft_identify(self) -> str:
        idn = super()._soft_identify()
        if idn or not self.identity_query:
            return idn

        original = self._line_ending
        for ending in LINE_ENDINGS:
            if ending == original:
                continue
            self._line_ending = ending
            idn = self._try_identify()
            if idn:
                self.log(f"{self.describe()}: line ending switched to {ending!r}")
                return idn

        self._line_ending = original
        original_baud = self.baud
        for b in self.baud_fallbacks:
            if b == original_baud:
                continue
            if not self._reopen(b):
                continue
            idn = self._try_identify()
            if idn:
                # lock-in working baud
                self.baud = b
                self.log(f"{self.describe()}: baud fallback succeeded")
                return idn

        if self.baud_fallbacks and self._ser is not None and self._ser.baudrate != original_baud:
            self._reopen(original_baud)
        self.log(f"WARNING: {self.describe()} did not identify; continuing without ID")
        return ""

    def _try_identify(self) -> str:
        try:
            return self._query_locked(self.identity_query, fault=False).strip()
        except Exception:
            return ""

    def _reopen(self, baud: int) -> bool:
        try:
            if self._ser is not None:
                try:
                    self._ser.close()
                except Exception:
                    pass
            self._ser = self._build_port(baud)
            return True
        except Exception as e:
            self.log(f"{self.describe()}: reopen at {baud} failed: {e}")
            self._ser = None
            return False

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def watchdog_bump(self, exc: BaseException) -> bool:
        """Feed an I/O error; reopen the port after repeated timeouts.

        Returns True when a reopen was attempted.
        """

        if classify(exc) not in (ErrorKind.TIMEOUT, ErrorKind.IO):
            with self._wd_lock:
                self._wd_consecutive = 0
            return False

        now = time.monotonic()
        with self._wd_lock:
            self._wd_consecutive += 1
            if self._wd_consecutive < self.watchdog_threshold:
                return False
            # don't flap
            if (now - self._wd_last_restart) < self.watchdog_min_restart_s:
                return False
            self._wd_last_restart = now
            self._wd_consecutive = 0

        with self.lock:
            if self.state is ConnectionState.DISCONNECTED:
                return False
            self.log(f"{self.describe()}: watchdog reopening port")
            self._set_state(ConnectionState.CONNECTING)
            if not self._reopen(self.baud):
                self._set_state(ConnectionState.FAULTED)
                return True
            self.identity = Transport._soft_identify(self)
            self._set_state(ConnectionState.CONNECTED)
            return True

    def watchdog_reset(self) -> None:
        with self._wd_lock:
            self._wd_consecutive = 0
