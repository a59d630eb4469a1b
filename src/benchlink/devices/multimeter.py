"""Bench multimeter driver with a "safe" API.

Everything public here is meant to be called from polling loops and UI code:
no method raises on I/O trouble. Failures show up as `None` / `""` return
values (or a `Result` from `try_query`) plus a log line.

Meters in this class speak several SCPI dialects, so most setters try a short
list of command spellings and stop at the first one the transport accepts.
Mode changes are not reliably acknowledged, hence `set_function` confirms by
reading the function back.
"""

from __future__ import annotations

import enum
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..core.state_cache import StateCache
from ..errors import ErrorKind, InstrumentError, InstrumentTimeoutError
from ..transport.base import ConnectionState, Transport

# Canonical function tokens and the readback spellings some meters use for them.
FUNCTION_ALIASES: Dict[str, Tuple[str, ...]] = {
    "VOLT:DC": ("VDC", "DCV", "V:DC"),
    "VOLT:AC": ("VAC", "ACV", "V:AC"),
    "CURR:DC": ("ADC", "DCA", "A:DC"),
    "CURR:AC": ("AAC", "ACA", "A:AC"),
    "RES": ("OHM", "RESISTANCE"),
    "FRES": ("4WRES", "FOURWIRE", "4WIRE"),
    "FREQ": ("HZ", "FREQUENCY"),
    "PER": ("PERIOD",),
    "CAP": ("CAPACITANCE",),
    "CONT": ("CONTINUITY",),
    "DIOD": ("DIODE",),
    "TEMP": ("TEMP:RTD", "RTD"),
}

_SHORTHAND = {
    "VOLT": "VOLT:DC",
    "CURR": "CURR:DC",
    "PERIOD": "PER",
    "DIODE": "DIOD",
}

DEFAULT_FUNCTION = "VOLT:DC"

LINE_ENDINGS = ("\r\n", "\r", "\n")

# Readback polling used to confirm a function change.
CONFIRM_POLLS = 2
CONFIRM_TIMEOUT_MS = 250


def normalize_function(token: Optional[str]) -> str:
    """Map a user token onto a canonical function (VOLT:DC if unknown)."""

    f = str(token or "").strip().upper()
    f = _SHORTHAND.get(f, f)
    if f in FUNCTION_ALIASES:
        return f
    return DEFAULT_FUNCTION


def conf_token(token: str) -> str:
    """CONF: spelling for a canonical function token."""

    if token == "TEMP":
        return "TEMP:RTD"
    return token if token in FUNCTION_ALIASES else DEFAULT_FUNCTION


def _normalize_readback(s: str) -> str:
    s = s.strip().upper().replace('"', "").replace(" ", "").replace(",", ":")
    while "::" in s:
        s = s.replace("::", ":")
    return s


def readback_matches(resp: Optional[str], token: str) -> bool:
    if not resp or not resp.strip():
        return False
    norm = _normalize_readback(resp)
    token = token.upper()
    if token in norm:
        return True
    return any(alias in norm for alias in FUNCTION_ALIASES.get(token, ()))


def _parse_float(s: Optional[str]) -> float:
    try:
        return float(str(s).strip().replace(",", ""))
    except (TypeError, ValueError):
        return float("nan")


def _parse_int_strict(s: str) -> Optional[int]:
    if not s or any(c in s for c in "eE.,"):
        return None
    try:
        return int(s)
    except ValueError:
        return None


@dataclass(frozen=True)
class AveragingStats:
    min: float
    max: float
    avg: float
    count: int

    def __str__(self) -> str:
        return f"avg={self.avg:.6g}, min={self.min:.6g}, max={self.max:.6g}, n={self.count}"

    @classmethod
    def parse_aggregate(cls, text: str) -> Optional["AveragingStats"]:
        """Parse a 4-field aggregate reply whose field order varies by vendor.

        The integer-looking field (largest one, if several) is the count; the
        other three are sorted into min/avg/max. Without an integer field the
        order avg,min,max,count is assumed.
        """

        parts = [p for p in text.replace(",", " ").split() if p]
        if len(parts) < 4:
            return None
        count_idx = -1
        best = -1
        for i, p in enumerate(parts[:4]):
            n = _parse_int_strict(p)
            if n is not None and n > best:
                best, count_idx = n, i
        try:
            if count_idx >= 0:
                vals = sorted(float(parts[i]) for i in range(4) if i != count_idx)
                return cls(min=vals[0], max=vals[2], avg=vals[1], count=best)
            return cls(
                avg=float(parts[0]),
                min=float(parts[1]),
                max=float(parts[2]),
                count=int(round(float(parts[3]))),
            )
        except ValueError:
            return None


@dataclass(frozen=True)
class Result:
    """Outcome of a query that must not raise."""

    ok: bool
    value: str = ""
    error_kind: Optional[ErrorKind] = None
    message: str = ""


class SetOutcome(enum.Enum):
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"  # written, readback never matched
    FAILED = "failed"  # no write was accepted


class ScpiMultimeter:
    """Safe, dialect-tolerant SCPI multimeter on top of a Transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        state_cache: Optional[StateCache] = None,
        settle_s: float = 0.05,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.transport = transport
        self.cache = state_cache if state_cache is not None else StateCache()
        self.settle_s = float(settle_s)
        self.log = log_fn
        self._unsubscribe = transport.subscribe(self._on_state)

    def _on_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.DISCONNECTED:
            self.cache.clear()

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Core safe I/O
    # ------------------------------------------------------------------

    def try_query(self, command: str) -> Result:
        """Query with one retry per alternative line ending on timeout."""

        t = self.transport
        try:
            return Result(ok=True, value=t.query(command).strip())
        except InstrumentTimeoutError as first:
            last: InstrumentError = first
            with t.lock:
                original = t.line_ending
                try:
                    for ending in LINE_ENDINGS:
                        if ending == original:
                            continue
                        t.set_line_ending(ending)
                        try:
                            return Result(ok=True, value=t.query(command).strip())
                        except InstrumentError as e:
                            last = e
                finally:
                    t.set_line_ending(original)
            return Result(ok=False, error_kind=last.kind, message=str(last))
        except InstrumentError as e:
            return Result(ok=False, error_kind=e.kind, message=str(e))

    def query_safe(self, command: str) -> Optional[str]:
        r = self.try_query(command)
        if not r.ok:
            self.log(f"DMM query '{command}' failed: {r.message}")
            return None
        return r.value

    def query_first_available(self, *commands: str) -> Optional[str]:
        for cmd in commands:
            r = self.query_safe(cmd)
            if r:
                return r
        return None

    def try_write(self, command: str) -> bool:
        try:
            self.transport.write(command)
            return True
        except InstrumentError as e:
            self.log(f"DMM write '{command}' failed: {e}")
            return False

    def try_write_any(self, *commands: str) -> bool:
        """Write the first spelling the transport accepts."""

        return any(self.try_write(c) for c in commands)

    def _cached_write_any(self, key: str, value: str, *commands: str) -> bool:
        if not self.cache.should_send(key, value):
            return True
        if self.try_write_any(*commands):
            return True
        # Failed sends must not be remembered as sent.
        self.cache.forget(key)
        return False

    def _query_fast(self, command: str, timeout_ms: int) -> Optional[str]:
        t = self.transport
        with t.lock:
            old = t.timeout_ms
            try:
                t.timeout_ms = timeout_ms
                return t.query(command)
            except InstrumentError:
                return None
            finally:
                t.timeout_ms = old

    # ------------------------------------------------------------------
    # Identity / measurement
    # ------------------------------------------------------------------

    def read_measurement(self) -> Optional[str]:
        return self.query_first_available("MEAS?", "READ?", "FETC?")

    def read_device_id(self) -> str:
        return self.query_first_available("*IDN?", "IDN?", "ID?", "SYST:VERS?") or ""

    def get_function(self) -> str:
        return self.query_first_available("FUNC?", "CONF?") or ""

    # ------------------------------------------------------------------
    # Function (confirm-by-readback)
    # ------------------------------------------------------------------

    def _confirm_function(self, token: str) -> bool:
        for i in range(CONFIRM_POLLS):
            if readback_matches(self._query_fast("FUNC?", CONFIRM_TIMEOUT_MS), token):
                return True
            if readback_matches(self._query_fast("CONF?", CONFIRM_TIMEOUT_MS), token):
                return True
            time.sleep(0.060 + i * 0.040)
        return False

    def set_function(self, function: str) -> SetOutcome:
        """Select a measurement function and confirm it by readback. Never raises."""

        token = normalize_function(function)
        attempts = (f'FUNC "{token}"', f"CONF:{conf_token(token)}")

        any_write = False
        with self.transport.lock:
            self.try_write("SYST:REM")
            for cmd in attempts:
                if not self.try_write(cmd):
                    continue
                any_write = True
                if token == "TEMP":
                    self.try_write_any("CONF:TEMP:RTD PT100", "TEMP:RTD:TYPE PT100", "TEMP:UNIT C")
                if self._confirm_function(token):
                    self.cache.should_send("function", token)
                    return SetOutcome.CONFIRMED

        self.cache.forget("function")
        if any_write:
            self.log(f"WARNING: DMM function {token} written but not confirmed")
            return SetOutcome.UNCONFIRMED
        self.log(f"ERROR: DMM function {token} could not be written")
        return SetOutcome.FAILED

    def configure(self, function: str, range_token: Optional[str] = None) -> bool:
        """CONF:<function> [range]; 4-wire resistance also enables remote sense."""

        token = normalize_function(function)
        cmd = f"CONF:{conf_token(token)}"
        rng = str(range_token or "").strip()
        ok = self.try_write(f"{cmd} {rng}" if rng else cmd)
        if ok and token == "FRES":
            self.try_write_any("SYST:RSEN ON", "SYST:FOUR:WIRE ON")
        return ok

    # ------------------------------------------------------------------
    # Rate / range
    # ------------------------------------------------------------------

    def set_rate(self, speed: str) -> bool:
        """F(ast) / M(edium) / S(low); L is accepted as S."""

        v = str(speed or "").strip().upper()[:1]
        if v == "L":
            v = "S"
        if v not in ("F", "M", "S"):
            return False
        if not self.cache.should_send("rate", v):
            return True
        ok = self.try_write(f"RATE {v}")
        if not ok:
            ok = self.try_write(f"SAMP:RATE {v}")
            if ok:
                # keep device streaming
                self.try_write("TRIG:COUN INF")
        if not ok:
            self.cache.forget("rate")
        if self.settle_s > 0:
            time.sleep(self.settle_s)
        return ok

    def query_rate(self) -> Optional[str]:
        return self.query_first_available("RATE?", "SAMP:RATE?")

    def set_auto_range(self, on: bool) -> bool:
        state = "ON" if on else "OFF"
        if self._cached_write_any("autorange", state, f"AUTO {1 if on else 0}", f"RANG:AUTO {state}"):
            return True
        return self.try_write_any(
            f"SENS:VOLT:DC:RANG:AUTO {state}",
            f"SENS:VOLT:AC:RANG:AUTO {state}",
            f"SENS:RES:RANG:AUTO {state}",
            f"SENS:CURR:DC:RANG:AUTO {state}",
            f"SENS:CURR:AC:RANG:AUTO {state}",
        )

    def set_range(self, range_token: str) -> bool:
        rng = str(range_token or "").strip()
        if not rng:
            return False
        if self._cached_write_any("range", rng, f"RANGE {rng}"):
            # A fixed range implies autorange off on every dialect we know.
            self.cache.forget("autorange")
            return True
        return self.try_write_any(
            f"SENS:VOLT:DC:RANG {rng}",
            f"SENS:VOLT:AC:RANG {rng}",
            f"SENS:RES:RANG {rng}",
            f"SENS:CURR:DC:RANG {rng}",
            f"SENS:CURR:AC:RANG {rng}",
        )

    def query_range(self) -> Optional[str]:
        return self.query_first_available("RANGE?", "SENS:VOLT:DC:RANG?", "SENS:RES:RANG?", "SENS:CURR:DC:RANG?")

    # ------------------------------------------------------------------
    # Averaging / math
    # ------------------------------------------------------------------

    def set_averaging(self, on: bool) -> bool:
        if not self.cache.should_send("averaging", "ON" if on else "OFF"):
            return True
        if on:
            ok = self.try_write("CALC:FUNC AVER")
            ok = self.try_write("CALC:STAT ON") and ok
        else:
            ok = self.try_write("CALC:STAT OFF")
            ok = self.try_write("CALC:FUNC OFF") and ok
        if not ok:
            self.cache.forget("averaging")
        # Any math change invalidates the other math settings.
        self.cache.forget("math")
        return ok

    def query_averaging_stats(self) -> Optional[AveragingStats]:
        """Aggregate statistics query with a fallback to individual queries."""

        s = self.query_safe("CALC:AVER:ALL?")
        if s:
            return AveragingStats.parse_aggregate(s)

        avg = self.query_safe("CALC:AVER:AVER?")
        mn = self.query_safe("CALC:AVER:MIN?")
        mx = self.query_safe("CALC:AVER:MAX?")
        cnt = self.query_safe("CALC:AVER:COUN?")
        if avg is None and mn is None and mx is None and cnt is None:
            return None
        n = _parse_float(cnt)
        return AveragingStats(
            min=_parse_float(mn),
            max=_parse_float(mx),
            avg=_parse_float(avg),
            count=0 if math.isnan(n) else int(round(n)),
        )

    def query_aver_min(self) -> Optional[str]:
        return self.query_first_available("CALC:AVER:MIN?")

    def query_aver_max(self) -> Optional[str]:
        return self.query_first_available("CALC:AVER:MAX?")

    def query_aver_avg(self) -> Optional[str]:
        return self.query_first_available("CALC:AVER:AVER?")

    def _math(self, key: str, *commands: str) -> bool:
        if not self.cache.should_send("math", key):
            return True
        ok = True
        for c in commands:
            ok = self.try_write(c) and ok
        if not ok:
            self.cache.forget("math")
        self.cache.forget("averaging")
        return ok

    def math_rel_enable(self) -> bool:
        return self._math("REL", "CALC:FUNC NULL", "CALC:STAT ON")

    def math_rel_zero(self) -> bool:
        # Re-zeroing is an action, never deduplicated.
        return self.try_write("CALC:NULL:OFFS")

    def math_off(self) -> bool:
        return self._math("OFF", "CALC:STAT OFF", "CALC:FUNC OFF")

    def math_db(self, reference_ohms: int) -> bool:
        ref = int(reference_ohms)
        ok = self._math(f"DB {ref}", "CALC:FUNC DB", f"CALC:DB:REF {ref}", "CALC:STAT ON")
        # Harmless where unsupported.
        self.try_write(f"CALC:DBM:REF {ref}")
        return ok

    def math_dbm(self, reference_ohms: int) -> bool:
        ref = int(reference_ohms)
        ok = self._math(f"DBM {ref}", "CALC:FUNC DBM", f"CALC:DBM:REF {ref}", "CALC:STAT ON")
        self.try_write(f"CALC:DB:REF {ref}")
        return ok

    # ------------------------------------------------------------------
    # Continuity / beeper / remote
    # ------------------------------------------------------------------

    def set_continuity_threshold(self, ohms: float) -> bool:
        v = repr(float(ohms))
        return self._cached_write_any("cont_threshold", v, f"CONT:THRE {v}", f"SENS:CONT:THR {v}")

    def set_beeper(self, on: bool) -> bool:
        state = "ON" if on else "OFF"
        return self._cached_write_any("beeper", state, f"SYST:BEEP:STAT {state}", f"SYST:BEEPER:STATE {state}")

    def set_remote(self) -> bool:
        return self.try_write("SYST:REM")

    def set_local(self) -> bool:
        return self.try_write("SYST:LOC")

    # ------------------------------------------------------------------
    # Temperature
    # ------------------------------------------------------------------

    def query_temp_type(self) -> Optional[str]:
        return self.query_first_available("TEMP:RTD:TYPE?")

    def configure_temp_kits90(self) -> bool:
        return self.try_write("CONF:TEMP:THER KITS90")

    def read_temp_once(self) -> Optional[str]:
        return self.query_first_available("MEAS:TEMP?")

    def query_temp_unit(self) -> Optional[str]:
        return self.query_first_available("TEMP:RTD:UNIT?")

    def set_temp_unit(self, unit: str) -> bool:
        u = str(unit or "").strip().upper()[:1]
        if u not in ("K", "F", "C"):
            return False
        return self._cached_write_any("temp_unit", u, f"TEMP:RTD:UNIT {u}")
