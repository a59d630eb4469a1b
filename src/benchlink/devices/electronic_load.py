"""AC/DC electronic load driven through a CommandScheduler.

All I/O goes through the scheduler, so the load can be polled by an
acquisition loop while a sequence or the user changes setpoints.

Writes wait for completion and raise InstrumentError on failure. Numeric
queries are lenient: a failed or unparseable reply becomes NaN and is
logged, the way a meter panel shows "----" instead of crashing.
"""

from __future__ import annotations

import math
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..core.state_cache import StateCache
from ..errors import InstrumentError, InstrumentTimeoutError
from ..scheduler import CommandScheduler
from ..transport.base import ConnectionState

FUNCTIONS = ("CURR", "RES", "VOLT", "POW", "SHOR")

FUNCTION_UNITS = {
    "CURR": "A",
    "RES": "Ω",
    "VOLT": "V",
    "POW": "W",
    "SHOR": "",
}

# units -> (setpoint command, range key)
_SETPOINT = {
    "A": ("SOUR:CURR", "CURR"),
    "Ω": ("SOUR:RES", "RES"),
    "V": ("SOUR:VOLT", "VOLT"),
    "W": ("SOUR:POW", "POW"),
}

_RANGE_QUERIES = {
    "CURR": "SOUR:CURR:LEV:IMM:AMPL?",
    "RES": "SOUR:RES:LEV:IMM:AMPL?",
    "VOLT": "SOUR:VOLT:LEV:IMM:AMPL?",
    "POW": "SOUR:POW:LEV:IMM:AMPL?",
    "PFAC": "SOUR:PFAC:LEV:IMM:AMPL?",
    "CFAC": "SOUR:CFAC:LEV:IMM:AMPL?",
}

ERROR_QUEUE_MAX = 10


def parse_number(s: Optional[str]) -> float:
    """First number in a reply ("1.5", "1.5,2", "1.5;V"), NaN otherwise."""

    if s is None:
        return float("nan")
    text = str(s).strip()
    if not text:
        return float("nan")
    try:
        return float(text)
    except ValueError:
        pass
    head = text.replace(";", ",").split(",")[0].strip()
    try:
        return float(head)
    except ValueError:
        return float("nan")


def parse_csv_floats(s: Optional[str]) -> List[float]:
    out: List[float] = []
    for tok in str(s or "").replace(",", " ").split():
        try:
            out.append(float(tok))
        except ValueError:
            continue
    return out


def _bad(v: float) -> bool:
    return math.isnan(v) or math.isinf(v)


def _num(v: float) -> str:
    return format(float(v), ".10g")


@dataclass(frozen=True)
class Reading:
    """One load measurement. `cf` is the current crest factor."""

    timestamp: datetime
    vrms: float
    irms: float
    power: float
    pf: float
    cf: float
    freq: float

    def csv_row(self) -> List[str]:
        return [
            self.timestamp.isoformat(),
            repr(self.vrms),
            repr(self.irms),
            repr(self.power),
            repr(self.pf),
            repr(self.cf),
            repr(self.freq),
        ]


@dataclass
class Limits:
    lo: Optional[float] = None
    hi: Optional[float] = None

    def clamp(self, v: float) -> float:
        if self.lo is not None and v < self.lo:
            v = self.lo
        if self.hi is not None and v > self.hi:
            v = self.hi
        return v

    def describe(self) -> str:
        def f(x: Optional[float]) -> str:
            return "?" if x is None else format(x, ".4g")

        return f"[{f(self.lo)},{f(self.hi)}]"


def derive(vrms: float, irms: float, power: float, pf: float) -> Tuple[float, float]:
    """Fill in power factor / power when the instrument reports 0 or NaN."""

    if (_bad(pf) or pf == 0) and vrms > 1e-9 and irms > 1e-9 and not _bad(power) and power != 0:
        denom = vrms * irms
        if denom > 1e-12:
            pf = power / denom

    if _bad(power) or power == 0:
        if vrms > 1e-9 and irms > 1e-9:
            pf_use = pf if (not _bad(pf) and pf > 0) else 1.0
            power = vrms * irms * pf_use

    return power, pf


class ElectronicLoad:
    """AC/DC electronic load (ITECH IT8615-style command set)."""

    def __init__(
        self,
        scheduler: CommandScheduler,
        *,
        state_cache: Optional[StateCache] = None,
        reply_timeout_s: float = 10.0,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.scheduler = scheduler
        self.cache = state_cache if state_cache is not None else StateCache()
        self.reply_timeout_s = float(reply_timeout_s)
        self.log = log_fn
        self.current_units = "A"
        self._limits: Dict[str, Limits] = {k: Limits() for k in _RANGE_QUERIES}
        self._unsubscribe = scheduler.transport.subscribe(self._on_state)

    def _on_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.DISCONNECTED:
            self.cache.clear()

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Scheduled I/O
    # ------------------------------------------------------------------

    def _wait(self, fut, command: str):
        try:
            return fut.result(timeout=self.reply_timeout_s)
        except FutureTimeout as e:
            raise InstrumentTimeoutError(f"No completion for '{command}' within {self.reply_timeout_s:.1f}s") from e

    def write(self, command: str) -> None:
        self._wait(self.scheduler.submit_write(command), command)

    def query(self, command: str) -> str:
        """Scheduled query; "" on failure (logged)."""

        try:
            return str(self._wait(self.scheduler.submit_query(command), command)).strip()
        except InstrumentError as e:
            self.log(f"LOAD query '{command}' failed: {e}")
            return ""

    def query_number(self, command: str) -> float:
        return parse_number(self.query(command))

    def _cached_write(self, key: str, value: str, command: str) -> None:
        if not self.cache.should_send(key, value):
            return
        try:
            self.write(command)
        except InstrumentError:
            self.cache.forget(key)
            raise

    # ------------------------------------------------------------------
    # Identity / remote / errors
    # ------------------------------------------------------------------

    def identify(self) -> str:
        return self.query("*IDN?")

    def to_remote(self) -> None:
        self.write("SYST:REM")

    def to_local(self) -> None:
        self.write("SYST:LOC")

    def drain_error_queue(self) -> List[str]:
        errors: List[str] = []
        for _ in range(ERROR_QUEUE_MAX):
            e = self.query("SYST:ERR?")
            self.log(f"ERRQ: {e}")
            if not e.strip() or e.strip().startswith(("0", "+0")):
                break
            errors.append(e)
        return errors

    # ------------------------------------------------------------------
    # Mode / setpoints
    # ------------------------------------------------------------------

    def set_ac_dc(self, ac: bool) -> None:
        mode = "AC" if ac else "DC"
        self._cached_write("mode", mode, f"SYST:MODE {mode}")

    def set_function(self, func: str) -> None:
        f = str(func or "").strip().upper()
        if f not in FUNCTIONS:
            raise ValueError(f"unknown load function {func!r}")
        self._cached_write("function", f, f"SOUR:FUNC {f}")
        self.current_units = FUNCTION_UNITS[f]

    def cache_ranges(self) -> None:
        """Query MIN/MAX for every settable quantity; NaN leaves a bound open."""

        for key, q in _RANGE_QUERIES.items():
            lo = self.query_number(f"{q} MIN")
            hi = self.query_number(f"{q} MAX")
            self._limits[key] = Limits(lo=None if _bad(lo) else lo, hi=None if _bad(hi) else hi)

    def limits(self, key: str) -> Limits:
        return self._limits[key]

    def describe_ranges(self) -> str:
        r = self._limits
        return "\n".join(
            [
                f"I: {r['CURR'].describe()} A",
                f"R: {r['RES'].describe()} Ω",
                f"V: {r['VOLT'].describe()} V",
                f"P: {r['POW'].describe()} W",
                f"PF: {r['PFAC'].describe()}  CF: {r['CFAC'].describe()}",
            ]
        )

    def set_setpoint(self, value: float) -> float:
        """Write the setpoint for the current function; returns the clamped value."""

        cmd, key = _SETPOINT.get(self.current_units, _SETPOINT["A"])
        v = self._limits[key].clamp(float(value))
        self.write(f"{cmd} {_num(v)}")
        return v

    def set_pf_cf(self, pf: float, cf: float) -> Tuple[float, float]:
        pf_v = self._limits["PFAC"].clamp(float(pf))
        cf_v = self._limits["CFAC"].clamp(float(cf))
        self.write(f"SOUR:PFAC {_num(pf_v)};:SOUR:CFAC {_num(cf_v)}")
        return pf_v, cf_v

    def enable_input(self, on: bool) -> None:
        self.write(f"INP:STAT {'ON' if on else 'OFF'}")

    def estop(self) -> None:
        self.write("INP:STAT OFF;:SOUR:PFAC 1;:SOUR:CFAC 1.41")
        self.scope_stop()

    # ------------------------------------------------------------------
    # Meter
    # ------------------------------------------------------------------

    def read(self) -> Reading:
        vrms = self.query_number("MEAS:VOLT:RMS?")
        if _bad(vrms) or vrms == 0:
            vrms = self.query_number("MEAS:VOLT?")

        irms = self.query_number("MEAS:CURR:RMS?")
        if _bad(irms) or irms == 0:
            irms = self.query_number("MEAS:CURR?")

        power = self.query_number("MEAS:POW?")
        pf = self.query_number("MEAS:POW:PFAC?")
        cf = self.query_number("MEAS:CURR:CFAC?")
        freq = self.query_number("MEAS:FREQ?")

        power, pf = derive(vrms, irms, power, pf)

        return Reading(
            timestamp=datetime.now(timezone.utc),
            vrms=vrms,
            irms=irms,
            power=power,
            pf=pf,
            cf=cf,
            freq=freq,
        )

    # ------------------------------------------------------------------
    # Built-in scope
    # ------------------------------------------------------------------

    def scope_configure(self, source: str, slope: str, level: float) -> None:
        self.write(f"WAVE:TRIG:SOUR {source}")
        self.write(f"WAVE:TRIG:SLOP {slope}")
        if str(source).strip().upper().startswith("V"):
            self.write(f"WAVE:TRIG:VOLT:LEV {_num(level)}")
        else:
            self.write(f"WAVE:TRIG:CURR:LEV {_num(level)}")

    def scope_run(self) -> None:
        self.write("WAVE:RUN")

    def scope_single(self) -> None:
        self.write("WAVE:SING")

    def scope_stop(self) -> None:
        self.write("WAVE:STOP")

    def fetch_waveforms(self) -> Tuple[List[float], List[float]]:
        v = parse_csv_floats(self.query("WAVE:VOLT:DATA?"))
        i = parse_csv_floats(self.query("WAVE:CURR:DATA?"))
        return v, i

    def measure_voltage_harmonics(self, n: int) -> List[float]:
        arr = parse_csv_floats(self.query("MEAS:VOLT:HARM:AMPL?"))
        return arr[: max(0, int(n))]
