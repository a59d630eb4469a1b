"""Oscilloscope waveform capture through a CommandScheduler.

Each capture selects the source, fetches a fresh preamble, pulls the raw
sample block with a binary query and scales it to seconds / volts. Frames
land in a RingBuffer so a UI or exporter can take consistent snapshots while
capture keeps running.

Only one-byte samples (signed or unsigned) are decoded.
"""

from __future__ import annotations

from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from .. import config
from ..core.export import write_csv
from ..core.ring_buffer import RingBuffer
from ..core.state_cache import StateCache
from ..errors import InstrumentTimeoutError, ProtocolError
from ..scheduler import CommandScheduler
from ..transport.base import ConnectionState

MIN_RING_CAPACITY = 4

FRAME_HEADER = ("timestamp", "source", "t", "volts")


def _pf(s: str) -> float:
    try:
        return float(s)
    except ValueError:
        return 0.0


def _pi(s: str) -> int:
    try:
        return int(s)
    except ValueError:
        return 0


@dataclass(frozen=True)
class WaveformPreamble:
    """Scaling metadata for converting raw samples to physical units."""

    x_increment: float = 0.0
    x_zero: float = 0.0
    y_mult: float = 0.0
    y_offset: float = 0.0
    y_zero: float = 0.0
    point_count: int = 0

    @classmethod
    def parse(cls, text: Optional[str]) -> "WaveformPreamble":
        """Parse a preamble reply.

        Keyword form (`...;XINCR 1e-6;...`) is scanned first. If no x-increment
        turns up and the reply has at least 14 fields, the positional Tek
        layout is assumed (NR_PT at 5, XINCR 8, XZERO 9, YMULT 11, YZERO 12,
        YOFF 13).
        """

        if not text or not text.strip():
            return cls()

        parts = [p for p in text.replace(",", " ").replace(";", " ").split() if p]
        found: Dict[str, float] = {}
        for i, raw in enumerate(parts[:-1]):
            t = raw.upper()
            nxt = parts[i + 1]
            if "XINCR" in t:
                found["x_increment"] = _pf(nxt)
            if "XZERO" in t:
                found["x_zero"] = _pf(nxt)
            if "YMULT" in t:
                found["y_mult"] = _pf(nxt)
            if "YZERO" in t:
                found["y_zero"] = _pf(nxt)
            if "YOFF" in t:
                found["y_offset"] = _pf(nxt)
            if "NR_PT" in t:
                found["point_count"] = _pi(nxt)

        if not found.get("x_increment") and len(parts) >= 14:
            found = {
                "point_count": _pi(parts[5]),
                "x_increment": _pf(parts[8]),
                "x_zero": _pf(parts[9]),
                "y_mult": _pf(parts[11]),
                "y_zero": _pf(parts[12]),
                "y_offset": _pf(parts[13]),
            }

        return cls(**found)  # type: ignore[arg-type]

    def scale(self, raw: bytes, *, signed: bool = True) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
        """Return (time, volts) for one-byte samples."""

        n = len(raw)
        if self.point_count > 0:
            n = min(n, self.point_count)
        samples = [(b - 256 if b > 127 else b) if signed else b for b in raw[:n]]
        volts = tuple((s - self.y_offset) * self.y_mult + self.y_zero for s in samples)
        times = tuple(self.x_zero + i * self.x_increment for i in range(n))
        return times, volts


@dataclass(frozen=True)
class WaveformFrame:
    timestamp: datetime
    source: str
    time: Tuple[float, ...]
    volts: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.volts)

    def csv_rows(self) -> List[List[str]]:
        ts = self.timestamp.isoformat()
        return [[ts, self.source, repr(t), repr(v)] for t, v in zip(self.time, self.volts)]


class WaveformCapture:
    """Capture frames from a Tek-style scope (DATA:SOU / WFMO? / CURV?).

    Subclasses override the command attributes for other dialects.
    """

    SOURCE_CMD = "DATA:SOU {source}"
    ENCODING_CMD = "DATA:ENC {encoding}"
    WIDTH_CMD = "WFMO:BYT_N 1"
    PREAMBLE_QUERY = "WFMO?"
    DATA_QUERY = "CURV?"

    def __init__(
        self,
        scheduler: CommandScheduler,
        *,
        capacity: Optional[int] = None,
        signed: bool = True,
        fetch_timeout_ms: int = 5000,
        reply_timeout_s: float = 15.0,
        state_cache: Optional[StateCache] = None,
        log_fn: Callable[[str], None] = print,
    ) -> None:
        self.scheduler = scheduler
        cap = int(capacity if capacity is not None else getattr(config, "WAVEFORM_RING_CAPACITY", 64))
        self.frames: RingBuffer[WaveformFrame] = RingBuffer(cap, min_capacity=MIN_RING_CAPACITY)
        self.signed = bool(signed)
        self.fetch_timeout_ms = int(fetch_timeout_ms)
        self.reply_timeout_s = float(reply_timeout_s)
        self.cache = state_cache if state_cache is not None else StateCache()
        self.log = log_fn
        self.last_preamble: Optional[WaveformPreamble] = None
        self._unsubscribe = scheduler.transport.subscribe(self._on_state)

    def _on_state(self, state: ConnectionState) -> None:
        if state is ConnectionState.DISCONNECTED:
            self.cache.clear()

    def close(self) -> None:
        self._unsubscribe()

    def _wait(self, fut, command: str):
        try:
            return fut.result(timeout=self.reply_timeout_s)
        except FutureTimeout as e:
            raise InstrumentTimeoutError(f"No completion for '{command}' within {self.reply_timeout_s:.1f}s") from e

    def _setting(self, key: str, value: str, command: str) -> None:
        if not self.cache.should_send(key, value):
            return
        try:
            self._wait(self.scheduler.submit_write(command), command)
        except Exception:
            self.cache.forget(key)
            raise

    def configure_channel(self, channel: int, scale: float, coupling: str = "DC") -> None:
        ch = int(channel)
        self._setting(f"ch{ch}:scale", repr(float(scale)), f"CH{ch}:SCA {float(scale):.6g}")
        self._setting(f"ch{ch}:coupling", coupling, f"CH{ch}:COUP {coupling}")

    def set_timebase(self, sec_per_div: float) -> None:
        self._setting("timebase", repr(float(sec_per_div)), f"HOR:SCA {float(sec_per_div):.6g}")

    def capture(self, source: str = "CH1") -> WaveformFrame:
        """Fetch, scale and buffer one frame. Raises InstrumentError on failure."""

        src = str(source or "CH1").strip().upper()
        self._setting("source", src, self.SOURCE_CMD.format(source=src))
        self._setting("encoding", "RIB" if self.signed else "RPB", self.ENCODING_CMD.format(encoding="RIB" if self.signed else "RPB"))
        self._setting("width", "1", self.WIDTH_CMD)

        pre_text = self._wait(self.scheduler.submit_query(self.PREAMBLE_QUERY), self.PREAMBLE_QUERY)
        pre = WaveformPreamble.parse(pre_text)
        if pre.y_mult == 0:
            raise ProtocolError(f"Preamble without vertical scale: {str(pre_text)[:80]!r}")
        self.last_preamble = pre

        raw = self._wait(
            self.scheduler.submit_query_binary(self.DATA_QUERY, timeout_ms=self.fetch_timeout_ms),
            self.DATA_QUERY,
        )
        times, volts = pre.scale(bytes(raw), signed=self.signed)
        frame = WaveformFrame(timestamp=datetime.now(timezone.utc), source=src, time=times, volts=volts)
        self.frames.add(frame)
        return frame

    def export_csv(self, path: Union[str, Path]) -> Path:
        rows: List[List[str]] = []
        for frame in self.frames.snapshot():
            rows.extend(frame.csv_rows())
        return write_csv(path, FRAME_HEADER, rows)
