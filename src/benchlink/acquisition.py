"""Periodic sampling loop feeding a RingBuffer.

The loop owns a background thread that calls `read_fn` at a fixed rate,
buffers every sample and hands it to subscribers. A failing sample is logged
and skipped; only stop() ends the loop.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generic, List, Optional, Sequence, TypeVar, Union

from . import config
from .core.export import READING_HEADER, write_csv
from .core.ring_buffer import RingBuffer

T = TypeVar("T")

SAMPLE_HEADER = ("timestamp", "value", "raw")


@dataclass(frozen=True)
class Sample:
    """One polled scalar reply (e.g. a meter reading)."""

    timestamp: datetime
    value: float
    raw: str

    @classmethod
    def from_reply(cls, raw: Optional[str]) -> "Sample":
        text = str(raw or "").strip()
        try:
            value = float(text.replace(";", ",").split(",")[0])
        except ValueError:
            value = float("nan")
        return cls(timestamp=datetime.now(timezone.utc), value=value, raw=text)

    def csv_row(self) -> List[str]:
        return [self.timestamp.isoformat(), repr(self.value), self.raw]


class AcquisitionLoop(Generic[T]):
    def __init__(
        self,
        read_fn: Callable[[], T],
        *,
        buffer: Optional[RingBuffer[T]] = None,
        capacity: Optional[int] = None,
        min_period_s: Optional[float] = None,
        stop_timeout_s: Optional[float] = None,
        log_fn: Callable[[str], None] = print,
        name: str = "acq",
    ) -> None:
        self.read_fn = read_fn
        if buffer is None:
            buffer = RingBuffer(int(capacity if capacity is not None else getattr(config, "ACQ_BUFFER_CAPACITY", 60000)))
        self.buffer = buffer
        self.min_period_s = float(
            min_period_s if min_period_s is not None else getattr(config, "ACQ_MIN_PERIOD_SEC", 0.020)
        )
        self.stop_timeout_s = float(
            stop_timeout_s if stop_timeout_s is not None else getattr(config, "ACQ_STOP_TIMEOUT_SEC", 1.0)
        )
        self.log = log_fn
        self.name = name

        self._lock = threading.Lock()
        self._subscribers: List[Callable[[T], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._stop: Optional[threading.Event] = None

        self.period_s = 0.0
        self.samples = 0
        self.errors = 0

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, fn: Callable[[T], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(fn)
                except ValueError:
                    pass

        return _unsubscribe

    def _notify(self, item: T) -> None:
        with self._lock:
            subs = list(self._subscribers)
        for fn in subs:
            try:
                fn(item)
            except Exception as e:
                self.log(f"{self.name}: subscriber error: {e}")

    # ------------------------------------------------------------------
    # Run control
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def start(self, rate_hz: Optional[float] = None) -> None:
        """(Re)start sampling at `rate_hz` (floored to the minimum period)."""

        self.stop()
        hz = float(rate_hz if rate_hz is not None else getattr(config, "ACQ_RATE_HZ", 10.0))
        self.period_s = max(self.min_period_s, 1.0 / max(hz, 1e-6))

        stop = threading.Event()
        t = threading.Thread(target=self._run, args=(stop, self.period_s), name=f"{self.name}-loop", daemon=True)
        with self._lock:
            self._stop = stop
            self._thread = t
        t.start()

    def stop(self) -> bool:
        """Signal the loop and wait (bounded). Returns True if it has ended."""

        with self._lock:
            stop, t = self._stop, self._thread
            self._stop = None
            self._thread = None
        if stop is not None:
            stop.set()
        if t is None or t is threading.current_thread():
            return True
        t.join(timeout=self.stop_timeout_s)
        if t.is_alive():
            self.log(f"{self.name}: loop still busy after {self.stop_timeout_s:.1f}s")
            return False
        return True

    def _run(self, stop: threading.Event, period_s: float) -> None:
        while not stop.is_set():
            t0 = time.monotonic()
            try:
                item = self.read_fn()
            except Exception as e:
                self.errors += 1
                self.log(f"ACQ: {e}")
            else:
                if stop.is_set():
                    break
                self.buffer.add(item)
                self.samples += 1
                self._notify(item)
            remaining = period_s - (time.monotonic() - t0)
            if stop.wait(max(0.0, remaining)):
                break

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def snapshot(self) -> List[T]:
        return self.buffer.snapshot()

    def export_csv(self, path: Union[str, Path], header: Sequence[str] = READING_HEADER) -> Path:
        """Write the buffered samples; items provide `csv_row()` (Reading does)."""

        rows = []
        for item in self.buffer.snapshot():
            row = getattr(item, "csv_row", None)
            rows.append(row() if callable(row) else [str(item)])
        return write_csv(path, header, rows)
