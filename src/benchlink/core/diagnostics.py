"""Command log + per-instrument health.

Most of benchlink is deliberately quiet: safe driver calls return sentinels,
acquisition loops skip failed samples, the scheduler hands errors to the
caller that asked. CommandLog is where those failures remain visible.

It keeps:
  - a bounded ring of recent events (level + source + message)
  - optional append-only log lines on disk
  - subscriber callbacks, for a live console or UI panel
  - health counters per instrument key (usually `Transport.describe()`)
"""

from __future__ import annotations

import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .. import config

# Upper bound on the stored traceback per instrument.
MAX_TRACE_CHARS = 8000


@dataclass(frozen=True)
class LogEvent:
    ts_unix: float
    ts_mono: float
    level: str
    source: str
    message: str

    def format_line(self) -> str:
        stamp = datetime.fromtimestamp(self.ts_unix).strftime("%H:%M:%S.%f")[:-3]
        return f"{stamp} [{self.level}] {self.source}: {self.message}"


@dataclass
class DeviceHealth:
    ok_count: int = 0
    error_count: int = 0
    last_ok_mono: Optional[float] = None
    last_error_mono: Optional[float] = None
    last_error: str = ""
    last_error_trace: str = ""

    def as_dict(self, now_mono: float) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "ok_count": self.ok_count,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }
        if self.last_ok_mono is not None:
            d["last_ok_age_s"] = now_mono - self.last_ok_mono
        if self.last_error_mono is not None:
            d["last_error_age_s"] = now_mono - self.last_error_mono
            d["last_error_trace"] = self.last_error_trace
        return d


@dataclass
class _Repeat:
    message: str
    last_mono: float
    suppressed: int = field(default=0)


class CommandLog:
    """Thread-safe event ring, log file and health table."""

    def __init__(
        self,
        *,
        max_events: Optional[int] = None,
        dedupe_window_s: Optional[float] = None,
        path: Optional[str] = None,
    ) -> None:
        cap = int(max_events if max_events is not None else getattr(config, "LOG_MAX_EVENTS", 250))
        window = dedupe_window_s if dedupe_window_s is not None else getattr(config, "LOG_DEDUPE_WINDOW_SEC", 0.75)
        file_name = path if path is not None else str(getattr(config, "LOG_FILE", "") or "")

        self._lock = threading.Lock()
        self._events: Deque[LogEvent] = deque(maxlen=max(1, cap))
        self._window_s = max(0.0, float(window or 0.0))
        self._repeats: Dict[str, _Repeat] = {}
        self._health: Dict[str, DeviceHealth] = {}
        self._subscribers: List[Callable[[LogEvent], None]] = []

        self.path: Optional[Path] = Path(file_name) if file_name else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def subscribe(self, fn: Callable[[LogEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _is_repeat_locked(self, source: str, message: str, now_mono: float) -> bool:
        """Same message from the same source inside the window is dropped."""

        if self._window_s <= 0:
            return False
        prev = self._repeats.get(source)
        if prev is not None and prev.message == message and now_mono - prev.last_mono < self._window_s:
            prev.suppressed += 1
            prev.last_mono = now_mono
            return True
        self._repeats[source] = _Repeat(message=message, last_mono=now_mono)
        return False

    def log(self, message: str, *, level: str = "info", source: str = "bench") -> None:
        ev = LogEvent(
            ts_unix=time.time(),
            ts_mono=time.monotonic(),
            level=str(level or "info"),
            source=str(source or "bench"),
            message=str(message or ""),
        )
        with self._lock:
            if self._is_repeat_locked(ev.source, ev.message, ev.ts_mono):
                return
            self._events.append(ev)
            subscribers = list(self._subscribers)

        if self.path is not None:
            try:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(ev.format_line() + "\n")
            except OSError:
                pass

        for fn in subscribers:
            try:
                fn(ev)
            except Exception:
                pass

    def as_log_fn(self, *, level: str = "info", source: str = "bench") -> Callable[[str], None]:
        """Bind level/source so this log can be passed wherever a `log_fn` is taken."""

        return lambda message: self.log(message, level=level, source=source)

    def events(self, *, level: Optional[str] = None) -> List[LogEvent]:
        with self._lock:
            evs = list(self._events)
        return evs if level is None else [e for e in evs if e.level == level]

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def mark_ok(self, key: str) -> None:
        if not key:
            return
        with self._lock:
            h = self._health.setdefault(str(key), DeviceHealth())
            h.ok_count += 1
            h.last_ok_mono = time.monotonic()

    def mark_error(self, key: str, exc: BaseException, *, where: str = "") -> None:
        """Count an error against `key` and log it at level "error"."""

        if not key:
            return
        msg = f"{type(exc).__name__}: {exc}" + (f" ({where})" if where else "")
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        with self._lock:
            h = self._health.setdefault(str(key), DeviceHealth())
            h.error_count += 1
            h.last_error_mono = time.monotonic()
            h.last_error = msg
            h.last_error_trace = trace[-MAX_TRACE_CHARS:]
        self.log(msg, level="error", source=str(key))

    def health(self, key: str) -> Optional[DeviceHealth]:
        with self._lock:
            return self._health.get(str(key))

    def health_snapshot(self) -> Dict[str, Dict[str, Any]]:
        now = time.monotonic()
        with self._lock:
            return {k: h.as_dict(now) for k, h in self._health.items()}
