"""Idempotence filter for "set" commands.

Instruments that are polled and re-configured from several places (UI
handlers, sequence steps, capture loops) tend to receive the same setting
over and over. Each resend costs a serial round trip and, on some meters,
an audible beep. StateCache remembers the last value sent per setting so the
caller can skip redundant writes.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional


class StateCache:
    """Last-sent value per setting key (keys and values compared case-insensitively)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}

    @staticmethod
    def _norm(s: object) -> str:
        return str(s if s is not None else "").strip().casefold()

    def should_send(self, key: Optional[str], value: object) -> bool:
        """Return True (and record `value`) if `key` is new or its value changed."""

        if key is None:
            return True
        k = self._norm(key)
        v = self._norm(value)
        with self._lock:
            old = self._values.get(k)
            if old is not None and old == v:
                return False
            self._values[k] = v
            return True

    def forget(self, key: str) -> None:
        """Drop one key so the next should_send() for it returns True."""

        with self._lock:
            self._values.pop(self._norm(key), None)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
