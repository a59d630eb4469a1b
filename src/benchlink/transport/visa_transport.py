"""Bus-driver transport built on PyVISA.

The VISA library does the framing for us (termination characters, IEEE 488.2
block headers); this class only adds the shared Transport behavior: one lock
per session, typed errors, state transitions.

Write-timeout policy: swallowed. SCPI writes over VISA are fire-and-forget;
a timeout while writing is logged, the session is cleared, and the call
returns normally. Read timeouts are always surfaced.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional

import pyvisa

from .. import config
from .base import Transport


def _split_patterns(s: str) -> List[str]:
    return [p.strip() for p in str(s or "").split(",") if p.strip()]


def _resource_manager(backend: Optional[str] = None) -> pyvisa.ResourceManager:
    b = str(backend if backend is not None else getattr(config, "VISA_BACKEND", "") or "").strip()
    if b:
        return pyvisa.ResourceManager(b)
    return pyvisa.ResourceManager()


def list_resources(
    patterns: Optional[Iterable[str]] = None,
    backend: Optional[str] = None,
    *,
    log_fn: Optional[Callable[[str], None]] = None,
) -> List[str]:
    """Return the de-duplicated union of resources matching each pattern.

    Scanning is best-effort: a pattern that matches nothing (or a backend
    that refuses it) contributes nothing. Order follows the patterns.
    """

    if patterns is None:
        patterns = _split_patterns(str(getattr(config, "VISA_DISCOVERY_PATTERNS", "?*::INSTR")))

    try:
        rm = _resource_manager(backend)
    except Exception as e:
        if log_fn:
            log_fn(f"VISA ResourceManager unavailable: {e}")
        return []

    found: List[str] = []
    try:
        for pattern in patterns:
            try:
                rids = rm.list_resources(pattern)
            except Exception as e:
                if log_fn:
                    log_fn(f"VISA list_resources({pattern!r}) failed: {e}")
                continue
            for rid in rids:
                rid_s = str(rid).strip()
                if rid_s and rid_s not in found:
                    found.append(rid_s)
    finally:
        try:
            rm.close()
        except Exception:
            pass
    return found


class VisaTransport(Transport):
    """SCPI over a PyVISA message-based session."""

    name = "visa"
    swallow_write_timeout = True

    def __init__(
        self,
        resource: Optional[str] = None,
        *,
        backend: Optional[str] = None,
        line_ending: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        identity_query: str = "*IDN?",
        log_fn: Callable[[str], None] = print,
        debug: Optional[bool] = None,
    ) -> None:
        super().__init__(
            line_ending=line_ending or str(getattr(config, "VISA_LINE_ENDING", "\n")),
            timeout_ms=int(timeout_ms if timeout_ms is not None else getattr(config, "VISA_TIMEOUT_MS", 2000)),
            identity_query=identity_query,
            log_fn=log_fn,
            debug=debug,
        )
        rid = str(resource if resource is not None else getattr(config, "VISA_RESOURCE", "")).strip()
        if not rid:
            raise ValueError("VISA resource id is required")
        self.resource = rid
        self.backend = str(backend if backend is not None else getattr(config, "VISA_BACKEND", "") or "").strip()

        self._rm: Optional[pyvisa.ResourceManager] = None
        self._res = None

    def describe(self) -> str:
        return f"visa {self.resource}"

    @property
    def is_open(self) -> bool:
        return self._res is not None

    def _open(self) -> None:
        rm = _resource_manager(self.backend)
        try:
            res = rm.open_resource(self.resource)
        except Exception:
            try:
                rm.close()
            except Exception:
                pass
            raise
        self._rm = rm
        self._res = res
        try:
            res.clear()
        except Exception:
            pass
        self.log(f"OPEN: {self.resource}")

    def _close(self) -> None:
        res, self._res = self._res, None
        rm, self._rm = self._rm, None
        try:
            if res is not None:
                res.close()
        finally:
            if rm is not None:
                rm.close()
        self.log(f"CLOSE: {self.resource}")

    def _apply_timeout(self, timeout_ms: int) -> None:
        if self._res is not None:
            self._res.timeout = max(1, int(timeout_ms))

    def _apply_line_ending(self, ending: str) -> None:
        if self._res is not None:
            self._res.read_termination = ending
            self._res.write_termination = ending

    def _clear_channel(self) -> None:
        if self._res is not None:
            self._res.clear()

    def _send(self, command: str) -> None:
        # `command` is already terminated; bypass PyVISA's own termination.
        self._res.write_raw(command.encode("ascii", errors="ignore"))

    def _read_reply(self, command: str) -> str:
        return str(self._res.read()).strip()

    def _read_block(self) -> bytes:
        return self._res.read_binary_values(datatype="B", container=bytes)
