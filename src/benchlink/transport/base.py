"""Transport contract + connection state machine.

A Transport owns exactly one physical channel (a serial port or a VISA
session) and guarantees that I/O on it never interleaves: every operation runs
under `Transport.lock`, a re-entrant lock that callers composing several
operations (the scheduler's timeout override + command + *OPC? + error drain)
may hold across the whole sequence.

Two flavors of query exist on purpose:
  - `query()` is strict: timeouts and I/O failures raise typed errors.
  - `query_safe()` never raises and returns "" on any failure, for polling
    loops and UI code that must never see an exception.
"""

from __future__ import annotations

import enum
import threading
from typing import Callable, List, Optional

from .. import config
from ..errors import (
    ErrorKind,
    InstrumentConnectionError,
    InstrumentError,
    InstrumentIOError,
    classify,
    wrap,
)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"


_ALLOWED = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.FAULTED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.FAULTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
    },
    ConnectionState.FAULTED: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


StateObserver = Callable[[ConnectionState], None]


class ConnectionStateMachine:
    """Disconnected -> Connecting -> Connected -> Faulted, observable from any thread."""

    def __init__(self, *, log_fn: Callable[[str], None] = print, name: str = "transport") -> None:
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._observers: List[StateObserver] = []
        self.log = log_fn
        self.name = name

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def subscribe(self, fn: StateObserver) -> Callable[[], None]:
        with self._lock:
            self._observers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._observers.remove(fn)
                except ValueError:
                    pass

        return _unsubscribe

    def transition(self, new: ConnectionState) -> bool:
        """Move to `new` if allowed. Returns True when the state changed."""

        with self._lock:
            old = self._state
            if old is new:
                return False
            allowed = new in _ALLOWED[old]
            observers: List[StateObserver] = []
            if allowed:
                self._state = new
                observers = list(self._observers)

        if not allowed:
            self.log(f"{self.name}: ignoring state change {old.value} -> {new.value}")
            return False

        # Observers run outside the lock; a failing observer never blocks the transition.
        for fn in observers:
            try:
                fn(new)
            except Exception:
                pass
        return True


class Transport:
    """Base class for serial and VISA transports.

    Subclasses implement the channel primitives (`_open`, `_close`,
    `_send`, `_read_reply`, `_read_block`, `_apply_timeout`, `_clear_channel`,
    `is_open`). Everything else (locking, typed errors, state transitions,
    timeout restore, tracing) lives here.
    """

    name = "transport"

    # Write-timeout policy. Serial surfaces it; VISA treats writes as fire-and-forget.
    swallow_write_timeout = False

    def __init__(
        self,
        *,
        line_ending: str = "\n",
        timeout_ms: int = 1000,
        identity_query: str = "*IDN?",
        log_fn: Callable[[str], None] = print,
        debug: Optional[bool] = None,
    ) -> None:
        self.lock = threading.RLock()
        self.log = log_fn
        self._line_ending = line_ending or "\n"
        self._timeout_ms = int(timeout_ms)
        self.identity_query = identity_query
        self.identity: str = ""
        self.debug = bool(getattr(config, "IO_DEBUG", False)) if debug is None else bool(debug)
        self._sm = ConnectionStateMachine(log_fn=log_fn, name=self.name)

    # ------------------------------------------------------------------
    # Channel primitives (subclasses)
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError

    def _open(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _close(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _send(self, command: str) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _read_reply(self, command: str) -> str:  # pragma: no cover - abstract
        raise NotImplementedError

    def _read_block(self) -> bytes:  # pragma: no cover - abstract
        raise NotImplementedError

    def _apply_timeout(self, timeout_ms: int) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _clear_channel(self) -> None:  # pragma: no cover - abstract
        raise NotImplementedError

    def _apply_line_ending(self, ending: str) -> None:
        pass

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._sm.state

    @property
    def is_connected(self) -> bool:
        return self.is_open and self._sm.state in (ConnectionState.CONNECTED, ConnectionState.FAULTED)

    def subscribe(self, fn: StateObserver) -> Callable[[], None]:
        """Observe connection state changes (called synchronously on transition)."""

        return self._sm.subscribe(fn)

    def _set_state(self, s: ConnectionState) -> None:
        self._sm.transition(s)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    @timeout_ms.setter
    def timeout_ms(self, value: int) -> None:
        v = max(1, int(value))
        with self.lock:
            self._timeout_ms = v
            if self.is_open:
                self._apply_timeout(v)

    @property
    def line_ending(self) -> str:
        return self._line_ending

    def set_line_ending(self, ending: Optional[str]) -> None:
        with self.lock:
            self._line_ending = ending or "\n"
            if self.is_open:
                self._apply_line_ending(self._line_ending)

    def _terminated(self, command: str) -> str:
        cmd = str(command or "")
        if not cmd.endswith(self._line_ending):
            cmd = cmd.rstrip("\r\n") + self._line_ending
        return cmd

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Open the channel; raise InstrumentConnectionError on hard failure.

        A failing identity query after a successful open is only a warning.
        """

        with self.lock:
            self.disconnect()
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._open()
                self._apply_timeout(self._timeout_ms)
                self._apply_line_ending(self._line_ending)
            except Exception as e:
                try:
                    if self.is_open:
                        self._close()
                except Exception as close_err:
                    self.log(f"{self.describe()} close error: {close_err}")
                self._set_state(ConnectionState.FAULTED)
                raise InstrumentConnectionError(f"Failed to open {self.describe()}: {e}") from e

            self.identity = self._soft_identify()
            self._set_state(ConnectionState.CONNECTED)

    def _soft_identify(self) -> str:
        """Best-effort identity check; never raises and never faults the channel."""

        if not self.identity_query:
            return ""
        try:
            idn = self._query_locked(self.identity_query, fault=False)
        except InstrumentError as e:
            self.log(f"WARNING: {self.describe()} identity check failed: {e}")
            return ""
        if not idn.strip():
            self.log(f"WARNING: {self.describe()} identity check returned nothing")
            return ""
        self.log(f"{self.describe()} ID: {idn.strip()}")
        return idn.strip()

    def disconnect(self) -> None:
        """Best-effort close; always ends Disconnected."""

        with self.lock:
            try:
                if self.is_open:
                    self._close()
            except Exception as e:
                self.log(f"{self.describe()} close error: {e}")
            finally:
                self._set_state(ConnectionState.DISCONNECTED)

    def close(self) -> None:
        self.disconnect()

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def describe(self) -> str:
        return self.name

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def _require_open(self) -> None:
        if not self.is_open:
            raise InstrumentIOError(f"{self.describe()} not connected")

    def _recover(self) -> None:
        """Clear input/error state after a channel error so the next op starts clean."""

        try:
            self._clear_channel()
        except Exception:
            pass

    def _fail(self, exc: BaseException, what: str, *, fault: bool = True) -> InstrumentError:
        self._recover()
        err = wrap(exc, what)
        if fault and err.kind is ErrorKind.IO:
            self._set_state(ConnectionState.FAULTED)
        return err

    def write(self, command: str) -> None:
        """Send a command; no reply expected."""

        self._require_open()
        with self.lock:
            if self.debug:
                self.log(f">> {command}")
            try:
                self._send(self._terminated(command))
            except Exception as e:
                if classify(e) is ErrorKind.TIMEOUT and self.swallow_write_timeout:
                    self._recover()
                    self.log(f"WARNING: write timeout ignored on '{command}'")
                    return
                raise self._fail(e, f"Write failed on '{command}'") from e

    def _query_locked(self, command: str, *, fault: bool = True) -> str:
        self._require_open()
        with self.lock:
            if self.debug:
                self.log(f">> {command}")
            try:
                self._send(self._terminated(command))
                reply = self._read_reply(command)
            except Exception as e:
                raise self._fail(e, f"Query failed on '{command}'", fault=fault) from e
            if self.debug:
                self.log(f"<< {reply}")
            return reply

    def query(self, command: str) -> str:
        """Write then read one reply line (strict: raises on timeout/I/O error)."""

        return self._query_locked(command)

    def query_safe(self, command: str) -> str:
        """Like query() but returns "" instead of raising."""

        try:
            return self._query_locked(command)
        except InstrumentError:
            return ""

    def query_binary(self, command: str, timeout_override_ms: int = 0) -> bytes:
        """Write then read a definite-length binary block.

        The previous timeout is restored whatever happens.
        """

        self._require_open()
        with self.lock:
            old = self._timeout_ms
            try:
                if timeout_override_ms and timeout_override_ms > 0:
                    self.timeout_ms = int(timeout_override_ms)
                if self.debug:
                    self.log(f">> {command}")
                try:
                    self._send(self._terminated(command))
                    data = self._read_block()
                except Exception as e:
                    raise self._fail(e, f"Binary query failed on '{command}'") from e
                if self.debug:
                    self.log(f"<< <{len(data)} bytes>")
                return data
            finally:
                if self._timeout_ms != old:
                    self.timeout_ms = old
