"""Single-worker command scheduler for one physical instrument channel.

Many threads want the instrument at once: an acquisition loop polling a
reading, a user clicking "set range", a waveform fetch. The channel itself
does not tolerate interleaved I/O, so all of them enqueue here and one
dedicated worker thread executes the commands strictly one at a time.

Per command the worker:
  - overrides the transport timeout (if the command asks for one)
  - performs the write / query / binary query
  - optionally waits for operation complete (*OPC?)
  - optionally drains a few entries of the device error queue
  - restores the timeout, whatever happened
and retries with a doubling, capped backoff until `retries + 1` attempts
have been made. Results go to the caller's callback or Future; nothing
raised while executing a command ever leaves the worker.

Queue policy: bounded FIFO. When full, the oldest pure write (first one found
in queue order) is evicted to make room; queries are never evicted. An
evicted command fails with QueueFullError so its caller is not left waiting.
"""

from __future__ import annotations

import enum
import threading
from collections import deque
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional

from . import config
from .core.diagnostics import CommandLog
from .errors import DisposedError, InstrumentError, QueueFullError
from .transport.base import Transport


class CommandKind(enum.Enum):
    WRITE = "write"
    QUERY = "query"
    QUERY_BINARY = "query_binary"


SuccessSink = Callable[[Any], None]
ErrorSink = Callable[[BaseException], None]


@dataclass(eq=False)
class ScheduledCommand:
    """One unit of work. Consumed exactly once by the worker."""

    command: str
    kind: CommandKind
    timeout_ms: int = 0
    retries: int = 1
    wait_opc: bool = False
    on_success: Optional[SuccessSink] = None
    on_error: Optional[ErrorSink] = None
    future: Optional[Future] = None
    attempts: int = 0
    _settled: bool = field(default=False, repr=False)
    _settle_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_write(self) -> bool:
        return self.kind is CommandKind.WRITE

    @property
    def settled(self) -> bool:
        return self._settled

    def _claim(self) -> bool:
        with self._settle_lock:
            if self._settled:
                return False
            self._settled = True
            return True

    def succeed(self, value: Any, log_fn: Callable[[str], None] = print) -> None:
        if not self._claim():
            return
        if self.future is not None:
            try:
                self.future.set_result(value)
            except InvalidStateError:
                pass
        if self.on_success is not None:
            try:
                self.on_success(value)
            except Exception as e:
                log_fn(f"sink error for '{self.command}': {e}")

    def fail(self, exc: BaseException, log_fn: Callable[[str], None] = print) -> None:
        if not self._claim():
            return
        if self.future is not None:
            try:
                self.future.set_exception(exc)
            except InvalidStateError:
                pass
        if self.on_error is not None:
            try:
                self.on_error(exc)
            except Exception as e:
                log_fn(f"error sink failed for '{self.command}': {e}")


class CommandScheduler:
    """Bounded FIFO of ScheduledCommand consumed by one worker thread."""

    def __init__(
        self,
        transport: Transport,
        *,
        capacity: Optional[int] = None,
        min_capacity: Optional[int] = None,
        default_timeout_ms: Optional[int] = None,
        default_retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
        opc_query: Optional[str] = None,
        error_query: Optional[str] = None,
        error_drain_max: Optional[int] = None,
        backoff_initial_s: Optional[float] = None,
        backoff_max_s: Optional[float] = None,
        enqueue_wait_s: Optional[float] = None,
        join_timeout_s: Optional[float] = None,
        command_log: Optional[CommandLog] = None,
        owns_transport: bool = False,
        log_fn: Callable[[str], None] = print,
        name: str = "sched",
        start: bool = True,
    ) -> None:
        if transport is None:
            raise ValueError("transport is required")
        self.transport = transport
        self.log = log_fn
        self.name = name

        floor = int(min_capacity if min_capacity is not None else getattr(config, "SCHED_QUEUE_FLOOR", 64))
        cap = int(capacity if capacity is not None else getattr(config, "SCHED_QUEUE_CAPACITY", 256))
        self.capacity = max(max(1, floor), cap)

        self.default_timeout_ms = int(
            default_timeout_ms if default_timeout_ms is not None else getattr(config, "SCHED_DEFAULT_TIMEOUT_MS", 0)
        )
        self.default_retries = max(
            0, int(default_retries if default_retries is not None else getattr(config, "SCHED_DEFAULT_RETRIES", 1))
        )
        self.default_wait_opc = bool(wait_opc if wait_opc is not None else getattr(config, "SCHED_WAIT_OPC", False))
        self.opc_query = str(opc_query if opc_query is not None else getattr(config, "SCHED_OPC_QUERY", "*OPC?"))
        self.error_query = str(error_query if error_query is not None else getattr(config, "SCHED_ERROR_QUERY", "") or "")
        self.error_drain_max = max(
            0, int(error_drain_max if error_drain_max is not None else getattr(config, "SCHED_ERROR_DRAIN_MAX", 4))
        )
        self.backoff_initial_s = float(
            backoff_initial_s if backoff_initial_s is not None else getattr(config, "SCHED_BACKOFF_INITIAL_SEC", 0.10)
        )
        self.backoff_max_s = float(
            backoff_max_s if backoff_max_s is not None else getattr(config, "SCHED_BACKOFF_MAX_SEC", 2.0)
        )
        self.enqueue_wait_s = float(
            enqueue_wait_s if enqueue_wait_s is not None else getattr(config, "SCHED_ENQUEUE_WAIT_SEC", 0.05)
        )
        self.join_timeout_s = float(
            join_timeout_s if join_timeout_s is not None else getattr(config, "SCHED_JOIN_TIMEOUT_SEC", 1.0)
        )
        self.command_log = command_log
        self.owns_transport = bool(owns_transport)

        self._cond = threading.Condition(threading.Lock())
        self._queue: Deque[ScheduledCommand] = deque()
        self._cancel = threading.Event()
        self._disposed = False
        self._worker: Optional[threading.Thread] = None

        if start:
            self.start()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread (no-op if already running)."""

        with self._cond:
            if self._disposed:
                raise DisposedError(f"{self.name} is disposed")
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name=f"{self.name}-worker", daemon=True)
            self._worker.start()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Stop accepting work, fail everything still queued, join the worker.

        Every queued caller is resolved with DisposedError before this returns.
        """

        with self._cond:
            if self._disposed:
                return
            self._disposed = True
            self._cancel.set()
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()

        for sc in pending:
            sc.fail(DisposedError(f"{self.name} disposed before '{sc.command}' ran"), self.log)

        w = self._worker
        if w is not None and w is not threading.current_thread():
            w.join(timeout=self.join_timeout_s)
            if w.is_alive():
                self.log(f"{self.name}: worker did not stop within {self.join_timeout_s:.1f}s")

        if self.owns_transport:
            self.transport.disconnect()

    def close(self) -> None:
        self.dispose()

    def __enter__(self) -> "CommandScheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending(self) -> List[ScheduledCommand]:
        """Snapshot of queued (not yet started) commands, in execution order."""

        with self._cond:
            return list(self._queue)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def _make(
        self,
        command: str,
        kind: CommandKind,
        *,
        timeout_ms: Optional[int],
        retries: Optional[int],
        wait_opc: Optional[bool],
        on_success: Optional[SuccessSink],
        on_error: Optional[ErrorSink],
        future: Optional[Future] = None,
    ) -> ScheduledCommand:
        return ScheduledCommand(
            command=str(command),
            kind=kind,
            timeout_ms=int(self.default_timeout_ms if timeout_ms is None else timeout_ms),
            retries=max(0, int(self.default_retries if retries is None else retries)),
            wait_opc=bool(self.default_wait_opc if wait_opc is None else wait_opc),
            on_success=on_success,
            on_error=on_error,
            future=future,
        )

    def _evict_oldest_write_locked(self) -> Optional[ScheduledCommand]:
        for i, sc in enumerate(self._queue):
            if sc.is_write:
                del self._queue[i]
                return sc
        return None

    def enqueue(self, sc: ScheduledCommand) -> bool:
        """Queue `sc`. Returns False if it was rejected (its sinks already fired)."""

        evicted: Optional[ScheduledCommand] = None
        with self._cond:
            if self._disposed:
                rejected: BaseException = DisposedError(f"{self.name} is disposed")
            else:
                if len(self._queue) >= self.capacity and self.enqueue_wait_s > 0:
                    self._cond.wait_for(
                        lambda: self._disposed or len(self._queue) < self.capacity,
                        timeout=self.enqueue_wait_s,
                    )
                if self._disposed:
                    rejected = DisposedError(f"{self.name} is disposed")
                elif len(self._queue) < self.capacity:
                    self._queue.append(sc)
                    self._cond.notify_all()
                    return True
                else:
                    evicted = self._evict_oldest_write_locked()
                    if evicted is not None:
                        self._queue.append(sc)
                        self._cond.notify_all()
                    rejected = QueueFullError(f"{self.name} queue full ({self.capacity})")

        if evicted is not None:
            self.log(f"{self.name}: queue full, dropped write '{evicted.command}'")
            evicted.fail(QueueFullError(f"'{evicted.command}' evicted: {self.name} queue full"), self.log)
            return True

        sc.fail(rejected, self.log)
        return False

    def enqueue_write(
        self,
        command: str,
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
        on_done: Optional[Callable[[], None]] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> bool:
        sink = (lambda _v: on_done()) if on_done is not None else None
        return self.enqueue(
            self._make(
                command,
                CommandKind.WRITE,
                timeout_ms=timeout_ms,
                retries=retries,
                wait_opc=wait_opc,
                on_success=sink,
                on_error=on_error,
            )
        )

    def enqueue_query(
        self,
        command: str,
        on_reply: Callable[[str], None],
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> bool:
        return self.enqueue(
            self._make(
                command,
                CommandKind.QUERY,
                timeout_ms=timeout_ms,
                retries=retries,
                wait_opc=wait_opc,
                on_success=on_reply,
                on_error=on_error,
            )
        )

    def enqueue_query_binary(
        self,
        command: str,
        on_reply: Callable[[bytes], None],
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> bool:
        return self.enqueue(
            self._make(
                command,
                CommandKind.QUERY_BINARY,
                timeout_ms=timeout_ms,
                retries=retries,
                wait_opc=wait_opc,
                on_success=on_reply,
                on_error=on_error,
            )
        )

    def _submit(self, command: str, kind: CommandKind, **kw: Any) -> Future:
        fut: Future = Future()
        self.enqueue(self._make(command, kind, on_success=None, on_error=None, future=fut, **kw))
        return fut

    def submit_write(
        self,
        command: str,
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
    ) -> Future:
        """Future-returning variant of enqueue_write (result is None)."""

        return self._submit(command, CommandKind.WRITE, timeout_ms=timeout_ms, retries=retries, wait_opc=wait_opc)

    def submit_query(
        self,
        command: str,
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
    ) -> Future:
        return self._submit(command, CommandKind.QUERY, timeout_ms=timeout_ms, retries=retries, wait_opc=wait_opc)

    def submit_query_binary(
        self,
        command: str,
        *,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        wait_opc: Optional[bool] = None,
    ) -> Future:
        return self._submit(
            command, CommandKind.QUERY_BINARY, timeout_ms=timeout_ms, retries=retries, wait_opc=wait_opc
        )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _next(self) -> Optional[ScheduledCommand]:
        with self._cond:
            while not self._queue and not self._cancel.is_set():
                self._cond.wait(timeout=0.25)
            if self._cancel.is_set():
                return None
            sc = self._queue.popleft()
            self._cond.notify_all()
            return sc

    def _run(self) -> None:
        while True:
            sc = self._next()
            if sc is None:
                return
            if sc.future is not None and sc.future.cancelled():
                continue
            try:
                self._execute(sc)
            except Exception as e:
                # Only reachable through a bug in a sink wrapper; keep the worker alive.
                self.log(f"{self.name}: worker error on '{sc.command}': {e}")
                sc.fail(e, self.log)

    def _execute(self, sc: ScheduledCommand) -> None:
        key = self.transport.describe()
        backoff = max(0.0, self.backoff_initial_s)
        last: Optional[BaseException] = None

        while sc.attempts <= sc.retries:
            if self._cancel.is_set():
                break
            sc.attempts += 1
            try:
                result = self._attempt(sc)
            except Exception as e:
                last = e
                self.log(f"{self.name}: '{sc.command}' attempt {sc.attempts}/{sc.retries + 1} failed: {e}")
                if self.command_log is not None:
                    self.command_log.mark_error(key, e, where=sc.command)
                bump = getattr(self.transport, "watchdog_bump", None)
                if bump is not None:
                    try:
                        bump(e)
                    except Exception:
                        pass
                if sc.attempts > sc.retries:
                    break
                # Wait on the cancel event so dispose() aborts the backoff.
                if self._cancel.wait(backoff):
                    break
                backoff = min(self.backoff_max_s, backoff * 2.0)
                continue

            if self.command_log is not None:
                self.command_log.mark_ok(key)
            reset = getattr(self.transport, "watchdog_reset", None)
            if reset is not None:
                reset()
            sc.succeed(result, self.log)
            return

        if self._cancel.is_set() and (last is None or sc.attempts <= sc.retries):
            err: BaseException = DisposedError(f"{self.name} disposed while running '{sc.command}'")
            if last is not None:
                err.__cause__ = last
            sc.fail(err, self.log)
            return
        sc.fail(last if last is not None else InstrumentError(f"'{sc.command}' not executed"), self.log)

    def _attempt(self, sc: ScheduledCommand) -> Any:
        t = self.transport
        with t.lock:
            old = t.timeout_ms
            override = sc.timeout_ms > 0 and sc.timeout_ms != old
            try:
                if override:
                    t.timeout_ms = sc.timeout_ms
                if sc.kind is CommandKind.QUERY:
                    result: Any = t.query(sc.command)
                elif sc.kind is CommandKind.QUERY_BINARY:
                    result = t.query_binary(sc.command)
                else:
                    t.write(sc.command)
                    result = None
                if sc.wait_opc and self.opc_query:
                    t.query(self.opc_query)
                self._drain_error_queue()
                return result
            finally:
                if override:
                    t.timeout_ms = old

    def _drain_error_queue(self) -> None:
        if not self.error_query or self.error_drain_max <= 0:
            return
        for _ in range(self.error_drain_max):
            try:
                ev = self.transport.query(self.error_query).strip()
            except InstrumentError:
                return
            low = ev.lower()
            if not ev or ev.startswith("0") or ev.startswith("+0") or "no error" in low or "no events" in low:
                return
            self.log(f"{self.name}: device error: {ev}")

