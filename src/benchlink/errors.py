"""Error taxonomy shared by transports, drivers and the scheduler.

Driver-specific failures (pyvisa status codes, pyserial exceptions) are mapped
into `ErrorKind` at the transport boundary; nothing above the transport needs
to know which library raised.

Each concrete error also derives from the closest builtin, so callers can use
`except TimeoutError` / `except ConnectionError` / `except OSError` as usual.
"""

from __future__ import annotations

import enum
from typing import Optional

import pyvisa
import serial  # pyserial


class ErrorKind(enum.Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    IO = "io"
    PROTOCOL = "protocol"
    QUEUE_FULL = "queue_full"
    DISPOSED = "disposed"


class InstrumentError(Exception):
    kind: ErrorKind = ErrorKind.IO


class InstrumentConnectionError(InstrumentError, ConnectionError):
    """The channel could not be opened."""

    kind = ErrorKind.CONNECTION


class InstrumentTimeoutError(InstrumentError, TimeoutError):
    """The device did not answer within the configured window."""

    kind = ErrorKind.TIMEOUT


class InstrumentIOError(InstrumentError, OSError):
    """Read/write failure other than a timeout."""

    kind = ErrorKind.IO


class ProtocolError(InstrumentError):
    """A readback or identification check did not match."""

    kind = ErrorKind.PROTOCOL


class QueueFullError(InstrumentError):
    kind = ErrorKind.QUEUE_FULL


class DisposedError(InstrumentError):
    """The scheduler is shutting down (or already shut down)."""

    kind = ErrorKind.DISPOSED


def _is_visa_timeout(exc: BaseException) -> bool:
    if not isinstance(exc, pyvisa.errors.VisaIOError):
        return False
    return exc.error_code == pyvisa.constants.StatusCode.error_timeout


def classify(exc: BaseException) -> ErrorKind:
    """Map any exception onto the closed ErrorKind set."""

    if isinstance(exc, InstrumentError):
        return exc.kind
    if _is_visa_timeout(exc):
        return ErrorKind.TIMEOUT
    if isinstance(exc, serial.SerialTimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.CONNECTION
    return ErrorKind.IO


def wrap(exc: BaseException, message: str) -> InstrumentError:
    """Return a typed InstrumentError for `exc` (or `exc` itself if already typed)."""

    if isinstance(exc, InstrumentError):
        return exc
    kind = classify(exc)
    cls: type[InstrumentError]
    if kind is ErrorKind.TIMEOUT:
        cls = InstrumentTimeoutError
    elif kind is ErrorKind.CONNECTION:
        cls = InstrumentConnectionError
    else:
        cls = InstrumentIOError
    return cls(f"{message}: {exc}")


def describe(exc: Optional[BaseException]) -> str:
    if exc is None:
        return ""
    return f"{type(exc).__name__}: {exc}"
