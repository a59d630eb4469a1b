"""Runtime configuration for benchlink.

Every setting below reads a `BENCH_*` environment variable first and falls
back to the bench default shown. Per-station overrides therefore live in an
env file (systemd unit, shell profile) rather than in code.

Parsing rules
- booleans: 1/0, true/false, yes/no, on/off (anything else keeps the default)
- integers: decimal, or hex with a `0x` prefix
- floats: standard Python float format

Nothing here opens ports or touches the filesystem, so importing it is safe
on a machine with no instrument attached.
"""

from __future__ import annotations

import os


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None or v == "" else v


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    s = v.strip().lower()
    try:
        # allow hex like 0x1a
        return int(s, 0)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    s = v.strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return default


def decode_line_ending(s: str) -> str:
    """Accept escaped forms (`\\r\\n`) so env files stay readable."""

    t = (s or "").replace("\\r", "\r").replace("\\n", "\n")
    return t if t in ("\n", "\r\n", "\r") else "\n"


# -----------------------------------------------------------------------------
# Serial (byte-stream) transport
# -----------------------------------------------------------------------------

SERIAL_PORT = _env_str("BENCH_SERIAL_PORT", "/dev/ttyUSB0")
SERIAL_BAUD = _env_int("BENCH_SERIAL_BAUD", 9600)
SERIAL_PARITY = _env_str("BENCH_SERIAL_PARITY", "N").strip().upper()  # N/E/O/M/S
SERIAL_DATA_BITS = _env_int("BENCH_SERIAL_DATA_BITS", 8)
SERIAL_STOP_BITS = _env_int("BENCH_SERIAL_STOP_BITS", 1)  # 1 or 2

# Handshake: "none", "rtscts", "xonxoff", "dsrdtr"
SERIAL_HANDSHAKE = _env_str("BENCH_SERIAL_HANDSHAKE", "none").strip().lower()

SERIAL_LINE_ENDING = decode_line_ending(_env_str("BENCH_SERIAL_LINE_ENDING", "\\n"))

# Short read/write timeouts keep interactive callers responsive.
SERIAL_TIMEOUT_MS = _env_int("BENCH_SERIAL_TIMEOUT_MS", 600)

# Many USB-serial instruments echo commands; read up to this many lines
# looking for the real reply.
SERIAL_READ_LINES = _env_int("BENCH_SERIAL_READ_LINES", 4)

# Baud rates tried (in order) when the identity handshake fails at the
# configured rate. Empty disables the fallback.
SERIAL_BAUD_FALLBACKS = _env_str("BENCH_SERIAL_BAUD_FALLBACKS", "9600,19200,115200")


# -----------------------------------------------------------------------------
# VISA (bus-driver) transport
# -----------------------------------------------------------------------------

# Optional: force a PyVISA backend ("@py" for pyvisa-py). Empty = system VISA.
VISA_BACKEND = _env_str("BENCH_VISA_BACKEND", "")

VISA_RESOURCE = _env_str("BENCH_VISA_RESOURCE", "USB0::0x0699::0x03C4::*::INSTR")

# PyVISA I/O timeout (milliseconds).
VISA_TIMEOUT_MS = _env_int("BENCH_VISA_TIMEOUT_MS", 2000)

VISA_LINE_ENDING = decode_line_ending(_env_str("BENCH_VISA_LINE_ENDING", "\\n"))

# Default patterns for resource discovery (comma-separated).
VISA_DISCOVERY_PATTERNS = _env_str("BENCH_VISA_DISCOVERY_PATTERNS", "USB?*INSTR,TCPIP?*INSTR,ASRL?*INSTR")


# -----------------------------------------------------------------------------
# Command scheduler
# -----------------------------------------------------------------------------

# Capacity of the pending-command queue. Values below the floor are raised.
SCHED_QUEUE_CAPACITY = _env_int("BENCH_SCHED_QUEUE_CAPACITY", 256)
SCHED_QUEUE_FLOOR = 64

# Per-command defaults (0 ms timeout = keep the transport's timeout).
SCHED_DEFAULT_TIMEOUT_MS = _env_int("BENCH_SCHED_DEFAULT_TIMEOUT_MS", 0)
SCHED_DEFAULT_RETRIES = _env_int("BENCH_SCHED_DEFAULT_RETRIES", 1)
SCHED_WAIT_OPC = _env_bool("BENCH_SCHED_WAIT_OPC", False)

# Retry backoff: starts here and doubles up to the cap.
SCHED_BACKOFF_INITIAL_SEC = _env_float("BENCH_SCHED_BACKOFF_INITIAL_SEC", 0.10)
SCHED_BACKOFF_MAX_SEC = _env_float("BENCH_SCHED_BACKOFF_MAX_SEC", 2.0)

# How long an enqueue may block waiting for queue space before eviction.
SCHED_ENQUEUE_WAIT_SEC = _env_float("BENCH_SCHED_ENQUEUE_WAIT_SEC", 0.05)

# Device error-queue drain after each command. Empty query disables it.
SCHED_ERROR_QUERY = _env_str("BENCH_SCHED_ERROR_QUERY", "")
SCHED_ERROR_DRAIN_MAX = _env_int("BENCH_SCHED_ERROR_DRAIN_MAX", 4)

SCHED_OPC_QUERY = _env_str("BENCH_SCHED_OPC_QUERY", "*OPC?")

# Bounded wait for the worker thread on dispose().
SCHED_JOIN_TIMEOUT_SEC = _env_float("BENCH_SCHED_JOIN_TIMEOUT_SEC", 1.0)


# -----------------------------------------------------------------------------
# Acquisition / buffers
# -----------------------------------------------------------------------------

ACQ_RATE_HZ = _env_float("BENCH_ACQ_RATE_HZ", 10.0)

# Floor on the sampling period so a high rate cannot turn into a busy loop.
ACQ_MIN_PERIOD_SEC = _env_float("BENCH_ACQ_MIN_PERIOD_SEC", 0.020)

ACQ_STOP_TIMEOUT_SEC = _env_float("BENCH_ACQ_STOP_TIMEOUT_SEC", 1.0)
ACQ_BUFFER_CAPACITY = _env_int("BENCH_ACQ_BUFFER_CAPACITY", 60000)

WAVEFORM_RING_CAPACITY = _env_int("BENCH_WAVEFORM_RING_CAPACITY", 64)


# -----------------------------------------------------------------------------
# Logging / diagnostics
# -----------------------------------------------------------------------------

LOG_MAX_EVENTS = _env_int("BENCH_LOG_MAX_EVENTS", 250)
LOG_DEDUPE_WINDOW_SEC = _env_float("BENCH_LOG_DEDUPE_WINDOW_SEC", 0.75)

# Optional append-only command log file. Empty disables file output.
LOG_FILE = _env_str("BENCH_LOG_FILE", "")

# Trace every command/reply (">> cmd" / "<< reply") through log_fn.
IO_DEBUG = _env_bool("BENCH_IO_DEBUG", False)


# -----------------------------------------------------------------------------
# Serial watchdog
# -----------------------------------------------------------------------------

# Consecutive timeout-like errors tolerated before the channel is reopened.
WATCHDOG_TIMEOUT_THRESHOLD = _env_int("BENCH_WATCHDOG_TIMEOUT_THRESHOLD", 3)

# Minimum spacing between two reopen attempts.
WATCHDOG_MIN_RESTART_SEC = _env_float("BENCH_WATCHDOG_MIN_RESTART_SEC", 2.0)
