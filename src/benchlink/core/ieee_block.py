"""IEEE 488.2 definite-length binary blocks over a byte stream.

A block looks like `#<n><length><payload>`: `n` is one ASCII digit giving the
number of length digits that follow. `#0` marks an indefinite-length block
terminated by the line ending. VISA drivers decode this themselves; the serial
transport has to do it by hand.
"""

from __future__ import annotations

from typing import Callable

from ..errors import InstrumentTimeoutError, ProtocolError

# Bytes tolerated before the '#' marker (command echo, stray whitespace).
MAX_PREAMBLE_BYTES = 256


def read_block(
    read_exact: Callable[[int], bytes],
    *,
    terminator: bytes = b"\n",
    max_preamble: int = MAX_PREAMBLE_BYTES,
) -> bytes:
    """Read one block using `read_exact(n)`, which returns up to n bytes.

    Raises InstrumentTimeoutError when the stream runs dry and ProtocolError
    when the header is malformed.
    """

    def _take(n: int) -> bytes:
        out = bytearray()
        while len(out) < n:
            chunk = read_exact(n - len(out))
            if not chunk:
                raise InstrumentTimeoutError(f"Binary block truncated ({len(out)}/{n} bytes)")
            out.extend(chunk)
        return bytes(out)

    skipped = 0
    while True:
        b = _take(1)
        if b == b"#":
            break
        skipped += 1
        if skipped > max_preamble:
            raise ProtocolError("No '#' block header found")

    digits_b = _take(1)
    if not digits_b.isdigit():
        raise ProtocolError(f"Bad block header digit {digits_b!r}")
    n_digits = int(digits_b)

    if n_digits == 0:
        # Indefinite length: everything up to the terminator.
        buf = bytearray()
        term = terminator or b"\n"
        while not buf.endswith(term):
            buf.extend(_take(1))
        return bytes(buf[: -len(term)])

    length_b = _take(n_digits)
    if not length_b.isdigit():
        raise ProtocolError(f"Bad block length {length_b!r}")
    return _take(int(length_b))


def parse_block(data: bytes) -> bytes:
    """Decode a complete block held in memory (header + payload)."""

    pos = 0

    def _read(n: int) -> bytes:
        nonlocal pos
        chunk = data[pos : pos + n]
        pos += len(chunk)
        return chunk

    return read_block(_read)


def build_block(payload: bytes) -> bytes:
    """Encode `payload` as a definite-length block."""

    length = str(len(payload)).encode("ascii")
    return b"#" + str(len(length)).encode("ascii") + length + bytes(payload)
