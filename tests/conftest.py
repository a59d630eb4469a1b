"""Pytest configuration and shared fakes.

The suite runs without hardware: transports are exercised against small
in-memory fakes (FakeSerial / FakeVisaResource in the transport tests, and
the ScriptedTransport below for everything above the transport layer).
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

# Ensure src/ is importable without an editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from benchlink.errors import InstrumentTimeoutError  # noqa: E402
from benchlink.transport.base import Transport  # noqa: E402

Reply = Union[str, List[str], Callable[[], str]]


class ScriptedTransport(Transport):
    """Transport whose channel is a dict of canned replies.

    - `replies[cmd]`: a string (repeatable), a list (consumed in order) or a
      callable. Missing replies time out.
    - `errors[cmd]`: exceptions raised (in order) when `cmd` is sent.
    - `blocks[cmd]`: payload returned for binary queries.
    """

    name = "scripted"

    def __init__(
        self,
        replies: Optional[Dict[str, Reply]] = None,
        *,
        identity: Optional[str] = "ACME,BENCH-1,0001,1.0",
        open_error: Optional[BaseException] = None,
        **kw,
    ) -> None:
        kw.setdefault("log_fn", lambda _m: None)
        super().__init__(**kw)
        self.replies: Dict[str, Reply] = dict(replies or {})
        if identity is not None:
            self.replies.setdefault(self.identity_query, identity)
        self.errors: Dict[str, List[BaseException]] = {}
        self.blocks: Dict[str, bytes] = {}
        self.sent: List[str] = []
        self.timeouts: List[int] = []
        self.clears = 0
        self.open_error = open_error
        self._is_open = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    def _open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self._is_open = True

    def _close(self) -> None:
        self._is_open = False

    def _apply_timeout(self, timeout_ms: int) -> None:
        self.timeouts.append(int(timeout_ms))

    def _clear_channel(self) -> None:
        self.clears += 1

    def _send(self, command: str) -> None:
        cmd = command.rstrip("\r\n")
        self.sent.append(cmd)
        errs = self.errors.get(cmd)
        if errs:
            raise errs.pop(0)

    def _read_reply(self, command: str) -> str:
        r = self.replies.get(command.strip())
        if callable(r):
            return r()
        if isinstance(r, list):
            if not r:
                raise InstrumentTimeoutError(f"no scripted reply left for {command!r}")
            return r.pop(0)
        if r is None:
            raise InstrumentTimeoutError(f"no scripted reply for {command!r}")
        return r

    def _read_block(self) -> bytes:
        return self.blocks[self.sent[-1]]


@pytest.fixture
def scripted() -> Callable[..., ScriptedTransport]:
    """Factory: scripted(replies, connect=True, **kw) -> ScriptedTransport."""

    def _make(replies: Optional[Dict[str, Reply]] = None, *, connect: bool = True, **kw) -> ScriptedTransport:
        t = ScriptedTransport(replies, **kw)
        if connect:
            t.connect()
        return t

    return _make
