"""Timed setpoint sequences for the electronic load."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .devices.electronic_load import FUNCTIONS, ElectronicLoad

MIN_DURATION_MS = 5
MAX_REPEAT = 1000


@dataclass
class SequenceStep:
    index: int = 0
    duration_ms: int = 1000
    ac_dc: str = "AC"
    function: str = "CURR"
    setpoint: float = 1.0
    pf: float = 1.0
    cf: float = 1.41
    repeat: int = 1
    note: str = ""


def preflight(steps: Sequence[SequenceStep]) -> List[str]:
    """Return a list of human-readable problems (empty = OK to run)."""

    issues: List[str] = []
    if not steps:
        issues.append("No steps.")
        return issues
    for i, st in enumerate(steps, start=1):
        if st.duration_ms < MIN_DURATION_MS:
            issues.append(f"Step {i}: duration too small.")
        if st.ac_dc not in ("AC", "DC"):
            issues.append(f"Step {i}: AC/DC invalid.")
        if st.function not in FUNCTIONS:
            issues.append(f"Step {i}: function invalid.")
        if st.repeat < 1 or st.repeat > MAX_REPEAT:
            issues.append(f"Step {i}: repeat out of range.")
    return issues


def run_sequence(
    steps: Sequence[SequenceStep],
    load: Optional[ElectronicLoad],
    *,
    stop_event: Optional[threading.Event] = None,
    loop: bool = False,
    log_fn: Callable[[str], None] = print,
) -> bool:
    """Apply each step, hold it for its duration, then disable the input.

    Returns True when the sequence ran to completion, False when
    `stop_event` interrupted it. The input is switched off either way.
    Raises ValueError if preflight fails.
    """

    if load is None:
        raise ValueError("Instrument not connected.")
    issues = preflight(steps)
    if issues:
        raise ValueError("Preflight failed: " + "; ".join(issues))

    stop = stop_event if stop_event is not None else threading.Event()
    log_fn(f"SEQ start: {len(steps)} steps, loop={loop}")
    completed = False
    try:
        while True:
            for st in steps:
                for rep in range(st.repeat):
                    if stop.is_set():
                        return False
                    load.set_ac_dc(st.ac_dc == "AC")
                    load.set_function(st.function)
                    load.set_pf_cf(st.pf, st.cf)
                    load.set_setpoint(st.setpoint)
                    load.enable_input(True)
                    log_fn(
                        f"STEP {st.index} rep {rep + 1}: {st.ac_dc}/{st.function} "
                        f"set={st.setpoint} PF={st.pf} CF={st.cf} note={st.note}"
                    )
                    if stop.wait(st.duration_ms / 1000.0):
                        return False
            if not loop or stop.is_set():
                break
        completed = True
        return True
    finally:
        load.enable_input(False)
        log_fn("SEQ done." if completed else "SEQ stopped.")
