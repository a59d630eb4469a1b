#!/usr/bin/env python3
"""scpi_diag.py - talk to one bench instrument from the command line.

Preferred run methods:
  - benchlink-diag          (after install)
  - python -m benchlink.tools.scpi_diag

Examples:
  benchlink-diag --list
  benchlink-diag --serial /dev/ttyUSB0 --query "*IDN?" --query "MEAS?"
  benchlink-diag --visa "USB0::0x2EC7::0x8615::XYZ::INSTR" --load --poll 20 --rate 5 --csv load.csv

All I/O goes through a CommandScheduler, exactly as it does in an
application, so this is also a quick smoke test of the scheduling path.
"""

from __future__ import annotations

import argparse
import math
import threading
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, List, Optional

from rich.console import Console
from rich.table import Table

from .. import __version__, config
from ..acquisition import SAMPLE_HEADER, AcquisitionLoop, Sample
from ..core.diagnostics import CommandLog, LogEvent
from ..core.export import READING_HEADER
from ..devices.electronic_load import ElectronicLoad, Reading
from ..errors import InstrumentConnectionError, InstrumentError, describe
from ..scheduler import CommandScheduler
from ..transport.base import Transport
from ..transport.serial_transport import SerialTransport
from ..transport.visa_transport import VisaTransport, list_resources

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONNECT = 2


def _fmt(v: float) -> str:
    if v is None or (isinstance(v, float) and math.isnan(v)):
        return "-"
    return f"{v:.6g}"


def _readings_table(items: List[object]) -> Table:
    if items and isinstance(items[0], Reading):
        table = Table(title="Readings", header_style="bold cyan")
        for col in READING_HEADER:
            table.add_column(col, justify="right" if col != "timestamp" else "left")
        for r in items:
            assert isinstance(r, Reading)
            table.add_row(
                r.timestamp.strftime("%H:%M:%S.%f")[:-3],
                _fmt(r.vrms),
                _fmt(r.irms),
                _fmt(r.power),
                _fmt(r.pf),
                _fmt(r.cf),
                _fmt(r.freq),
            )
        return table

    table = Table(title="Samples", header_style="bold cyan")
    table.add_column("timestamp")
    table.add_column("value", justify="right")
    table.add_column("raw")
    for s in items:
        assert isinstance(s, Sample)
        table.add_row(s.timestamp.strftime("%H:%M:%S.%f")[:-3], _fmt(s.value), s.raw)
    return table


def _build_transport(args: argparse.Namespace, log_fn: Callable[[str], None]) -> Transport:
    if args.serial:
        return SerialTransport(
            args.serial,
            args.baud,
            line_ending=args.line_ending,
            timeout_ms=args.timeout_ms,
            log_fn=log_fn,
            debug=args.debug,
        )
    return VisaTransport(
        args.visa,
        backend=args.backend,
        line_ending=args.line_ending,
        timeout_ms=args.timeout_ms,
        log_fn=log_fn,
        debug=args.debug,
    )


def _decode_ending(s: Optional[str]) -> Optional[str]:
    if s is None:
        return None
    return config.decode_line_ending(s)


def _poll(
    sched: CommandScheduler,
    *,
    count: int,
    rate_hz: float,
    use_load: bool,
    poll_query: str,
    log_fn: Callable[[str], None],
) -> AcquisitionLoop:
    if use_load:
        load = ElectronicLoad(sched, log_fn=log_fn)
        read_fn: Callable[[], object] = load.read
    else:

        def read_fn() -> object:
            return Sample.from_reply(sched.submit_query(poll_query).result(timeout=10.0))

    done = threading.Event()
    acq: AcquisitionLoop = AcquisitionLoop(read_fn, capacity=max(1, count), log_fn=log_fn)
    acq.subscribe(lambda _item: done.set() if acq.samples >= count else None)

    acq.start(rate_hz)
    # Generous bound: the requested duration twice over, plus slack for slow replies.
    done.wait(timeout=(count / max(rate_hz, 1e-3)) * 2.0 + 5.0)
    acq.stop()
    return acq


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="benchlink-diag", description="SCPI instrument diagnostics")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--list", action="store_true", help="List VISA resources and exit")
    target = ap.add_mutually_exclusive_group()
    target.add_argument("--serial", metavar="PORT", help="Serial port (e.g. /dev/ttyUSB0, COM3)")
    target.add_argument("--visa", metavar="RESOURCE", help="VISA resource string")
    ap.add_argument("--baud", type=int, default=None, help="Serial baud rate")
    ap.add_argument("--backend", default=None, help='PyVISA backend (e.g. "@py")')
    ap.add_argument("--line-ending", default=None, help=r"Line ending: \n, \r\n or \r")
    ap.add_argument("--timeout-ms", type=int, default=None, help="I/O timeout in milliseconds")
    ap.add_argument("--query", action="append", default=[], metavar="CMD", help="Query to send (repeatable)")
    ap.add_argument("--write", action="append", default=[], metavar="CMD", help="Write to send (repeatable)")
    ap.add_argument("--retries", type=int, default=None, help="Retries per command")
    ap.add_argument("--poll", type=int, default=0, metavar="N", help="Collect N samples")
    ap.add_argument("--rate", type=float, default=None, metavar="HZ", help="Polling rate")
    ap.add_argument("--poll-query", default="MEAS?", help="Query used for --poll (without --load)")
    ap.add_argument("--load", action="store_true", help="Poll full electronic-load readings")
    ap.add_argument("--csv", metavar="PATH", help="Export polled samples to CSV")
    ap.add_argument("--log-file", default=None, help="Append the command log to this file")
    ap.add_argument("--debug", action="store_true", help="Trace every command and reply")
    ap.add_argument("-v", "--verbose", action="store_true", help="Print log events as they happen")
    args = ap.parse_args(argv)

    console = Console(highlight=False)
    args.line_ending = _decode_ending(args.line_ending)

    if args.list:
        patterns = [p.strip() for p in str(getattr(config, "VISA_DISCOVERY_PATTERNS", "")).split(",") if p.strip()]
        found = list_resources(patterns or None, args.backend, log_fn=print)
        if not found:
            print("(no VISA resources found)")
        for rid in found:
            print(rid)
        return EXIT_OK

    if not args.serial and not args.visa:
        ap.error("one of --serial, --visa or --list is required")

    cmd_log = CommandLog(path=args.log_file)
    if args.verbose or args.debug:

        def _echo(ev: LogEvent) -> None:
            console.print(ev.format_line(), markup=False)

        cmd_log.subscribe(_echo)

    try:
        transport = _build_transport(args, cmd_log.as_log_fn(source="io"))
    except ValueError as e:
        print(f"Bad arguments: {e}")
        return EXIT_CONNECT

    print(f"Connecting to {transport.describe()}...")
    try:
        transport.connect()
    except InstrumentConnectionError as e:
        print(f"Connection failed: {e}")
        return EXIT_CONNECT
    print(f"State: {transport.state.value}  ID: {transport.identity or '<none>'}")

    rc = EXIT_OK
    with CommandScheduler(
        transport,
        default_retries=args.retries,
        command_log=cmd_log,
        owns_transport=True,
        log_fn=cmd_log.as_log_fn(level="warn", source="sched"),
    ) as sched:
        for cmd in args.write:
            try:
                sched.submit_write(cmd).result(timeout=30.0)
                print(f"{cmd} -> OK")
            except (InstrumentError, FutureTimeout) as e:
                print(f"{cmd} -> error: {describe(e)}")
                rc = EXIT_FAILED

        futures = [(cmd, sched.submit_query(cmd)) for cmd in args.query]
        for cmd, fut in futures:
            try:
                print(f"{cmd} -> {fut.result(timeout=30.0)}")
            except (InstrumentError, FutureTimeout) as e:
                print(f"{cmd} -> error: {describe(e)}")
                rc = EXIT_FAILED

        if args.poll > 0:
            acq = _poll(
                sched,
                count=int(args.poll),
                rate_hz=float(args.rate if args.rate is not None else getattr(config, "ACQ_RATE_HZ", 10.0)),
                use_load=bool(args.load),
                poll_query=str(args.poll_query),
                log_fn=cmd_log.as_log_fn(level="warn", source="acq"),
            )
            items = acq.snapshot()
            console.print(_readings_table(items))
            print(f"{len(items)} samples, {acq.errors} errors")
            if args.csv:
                header = READING_HEADER if args.load else SAMPLE_HEADER
                path = acq.export_csv(args.csv, header=header)
                print(f"Wrote {path}")

    if args.verbose:
        for key, st in cmd_log.health_snapshot().items():
            print(f"{key}: ok={st.get('ok_count', 0)} errors={st.get('error_count', 0)} {st.get('last_error', '')}")

    return rc


if __name__ == "__main__":
    raise SystemExit(main())
