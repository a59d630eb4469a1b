"""CSV export of buffered readings and waveform frames."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, Sequence, Union

READING_HEADER = ("timestamp", "vrms", "irms", "power", "pf", "cf", "freq")


def write_csv(
    path: Union[str, Path],
    header: Sequence[str],
    rows: Iterable[Sequence[object]],
) -> Path:
    """Write `header` then one line per row; returns the resolved path."""

    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(list(header))
        for row in rows:
            writer.writerow(list(row))
    return output
