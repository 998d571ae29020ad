from __future__ import annotations

import argparse
import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from feed_recorder.recorder_types import LIQUIDATION_LOG, TRADE_LOG, LogTarget, Side

_SIDES = {s.value for s in Side}
_FLAGS = {"true", "false"}


@dataclass
class LogReport:
    path: Path
    rows: int = 0
    header_rows: int = 0
    out_of_order: int = 0
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


def _check_row(target: LogTarget, lineno: int, row: list[str], report: LogReport) -> int | None:
    if len(row) != len(target.columns):
        report.problems.append(f"line {lineno}: expected {len(target.columns)} fields, got {len(row)}")
        return None
    ts_raw, side = row[0], row[1]
    try:
        ts = int(ts_raw)
    except ValueError:
        report.problems.append(f"line {lineno}: timestamp {ts_raw!r} is not an integer")
        ts = None
    if side not in _SIDES:
        report.problems.append(f"line {lineno}: direction {side!r} is not Buy/Sell")
    for idx in (2, 3):
        if not row[idx]:
            report.problems.append(f"line {lineno}: empty {target.columns[idx]}")
    if target.name == TRADE_LOG.name and row[4] not in _FLAGS:
        report.problems.append(f"line {lineno}: blocktrade {row[4]!r} is not true/false")
    return ts


def validate_log(path: Path, target: LogTarget) -> LogReport:
    report = LogReport(path=path)
    if not path.exists():
        report.problems.append("file not found")
        return report

    last_ts: int | None = None
    with path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        for lineno, row in enumerate(reader, start=1):
            if not row:
                report.problems.append(f"line {lineno}: empty line")
                continue
            if row == target.columns:
                report.header_rows += 1
                if lineno != 1:
                    report.problems.append(f"line {lineno}: repeated header")
                continue
            if lineno == 1:
                report.problems.append("line 1: header missing")
            report.rows += 1
            ts = _check_row(target, lineno, row, report)
            if ts is not None:
                # Informational: trades are not guaranteed ordered across reconnects.
                if last_ts is not None and ts < last_ts:
                    report.out_of_order += 1
                last_ts = ts
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Validate recorded trade/liquidation logs")
    parser.add_argument("--out-dir", required=True, help="Directory holding trade.csv and liquidation.csv")
    args = parser.parse_args(argv)

    out_dir = Path(args.out_dir)
    failed = False
    for target in (TRADE_LOG, LIQUIDATION_LOG):
        report = validate_log(out_dir / target.name, target)
        print(
            f"{target.name}: rows={report.rows} headers={report.header_rows} "
            f"out_of_order={report.out_of_order} problems={len(report.problems)}"
        )
        for problem in report.problems[:20]:
            print(f"  {problem}")
        failed = failed or not report.ok
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
