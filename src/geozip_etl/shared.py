"""geozip_etl.shared

Shared pieces of the ingestion run: the failure ledger (writer and
retry-filter reader), RunCounters, and report-writing support.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from geozip_etl.normalize import parse_zip, sanitize_ledger_message, trim

log = logging.getLogger(__name__)

LEDGER_HEADER = ("Counter", "Zip", "Error")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FileOpenError(Exception):
    """Raised when a required input or ledger file cannot be opened."""

    def __init__(self, path: Path, reason: object) -> None:
        self.path = path
        super().__init__(f"cannot open {path}: {reason}")


# ---------------------------------------------------------------------------
# ErrorLedger
# ---------------------------------------------------------------------------

class ErrorLedger:
    """Append-only CSV ledger of failed record attempts.

    Opened eagerly so an unwritable path fails the run before any record is
    touched. Rows are flushed one at a time; a killed process keeps every row
    written before it died.
    """

    def __init__(self, path: Path, append: bool = False) -> None:
        self._path = path
        self._rows_written = 0
        write_header = True
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if append and self._path.exists() and self._path.stat().st_size > 0:
                write_header = False
            self._fh = open(
                self._path, "a" if append else "w", newline="", encoding="utf-8"
            )
        except OSError as exc:
            raise FileOpenError(path, exc) from exc
        # Messages are sanitized, so no field ever needs quoting.
        self._writer = csv.writer(
            self._fh, quoting=csv.QUOTE_NONE, quotechar=None, lineterminator="\n"
        )
        if write_header:
            self._writer.writerow(LEDGER_HEADER)
            self._fh.flush()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def rows_written(self) -> int:
        return self._rows_written

    def record(self, counter: int, zip_code: int | None, message: object) -> None:
        zip_cell = "" if zip_code is None else str(zip_code)
        self._writer.writerow((counter, zip_cell, sanitize_ledger_message(message)))
        self._fh.flush()
        self._rows_written += 1

    def close(self) -> None:
        if not self._fh.closed:
            self._fh.close()

    def __enter__(self) -> ErrorLedger:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def load_failed_zips(path: Path) -> set[int]:
    """Return the zip ids recorded in a prior run's ledger.

    The header row and rows without a usable Zip (e.g. decode failures whose
    zip was unreadable) are ignored.
    """
    zips: set[int] = set()
    try:
        fh = open(path, newline="", encoding="utf-8")
    except OSError as exc:
        raise FileOpenError(path, exc) from exc
    with fh:
        for line_no, fields in enumerate(csv.reader(fh)):
            if len(fields) < 2:
                continue
            if line_no == 0 and tuple(f.strip() for f in fields[:3]) == LEDGER_HEADER:
                continue
            zip_code = parse_zip(trim(fields[1]))
            if zip_code is None:
                log.debug("Ledger %s line %d has no usable zip; ignored.", path, line_no)
                continue
            zips.add(zip_code)
    return zips


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    lines_read: int = 0
    rows_skipped_cursor: int = 0
    rows_skipped_filter: int = 0
    rows_processed: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    write_failures: int = 0
    probe_failures: int = 0
    malformed_rows: int = 0
    oversize_items: int = 0
    dry_run_inserts: int = 0
    dry_run_updates: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(UTC).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
