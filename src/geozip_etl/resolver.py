"""geozip_etl.resolver

Upsert resolution for one Region: probe the store by zip, then insert the
full item or update only Center/Outline. Write failures go to the ledger and
never stop the run.

Probe failures (anything other than a clean "not found") follow one of two
policies:

  record  : append a ledger row and skip the write; the zip is retried by a
            later retry_only run (default)
  insert  : treat the failure as "not found" and take the insert path
"""

from __future__ import annotations

import json
import logging
from typing import Any

from geozip_etl.records import Region
from geozip_etl.shared import ErrorLedger, RunCounters
from geozip_etl.store import ProbeError, RegionStore, WriteError

log = logging.getLogger(__name__)

PROBE_FAILURE_POLICIES = ("record", "insert")

# DynamoDB rejects items over 400 KB.
MAX_ITEM_BYTES = 400 * 1024

OUTCOME_INSERTED = "inserted"
OUTCOME_UPDATED = "updated"
OUTCOME_FAILED = "failed"
OUTCOME_WOULD_INSERT = "would_insert"
OUTCOME_WOULD_UPDATE = "would_update"


# ---------------------------------------------------------------------------
# Item builders
# ---------------------------------------------------------------------------

def _outline_points(region: Region) -> list[dict[str, float]]:
    return [{"Lat": lat, "Lng": lng} for lat, lng in region.outline]


def build_region_item(region: Region) -> dict[str, Any]:
    """Full store item for the insert path."""
    return {
        "Zip": region.zip,
        "Center": [region.center[0], region.center[1]],
        "Outline": _outline_points(region),
    }


def build_region_update(region: Region) -> dict[str, Any]:
    """Attributes overwritten on the update path; nothing else is touched."""
    return {
        "Center": [region.center[0], region.center[1]],
        "Outline": _outline_points(region),
    }


def item_size_bytes(item: dict[str, Any]) -> int:
    return len(json.dumps(item, separators=(",", ":")).encode("utf-8"))


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------

def upsert_region(
    store: RegionStore,
    region: Region,
    counter: int,
    ledger: ErrorLedger,
    counters: RunCounters,
    *,
    probe_failure: str = "record",
    dry_run: bool = False,
) -> str:
    """Probe, then insert or update one Region. Returns the outcome name."""
    if probe_failure not in PROBE_FAILURE_POLICIES:
        raise ValueError(f"unknown probe_failure policy {probe_failure!r}")

    try:
        existing = store.get_item(region.zip)
    except ProbeError as exc:
        counters.probe_failures += 1
        if probe_failure == "record":
            log.warning("Probe failed for zip=%s at line %d: %s", region.zip, counter, exc)
            if not dry_run:
                ledger.record(counter, region.zip, f"probe failed: {exc}")
            return OUTCOME_FAILED
        log.warning(
            "Probe failed for zip=%s at line %d (%s); taking insert path.",
            region.zip, counter, exc,
        )
        existing = None

    item = build_region_item(region)
    size = item_size_bytes(item)
    if size > MAX_ITEM_BYTES:
        counters.oversize_items += 1
        counters.warnings.append(
            f"line={counter} zip={region.zip} item size {size / 1024.0:.1f} KB exceeds 400 KB"
        )
        log.warning("zip=%s item is %.1f KB (over 400 KB)", region.zip, size / 1024.0)

    if dry_run:
        if existing is None:
            counters.dry_run_inserts += 1
            return OUTCOME_WOULD_INSERT
        counters.dry_run_updates += 1
        return OUTCOME_WOULD_UPDATE

    if existing is None:
        try:
            store.put_item(item)
        except WriteError as exc:
            log.error("Error inserting zip=%s: %s", region.zip, exc)
            ledger.record(counter, region.zip, exc)
            counters.write_failures += 1
            return OUTCOME_FAILED
        counters.items_inserted += 1
        return OUTCOME_INSERTED

    try:
        store.update_item(region.zip, build_region_update(region))
    except WriteError as exc:
        log.error("Error updating zip=%s: %s", region.zip, exc)
        ledger.record(counter, region.zip, exc)
        counters.write_failures += 1
        return OUTCOME_FAILED
    counters.items_updated += 1
    return OUTCOME_UPDATED
