"""geozip_etl.records

Record decoder for newline-delimited postal-code boundary files.

Producers have emitted two shapes over time:

  {"zip": 10001, "centerLat": 40.75, "centerLng": -73.99,
   "outline": [{"lat": 40.7, "lng": -74.0}, ...]}

  {"zip": 10001, "center": [40.75, -73.99],
   "outline": [[40.7, -74.0], ...]}

Both decode into the same canonical Region. Outline order is kept exactly as
read; duplicate points (e.g. a closing point equal to the first) are kept.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from geozip_etl.normalize import parse_coordinate, parse_zip

Point = tuple[float, float]


class MalformedRecordError(Exception):
    """Raised when an input line does not decode into a Region record."""

    def __init__(self, reason: str, zip_code: int | None = None) -> None:
        self.reason = reason
        self.zip_code = zip_code
        super().__init__(reason)


@dataclass(frozen=True)
class Region:
    zip: int
    center: Point
    outline: tuple[Point, ...] = ()


# ---------------------------------------------------------------------------
# Point helpers
# ---------------------------------------------------------------------------

def _decode_point(raw: Any, where: str, zip_code: int | None) -> Point:
    """Accept {"lat", "lng"} objects or [lat, lng] pairs."""
    if isinstance(raw, dict):
        lat_raw, lng_raw = raw.get("lat"), raw.get("lng")
    elif isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat_raw, lng_raw = raw
    else:
        raise MalformedRecordError(f"{where}: expected point, got {raw!r}", zip_code)
    lat = parse_coordinate(lat_raw)
    lng = parse_coordinate(lng_raw)
    if lat is None or lng is None:
        raise MalformedRecordError(
            f"{where}: invalid coordinates lat={lat_raw!r} lng={lng_raw!r}", zip_code
        )
    return (lat, lng)


def _decode_center(obj: dict[str, Any], zip_code: int) -> Point:
    if "centerLat" in obj or "centerLng" in obj:
        return _decode_point(
            {"lat": obj.get("centerLat"), "lng": obj.get("centerLng")},
            "center",
            zip_code,
        )
    if obj.get("center") is not None:
        return _decode_point(obj["center"], "center", zip_code)
    raise MalformedRecordError("missing center", zip_code)


def _decode_outline(raw: Any, zip_code: int) -> tuple[Point, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedRecordError(f"outline: expected list, got {type(raw).__name__}", zip_code)
    return tuple(
        _decode_point(p, f"outline[{i}]", zip_code) for i, p in enumerate(raw)
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def decode_region(obj: Any) -> Region:
    """Build a Region from an already-parsed JSON value."""
    if not isinstance(obj, dict):
        raise MalformedRecordError(f"expected JSON object, got {type(obj).__name__}")
    if "zip" not in obj:
        raise MalformedRecordError("missing zip")
    zip_code = parse_zip(obj["zip"])
    if zip_code is None:
        raise MalformedRecordError(f"invalid zip {obj['zip']!r}")
    return Region(
        zip=zip_code,
        center=_decode_center(obj, zip_code),
        outline=_decode_outline(obj.get("outline"), zip_code),
    )


def decode_region_line(line: str | bytes) -> Region:
    """Parse one input line into a Region.

    Raises MalformedRecordError on invalid JSON or an unexpected shape.
    """
    try:
        obj = json.loads(line)
    except ValueError as exc:
        raise MalformedRecordError(f"invalid JSON: {exc}") from exc
    return decode_region(obj)
