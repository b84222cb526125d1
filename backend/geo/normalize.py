from __future__ import annotations

import math
from decimal import ROUND_DOWN, Decimal

from geo.bounds import Bounds, RoundedBounds


def normalize(raw: Bounds, buffer_factor: float) -> Bounds:
    """
    Expand the visible viewport symmetrically so that entities just off-screen
    are already fetched before they scroll into view.

    buffer_factor=1.2 means the buffered rectangle spans 1.2x the raw span on both axes.
    """
    f = float(buffer_factor)
    if not f > 1.0:
        raise ValueError(f"buffer_factor must be > 1.0, got {buffer_factor!r}")

    lat_buffer = raw.lat_span * (f - 1.0) / 2.0
    lon_buffer = raw.lon_span * (f - 1.0) / 2.0
    return Bounds(
        north=raw.north + lat_buffer,
        south=raw.south - lat_buffer,
        east=raw.east + lon_buffer,
        west=raw.west - lon_buffer,
    )


def _truncate(value: float, decimals: int) -> float:
    # Decimal(repr(...)) avoids binary artefacts like 59.1 -> 59.0999.
    quantum = Decimal(1).scaleb(-int(decimals))
    return float(Decimal(repr(float(value))).quantize(quantum, rounding=ROUND_DOWN))


def round_for_key(bounds: Bounds, decimals: int = 4) -> RoundedBounds:
    """
    Truncate each edge for cache-key stability.

    decimals=4 is ~11m in latitude: viewports closer than that collapse to one cache entry.
    Fetches still use the full-precision bounds.
    """
    return RoundedBounds(
        north=_truncate(bounds.north, decimals),
        south=_truncate(bounds.south, decimals),
        east=_truncate(bounds.east, decimals),
        west=_truncate(bounds.west, decimals),
    )


def zoom_bucket(zoom: float) -> int:
    return int(math.floor(float(zoom)))


def has_moved(new: Bounds, old: Bounds | None, threshold: float = 0.3) -> bool:
    """
    Edge-based significance test.

    Only the north and east edges are compared (against the new rectangle's spans), so
    directional panning refetches eagerly while small jitter is tolerated.
    """
    if old is None:
        return True
    lat_diff = abs(new.north - old.north)
    lon_diff = abs(new.east - old.east)
    return lat_diff > new.lat_span * threshold or lon_diff > new.lon_span * threshold
