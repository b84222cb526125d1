from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple


class InvalidBoundsError(ValueError):
    pass


@dataclass(frozen=True)
class Bounds:
    """
    WGS84 viewport rectangle in degrees.

    Convention used throughout this repo:
    - north, south, east, west (map viewport order)
    - north > south and east > west; rectangles crossing the antimeridian are not supported
    """

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        if not self.north > self.south:
            raise InvalidBoundsError(
                f"north ({self.north}) must be greater than south ({self.south})"
            )
        if not self.east > self.west:
            raise InvalidBoundsError(
                f"east ({self.east}) must be greater than west ({self.west})"
            )

    @classmethod
    def from_lon_lat(
        cls, min_lon: float, min_lat: float, max_lon: float, max_lat: float
    ) -> "Bounds":
        return cls(
            north=float(max_lat),
            south=float(min_lat),
            east=float(max_lon),
            west=float(min_lon),
        )

    @property
    def lat_span(self) -> float:
        return self.north - self.south

    @property
    def lon_span(self) -> float:
        return self.east - self.west

    def contains(self, lon: float, lat: float) -> bool:
        return self.west <= lon <= self.east and self.south <= lat <= self.north

    def as_dict(self) -> dict[str, float]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
        }


class RoundedBounds(NamedTuple):
    """
    Hashable, precision-limited form of `Bounds` used only in cache keys.
    """

    north: float
    south: float
    east: float
    west: float
