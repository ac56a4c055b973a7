"""Slippy-map tile math: coordinates, bounding boxes and tile URLs."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple

from ..settings import DEFAULT_TILE_URL_TEMPLATE

KM_PER_DEGREE_LATITUDE = 111.0
MAX_ZOOM = 22


class InvalidCoordinate(ValueError):
    """Raised when a latitude, longitude or zoom lies outside the projection domain."""


@dataclass(frozen=True)
class TilePoint:
    x: int
    y: int
    z: int


@dataclass(frozen=True)
class BoundingBox:
    """Geographic extremes in degrees.

    ``west > east`` describes a box crossing the antimeridian.
    """

    north: float
    south: float
    east: float
    west: float

    def __post_init__(self) -> None:
        for value in (self.north, self.south, self.east, self.west):
            if not math.isfinite(value):
                raise InvalidCoordinate("Bounding box edges must be finite numbers.")
        if self.north <= self.south:
            raise InvalidCoordinate("North latitude must be greater than south latitude.")
        if self.north > 90.0 or self.south < -90.0:
            raise InvalidCoordinate("Latitudes must be within -90 and 90 degrees.")
        if not (-180.0 <= self.west <= 180.0 and -180.0 <= self.east <= 180.0):
            raise InvalidCoordinate("Longitudes must be within -180 and 180 degrees.")

    @property
    def crosses_antimeridian(self) -> bool:
        return self.west > self.east


def tile_for(lat: float, lon: float, zoom: int) -> TilePoint:
    """Return the tile containing ``(lat, lon)`` at ``zoom``."""

    _validate_zoom(zoom)
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinate("Coordinates must be finite numbers.")
    if lat <= -90.0 or lat >= 90.0:
        raise InvalidCoordinate(
            f"Latitude {lat} is outside the Web-Mercator domain (-90, 90) exclusive."
        )
    if lon < -180.0 or lon > 180.0:
        raise InvalidCoordinate(f"Longitude {lon} must be within -180 and 180 degrees.")

    scale = 2 ** zoom
    lat_rad = lat * math.pi / 180.0
    x = math.floor((lon + 180.0) / 360.0 * scale)
    y = math.floor(
        (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * scale
    )
    # lon == 180 lands one column past the edge of the grid
    x = min(x, scale - 1)
    return TilePoint(x=x, y=y, z=zoom)


def tile_url(point: TilePoint, template: str = DEFAULT_TILE_URL_TEMPLATE) -> str:
    """Substitute a tile into the provider template (path order is z/y/x)."""

    return (
        template.replace("{z}", str(point.z))
        .replace("{y}", str(point.y))
        .replace("{x}", str(point.x))
    )


def tiles_in_bounding_box(
    box: BoundingBox,
    zoom_levels: Iterable[int],
    template: str = DEFAULT_TILE_URL_TEMPLATE,
) -> List[str]:
    """Every tile URL covering ``box``, ordered by zoom, then x, then y."""

    return [tile_url(point, template) for point in iter_tiles(box, zoom_levels)]


def iter_tiles(box: BoundingBox, zoom_levels: Iterable[int]) -> Iterator[TilePoint]:
    for zoom in sorted(set(zoom_levels)):
        columns, (y_min, y_max) = _tile_span(box, zoom)
        for x in columns:
            for y in range(y_min, y_max + 1):
                yield TilePoint(x=x, y=y, z=zoom)


def tile_count(box: BoundingBox, zoom_levels: Iterable[int]) -> int:
    """Number of tiles :func:`tiles_in_bounding_box` would return."""

    total = 0
    for zoom in sorted(set(zoom_levels)):
        columns, (y_min, y_max) = _tile_span(box, zoom)
        total += len(columns) * (y_max - y_min + 1)
    return total


def bounding_box_around(center_lat: float, center_lon: float, radius_km: float) -> BoundingBox:
    """Approximate a square box of ``radius_km`` around a point."""

    if not (math.isfinite(center_lat) and math.isfinite(center_lon)):
        raise InvalidCoordinate("Coordinates must be finite numbers.")
    if center_lat <= -90.0 or center_lat >= 90.0:
        raise InvalidCoordinate(
            f"Cannot build a box around latitude {center_lat}: longitude offset is unbounded."
        )
    if center_lon < -180.0 or center_lon > 180.0:
        raise InvalidCoordinate(f"Longitude {center_lon} must be within -180 and 180 degrees.")
    if not math.isfinite(radius_km) or radius_km <= 0:
        raise InvalidCoordinate(f"Radius must be a positive number of kilometres, got {radius_km}.")

    lat_offset = radius_km / KM_PER_DEGREE_LATITUDE
    lon_offset = radius_km / (KM_PER_DEGREE_LATITUDE * math.cos(center_lat * math.pi / 180.0))
    if lon_offset >= 180.0:
        west, east = -180.0, 180.0
    else:
        west = _wrap_longitude(center_lon - lon_offset)
        east = _wrap_longitude(center_lon + lon_offset)

    return BoundingBox(
        north=min(center_lat + lat_offset, 90.0),
        south=max(center_lat - lat_offset, -90.0),
        east=east,
        west=west,
    )


def visible_tile_urls(
    box: BoundingBox, zoom: int, template: str = DEFAULT_TILE_URL_TEMPLATE
) -> List[str]:
    """Tile URLs a map viewport showing ``box`` at ``zoom`` would request."""

    return tiles_in_bounding_box(box, [zoom], template)


def zoom_range(min_zoom: int, max_zoom: int) -> List[int]:
    _validate_zoom(min_zoom)
    _validate_zoom(max_zoom)
    if min_zoom > max_zoom:
        raise InvalidCoordinate("Minimum zoom must not exceed maximum zoom.")
    return list(range(min_zoom, max_zoom + 1))


def _tile_span(box: BoundingBox, zoom: int) -> Tuple[Sequence[int], Tuple[int, int]]:
    scale = 2 ** zoom
    north = _clamp_latitude(box.north)
    south = _clamp_latitude(box.south)

    north_west = tile_for(north, box.west, zoom)
    south_east = tile_for(south, box.east, zoom)

    y_min = _clamp(min(north_west.y, south_east.y), 0, scale - 1)
    y_max = _clamp(max(north_west.y, south_east.y), 0, scale - 1)

    if box.crosses_antimeridian and north_west.x <= south_east.x:
        # both halves meet at this zoom, so the box spans every column
        columns: Sequence[int] = range(scale)
    elif box.crosses_antimeridian:
        columns = list(range(north_west.x, scale)) + list(range(0, south_east.x + 1))
    else:
        columns = range(north_west.x, south_east.x + 1)
    return columns, (y_min, y_max)


def _clamp_latitude(lat: float) -> float:
    # Poles are singular; the nearest representable latitude lands in the edge row.
    limit = 89.999999
    return _clamp(lat, -limit, limit)


def _clamp(value, minimum, maximum):
    return max(min(value, maximum), minimum)


def _wrap_longitude(lon: float) -> float:
    if lon > 180.0:
        return lon - 360.0
    if lon < -180.0:
        return lon + 360.0
    return lon


def _validate_zoom(zoom: int) -> None:
    if isinstance(zoom, bool) or not isinstance(zoom, int):
        raise InvalidCoordinate(f"Zoom must be an integer, got {zoom!r}.")
    if zoom < 0 or zoom > MAX_ZOOM:
        raise InvalidCoordinate(f"Zoom must be between 0 and {MAX_ZOOM}.")
