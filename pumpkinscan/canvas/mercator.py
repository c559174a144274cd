"""Web-Mercator projection for canvas tiles.

The canvas is a single zoom level of the slippy-map pyramid: ``2**zoom``
tiles per axis, ``tile_size`` pixels per tile. A pixel is addressed by its tile
and the offset inside the tile.
"""
from __future__ import annotations

import math
from typing import NamedTuple

TILE_SIZE = 1000
ZOOM = 11


class GeoPoint(NamedTuple):
    lat: float
    lng: float


def project_tile_offset(
    tile_x: int,
    tile_y: int,
    offset_x: int,
    offset_y: int,
    *,
    tile_size: int = TILE_SIZE,
    zoom: int = ZOOM,
) -> GeoPoint:
    """Return the lat/lng of the centre of pixel (offset_x, offset_y) in tile (tile_x, tile_y)."""
    world = tile_size * (1 << zoom)
    px = tile_x * tile_size + offset_x + 0.5
    py = tile_y * tile_size + offset_y + 0.5
    lng = px / world * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * py / world))))
    return GeoPoint(lat, lng)


def geo_to_tile_offset(lat: float, lng: float, *, tile_size: int = TILE_SIZE, zoom: int = ZOOM):
    """Inverse of :func:`project_tile_offset`: ``(tile_x, tile_y, offset_x, offset_y)``."""
    world = tile_size * (1 << zoom)
    px = int((lng + 180.0) / 360.0 * world)
    lat_rad = math.radians(lat)
    py = int((1 - math.log(math.tan(lat_rad) + 1 / math.cos(lat_rad)) / math.pi) / 2 * world)
    px = min(max(px, 0), world - 1)
    py = min(max(py, 0), world - 1)
    return px // tile_size, py // tile_size, px % tile_size, py % tile_size


__all__ = ["GeoPoint", "project_tile_offset", "geo_to_tile_offset", "TILE_SIZE", "ZOOM"]
