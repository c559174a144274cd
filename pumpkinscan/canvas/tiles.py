"""Default tile evaluator: download a tile PNG and look for the marker sprite.

Params (``evaluator.params`` in the settings):

    tile_url: template with ``{x}`` and ``{y}`` placeholders
    marker: list of ``[dx, dy, [r, g, b]]`` pixels relative to the marker origin
    tolerance: allowed per-channel difference (default 0)

A tile the server does not have (404) is empty and never matches.
"""
from __future__ import annotations

import io
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from ..core.errors import ConfigError, MatchEvaluationError
from ..core.logging import logger
from ..core.worker_protocol import TileMatch

DEFAULT_TILE_URL = "https://backend.wplace.live/files/s0/tiles/{x}/{y}.png"

# 3x3 pumpkin: orange body, green stem on top.
DEFAULT_MARKER: List[Tuple[int, int, Tuple[int, int, int]]] = [
    (1, 0, (19, 230, 123)),
    (0, 1, (255, 127, 39)),
    (1, 1, (255, 127, 39)),
    (2, 1, (255, 127, 39)),
    (0, 2, (255, 127, 39)),
    (1, 2, (255, 127, 39)),
    (2, 2, (255, 127, 39)),
]


def parse_marker(raw: Sequence[Sequence[Any]]) -> List[Tuple[int, int, Tuple[int, int, int]]]:
    marker = []
    for item in raw:
        try:
            dx, dy, color = item
            rgb = tuple(int(c) for c in color)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid marker pixel {item!r}: expected [dx, dy, [r, g, b]]") from e
        if len(rgb) != 3:
            raise ConfigError(f"Invalid marker color {color!r}")
        if int(dx) < 0 or int(dy) < 0:
            raise ConfigError(f"Marker offsets must be non-negative, got ({dx}, {dy})")
        marker.append((int(dx), int(dy), rgb))
    if not marker:
        raise ConfigError("marker must contain at least one pixel")
    return marker


def find_marker(pixels: np.ndarray, marker, tolerance: int = 0) -> Optional[Tuple[int, int]]:
    """Return the ``(x, y)`` origin of the first marker occurrence in an RGBA array, or None."""
    height, width = pixels.shape[:2]
    span_x = max(dx for dx, _, _ in marker) + 1
    span_y = max(dy for _, dy, _ in marker) + 1
    if span_x > width or span_y > height:
        return None
    rows, cols = height - span_y + 1, width - span_x + 1
    rgb = pixels[..., :3].astype(np.int16)
    opaque = pixels[..., 3] > 0
    hits = np.ones((rows, cols), dtype=bool)
    for dx, dy, color in marker:
        window = rgb[dy:dy + rows, dx:dx + cols]
        close = np.all(np.abs(window - np.asarray(color, dtype=np.int16)) <= tolerance, axis=-1)
        hits &= close & opaque[dy:dy + rows, dx:dx + cols]
        if not hits.any():
            return None
    y, x = np.argwhere(hits)[0]
    return int(x), int(y)


def decode_tile(content: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(content)) as img:
            return np.asarray(img.convert("RGBA"))
    except (UnidentifiedImageError, OSError) as e:
        raise MatchEvaluationError(f"Cannot decode tile image: {e}") from e


class TileEvaluator:
    def __init__(self, params: Optional[Dict[str, Any]] = None):
        self.params = params or {}
        self.tile_url: str = self.params.get("tile_url", DEFAULT_TILE_URL)
        self.marker = parse_marker(self.params["marker"]) if self.params.get("marker") else DEFAULT_MARKER
        self.tolerance = int(self.params.get("tolerance", 0))

    async def evaluate(self, client: httpx.AsyncClient, tile_x: int, tile_y: int) -> Optional[TileMatch]:
        url = self.tile_url.format(x=tile_x, y=tile_y)
        resp = await client.get(url)
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise MatchEvaluationError(f"GET {url} returned HTTP {resp.status_code}")
        found = find_marker(decode_tile(resp.content), self.marker, self.tolerance)
        if found is None:
            return None
        logger.debug(f"marker at tile ({tile_x}, {tile_y}) offset {found}")
        return TileMatch(tile_x, tile_y, *found)


__all__ = ["TileEvaluator", "find_marker", "decode_tile", "parse_marker", "DEFAULT_MARKER", "DEFAULT_TILE_URL"]
