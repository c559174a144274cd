"""Event-number lookup for a pixel.

Params (``lookup.params`` in the settings):

    pixel_url: template with ``{tile_x}``, ``{tile_y}``, ``{offset_x}``, ``{offset_y}``
    event_field: dotted path to the event number in the JSON response
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from ..core.errors import EventLookupError
from ..core.logging import logger

DEFAULT_PIXEL_URL = "https://backend.wplace.live/s0/pixel/{tile_x}/{tile_y}?x={offset_x}&y={offset_y}"
DEFAULT_EVENT_FIELD = "eventNumber"


def dig(data: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(data, dict):
            return None
        data = data.get(part)
    return data


class PixelEventLookup:
    """``await lookup(tile_x, tile_y, offset_x, offset_y) -> int | None``."""

    def __init__(self, params: Optional[Dict[str, Any]] = None, client: Optional[httpx.AsyncClient] = None):
        self.params = params or {}
        self.pixel_url: str = self.params.get("pixel_url", DEFAULT_PIXEL_URL)
        self.event_field: str = self.params.get("event_field", DEFAULT_EVENT_FIELD)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=float(self.params.get("timeout", 10.0)))

    async def __call__(self, tile_x: int, tile_y: int, offset_x: int, offset_y: int) -> Optional[int]:
        url = self.pixel_url.format(tile_x=tile_x, tile_y=tile_y, offset_x=offset_x, offset_y=offset_y)
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as e:
            raise EventLookupError(f"GET {url} failed: {e!r}") from e
        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise EventLookupError(f"GET {url} returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise EventLookupError(f"GET {url} returned invalid JSON") from e
        value = dig(body, self.event_field)
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"unexpected {self.event_field}={value!r} from {url}")
            return None

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()


__all__ = ["PixelEventLookup", "DEFAULT_PIXEL_URL", "DEFAULT_EVENT_FIELD"]
