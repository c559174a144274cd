"""Match handler: turn raw tile matches into store mutations.

A match with an event number is upserted under that number. A match without
one means the marker at that tile/offset is no longer an event pumpkin, so any
record stored for that location is deleted.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from .errors import PersistenceError
from .logging import logger
from .store import PumpkinRecord, PumpkinStore, utcnow
from .worker_protocol import TileMatch
from ..canvas.mercator import GeoPoint

Projector = Callable[[int, int, int, int], GeoPoint]
EventLookup = Callable[[int, int, int, int], Awaitable[Optional[int]]]

DEFAULT_MAP_URL = "https://wplace.live/?lat={lat}&lng={lng}&zoom=14"


@dataclass
class MatchOutcome:
    match: TileMatch
    event_number: Optional[int]
    record: Optional[PumpkinRecord] = None
    removed: Optional[List[str]] = None


class MatchHandler:
    def __init__(
        self,
        store: PumpkinStore,
        project: Projector,
        lookup: EventLookup,
        *,
        map_url: str = DEFAULT_MAP_URL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.project = project
        self.lookup = lookup
        self.map_url = map_url
        self.clock = clock
        self.handled = 0
        # single writer: store mutations never interleave
        self._lock = asyncio.Lock()

    async def handle(self, match: TileMatch) -> MatchOutcome:
        async with self._lock:
            self.handled += 1
            geo = self.project(match.tile_x, match.tile_y, match.offset_x, match.offset_y)
            number = await self.lookup(match.tile_x, match.tile_y, match.offset_x, match.offset_y)
            logger.info(
                f"Pumpkin {number} at lat: {geo.lat}, lng: {geo.lng} "
                f"(tile: {match.tile_x}, {match.tile_y}, offset: {match.offset_x}, {match.offset_y}) "
                f"{self.map_url.format(lat=geo.lat, lng=geo.lng)}"
            )
            if number is not None:
                record = PumpkinRecord(
                    lat=geo.lat,
                    lng=geo.lng,
                    tile_x=match.tile_x,
                    tile_y=match.tile_y,
                    offset_x=match.offset_x,
                    offset_y=match.offset_y,
                    found_at=self.clock(),
                )
                self.store.upsert(str(number), record)
                return MatchOutcome(match, number, record=record)
            removed = self.store.remove_at(match.tile_x, match.tile_y, match.offset_x, match.offset_y)
            if removed:
                logger.info(f"removed pumpkins {removed}: no event number at their location anymore")
            return MatchOutcome(match, None, removed=removed)

    async def sweep(self) -> int:
        """Re-check every stored record; returns how many were removed."""
        before = len(self.store)
        for key, record in self.store.items():
            if key not in self.store:
                continue
            try:
                await self.handle(record.as_match())
            except PersistenceError:
                raise
            except Exception as e:  # noqa: BLE001 - next sweep retries
                logger.warning(f"sweep check of pumpkin {key} failed: {e}")
        removed = max(before - len(self.store), 0)
        if removed:
            logger.info(f"sweep pruned {removed} pumpkins")
        return removed


__all__ = ["MatchHandler", "MatchOutcome", "Projector", "EventLookup"]
