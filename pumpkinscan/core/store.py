"""Persisted pumpkin store.

The whole mapping is rewritten on every mutation: JSON goes to a temporary
file next to the target which then replaces it, so the file on disk is always
the last fully-applied state.
"""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import PersistenceError
from .logging import logger
from .worker_protocol import TileMatch


def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds (the precision stored on disk)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def format_timestamp(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def parse_timestamp(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class PumpkinRecord:
    lat: float
    lng: float
    tile_x: int
    tile_y: int
    offset_x: int
    offset_y: int
    found_at: datetime

    @property
    def location(self) -> Tuple[int, int, int, int]:
        return (self.tile_x, self.tile_y, self.offset_x, self.offset_y)

    def as_match(self) -> TileMatch:
        return TileMatch(*self.location)

    def to_json(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "tileX": self.tile_x,
            "tileY": self.tile_y,
            "offsetX": self.offset_x,
            "offsetY": self.offset_y,
            "foundAt": format_timestamp(self.found_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PumpkinRecord":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            tile_x=int(data["tileX"]),
            tile_y=int(data["tileY"]),
            offset_x=int(data["offsetX"]),
            offset_y=int(data["offsetY"]),
            found_at=parse_timestamp(data["foundAt"]),
        )


class PumpkinStore:
    def __init__(self, path: Path, records: Optional[Dict[str, PumpkinRecord]] = None):
        self.path = Path(path)
        self._records: Dict[str, PumpkinRecord] = dict(records or {})

    @classmethod
    def load(cls, path: Path) -> "PumpkinStore":
        path = Path(path)
        if not path.exists():
            logger.info(f"no store at {path}; starting empty")
            return cls(path)
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
            if not isinstance(raw, dict):
                raise ValueError("top-level JSON value must be an object")
            records = {str(k): PumpkinRecord.from_json(v) for k, v in raw.items()}
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Cannot read store {path}: {e}") from e
        logger.info(f"loaded {len(records)} pumpkins from {path}")
        return cls(path, records)

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))

    def get(self, key: str) -> Optional[PumpkinRecord]:
        return self._records.get(str(key))

    def items(self) -> List[Tuple[str, PumpkinRecord]]:
        return list(self._records.items())

    def to_json(self) -> Dict[str, Dict[str, Any]]:
        return {k: v.to_json() for k, v in self._records.items()}

    def _commit(self, before: Dict[str, PumpkinRecord]) -> None:
        # a failed write leaves memory matching the file
        try:
            self.save()
        except PersistenceError:
            self._records = before
            raise

    def upsert(self, key: str, record: PumpkinRecord) -> None:
        before = dict(self._records)
        self._records[str(key)] = record
        self._commit(before)

    def remove_at(self, tile_x: int, tile_y: int, offset_x: int, offset_y: int) -> List[str]:
        """Delete every record at the given tile/offset; returns the removed keys."""
        location = (tile_x, tile_y, offset_x, offset_y)
        before = dict(self._records)
        removed = [k for k, v in self._records.items() if v.location == location]
        for k in removed:
            del self._records[k]
        if removed:
            self._commit(before)
        return removed

    def save(self) -> None:
        payload = json.dumps(self.to_json(), indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.chmod(tmp, 0o644)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write store {self.path}: {e}") from e


__all__ = ["PumpkinRecord", "PumpkinStore", "utcnow", "format_timestamp", "parse_timestamp"]
