"""Read-only HTTP view of the pumpkin store (FastAPI).

Environment variables:
  PUMPKINSCAN_STORE=/path/to/pumpkin.json   (default store path)

CLI will import this module and call create_app().
"""
from __future__ import annotations
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
from pathlib import Path
import os

from .core.errors import PersistenceError
from .core.logging import logger
from .core.store import PumpkinStore


class PumpkinOut(BaseModel):
    key: str
    lat: float
    lng: float
    tile_x: int
    tile_y: int
    offset_x: int
    offset_y: int
    found_at: datetime


def _sort_key(key: str):
    return (0, int(key), key) if key.isdigit() else (1, 0, key)


def create_app(store_path: Optional[str] = None) -> FastAPI:
    path = Path(store_path or os.getenv("PUMPKINSCAN_STORE") or "pumpkin.json")
    app = FastAPI(title="pumpkinscan", version="0.1.0")

    def _load() -> PumpkinStore:
        # re-read per request; the scanner rewrites the file atomically
        try:
            return PumpkinStore.load(path)
        except PersistenceError as e:
            logger.error(str(e))
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/health")
    def health():
        return {"status": "ok", "store": str(path), "store_exists": path.exists()}

    @app.get("/pumpkin.json")
    def pumpkin_json() -> Dict[str, Any]:
        return _load().to_json()

    @app.get("/pumpkins", response_model=List[PumpkinOut])
    def list_pumpkins():
        store = _load()
        return [
            PumpkinOut(
                key=key,
                lat=rec.lat,
                lng=rec.lng,
                tile_x=rec.tile_x,
                tile_y=rec.tile_y,
                offset_x=rec.offset_x,
                offset_y=rec.offset_y,
                found_at=rec.found_at,
            )
            for key, rec in sorted(store.items(), key=lambda kv: _sort_key(kv[0]))
        ]

    return app


__all__ = ["create_app", "PumpkinOut"]
