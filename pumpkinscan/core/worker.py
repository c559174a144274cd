"""Tile worker: bounded-concurrency scan of one row range."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Literal, Optional, Protocol, Set

import httpx

from .addresses import OffsetRange, parse_cidr
from .dispatcher import build_client, range_dispatcher
from .logging import logger
from .worker_protocol import (
    DoneMessage,
    ErrorMessage,
    MatchMessage,
    NoMatchMessage,
    TileMatch,
    WorkerConfig,
    WorkerMessage,
)
from .utils import import_entry

WorkerState = Literal["idle", "running", "completed", "failed"]


class TileEvaluator(Protocol):
    async def evaluate(self, client: httpx.AsyncClient, tile_x: int, tile_y: int) -> Optional[TileMatch]: ...


def load_evaluator(entry: str, params: Optional[dict] = None) -> TileEvaluator:
    factory = import_entry(entry)
    return factory(dict(params or {}))


def freebind_client_factory(config: WorkerConfig) -> Callable[[], httpx.AsyncClient]:
    """Client whose every request leaves from the next address of the worker's offset range."""
    network = parse_cidr(config.cidr)
    offsets = OffsetRange(config.ip_offset_start, config.ip_offset_count)

    def factory() -> httpx.AsyncClient:
        # no keep-alive: each request opens a new connection, hence a new source address
        limits = httpx.Limits(max_connections=config.concurrency, max_keepalive_connections=0)
        return build_client(range_dispatcher(network, offsets, limits=limits), timeout=config.timeout)

    return factory


class TileWorker:
    def __init__(
        self,
        config: WorkerConfig,
        evaluator: TileEvaluator,
        emit: Callable[[WorkerMessage], Any],
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.config = config
        self.evaluator = evaluator
        self.emit = emit
        self.client_factory = client_factory or freebind_client_factory(config)
        self.state: WorkerState = "idle"
        self.checked = 0

    async def run(self) -> DoneMessage:
        cfg = self.config
        self.state = "running"
        logger.info(
            f"worker rows {cfg.start_y}-{cfg.end_y - 1} x<{cfg.max_x} concurrency={cfg.concurrency} "
            f"offsets [{cfg.ip_offset_start}, {cfg.ip_offset_start + cfg.ip_offset_count})"
        )
        try:
            slots = asyncio.Semaphore(cfg.concurrency)
            pending: Set[asyncio.Task] = set()

            def _finished(task: asyncio.Task) -> None:
                pending.discard(task)
                slots.release()

            async with self.client_factory() as client:
                for tile_y in range(cfg.start_y, cfg.end_y):
                    for tile_x in range(cfg.max_x):
                        await slots.acquire()
                        task = asyncio.create_task(self._check(client, tile_x, tile_y))
                        pending.add(task)
                        task.add_done_callback(_finished)
                if pending:
                    await asyncio.gather(*pending)
            done = DoneMessage(cfg.start_y, cfg.end_y, cfg.max_x)
            self.emit(done)
        except BaseException:
            self.state = "failed"
            raise
        self.state = "completed"
        return done

    async def _check(self, client: httpx.AsyncClient, tile_x: int, tile_y: int) -> None:
        try:
            match = await self.evaluator.evaluate(client, tile_x, tile_y)
        except Exception as e:  # any failed check is reported, never fatal
            self.emit(ErrorMessage(str(e) or type(e).__name__, tile_x=tile_x, tile_y=tile_y))
        else:
            self.emit(MatchMessage(match) if match is not None else NoMatchMessage())
        finally:
            self.checked += 1


__all__ = ["TileWorker", "TileEvaluator", "WorkerState", "load_evaluator", "freebind_client_factory"]
