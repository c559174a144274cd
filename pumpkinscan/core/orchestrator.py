"""Orchestrator: partitions the grid, runs worker passes forever.

Pass lifecycle: plan -> spawn all workers -> consume messages -> wait for every
worker -> summary. A worker failure fails the whole pass (after the remaining
workers finish); the next pass starts right away and covers the grid again.
Matches already handled during a failed pass stay in the store.
"""
from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import httpx

from .addresses import IPNetwork, OffsetRange, allocate_offset_range, host_bounds
from .config_loader import ScanSettings
from .dispatcher import build_client, random_dispatcher
from .errors import AllocationError, PassFailedError, PersistenceError, ProtocolError, WorkerFatalError
from .logging import logger
from .matches import MatchHandler
from .metrics import ThroughputMeter, pass_timer, set_pumpkins
from .process_manager import ProcessManager, WorkerInfo
from .store import PumpkinStore
from .utils import import_entry
from .worker_protocol import (
    DoneMessage,
    ErrorMessage,
    EvaluatorSpec,
    MatchMessage,
    NoMatchMessage,
    WorkerConfig,
    WorkerMessage,
)
from ..canvas.mercator import project_tile_offset


@dataclass(frozen=True)
class WorkerAssignment:
    index: int
    start_y: int
    end_y: int
    offsets: OffsetRange


@dataclass
class PassSummary:
    number: int
    workers: int
    tiles: int = 0
    matches: int = 0
    errors: int = 0
    respawns: int = 0
    completed: List[Tuple[int, int]] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed


def plan_rows(max_y: int, worker_count: int) -> List[Tuple[int, int]]:
    """Split ``[0, max_y)`` into contiguous ``ceil(max_y / worker_count)``-row ranges."""
    if worker_count < 1:
        raise AllocationError(f"worker_count must be >= 1, got {worker_count}")
    rows_per_worker = -(-max_y // worker_count)
    ranges = []
    for index in range(worker_count):
        start = index * rows_per_worker
        end = min(start + rows_per_worker, max_y)
        if start >= end:
            break
        ranges.append((start, end))
    return ranges


def plan_pass(network: IPNetwork, max_y: int, worker_count: int) -> List[WorkerAssignment]:
    return [
        WorkerAssignment(index, start, end, allocate_offset_range(network, worker_count, index))
        for index, (start, end) in enumerate(plan_rows(max_y, worker_count))
    ]


class Orchestrator:
    def __init__(
        self,
        settings: ScanSettings,
        handler: MatchHandler,
        manager: Optional[ProcessManager] = None,
        meter: Optional[ThroughputMeter] = None,
    ):
        self.settings = settings
        self.handler = handler
        self.manager = manager or ProcessManager()
        self.meter = meter or ThroughputMeter()
        self.passes = 0

    def worker_config(self, assignment: WorkerAssignment) -> WorkerConfig:
        s = self.settings
        return WorkerConfig(
            start_y=assignment.start_y,
            end_y=assignment.end_y,
            max_x=s.max_x,
            concurrency=s.concurrency,
            ip_offset_start=assignment.offsets.start,
            ip_offset_count=assignment.offsets.count,
            cidr=str(s.network),
            timeout=s.request_timeout_s,
            evaluator=EvaluatorSpec(s.evaluator["entry"], dict(s.evaluator.get("params") or {})),
        )

    async def _on_message(
        self, summary: PassSummary, done: Dict[int, DoneMessage], wi: WorkerInfo, msg: WorkerMessage
    ) -> None:
        if isinstance(msg, NoMatchMessage):
            self.meter.add("no_match")
            summary.tiles += 1
        elif isinstance(msg, MatchMessage):
            self.meter.add("match")
            summary.tiles += 1
            summary.matches += 1
            try:
                await self.handler.handle(msg.match)
            except PersistenceError:
                logger.critical(f"store write failed while handling {msg.match}")
                raise
            except Exception as e:  # noqa: BLE001
                logger.warning(f"match handling failed for {msg.match}: {e}")
            set_pumpkins(len(self.handler.store))
        elif isinstance(msg, ErrorMessage):
            self.meter.add("error")
            summary.tiles += 1
            summary.errors += 1
            if msg.tile_x is not None and msg.tile_y is not None:
                logger.warning(f"Worker error at tile ({msg.tile_x}, {msg.tile_y}): {msg.message}")
            else:
                logger.warning(f"Worker error: {msg.message}")
        elif isinstance(msg, DoneMessage):
            # committed only once the worker exits cleanly
            done[wi.index] = msg
        else:
            raise ProtocolError(f"Unhandled worker message {msg!r}")

    async def _run_assignment(self, assignment: WorkerAssignment, summary: PassSummary) -> None:
        config = self.worker_config(assignment)
        respawns = 0
        while True:
            done: Dict[int, DoneMessage] = {}
            on_message = functools.partial(self._on_message, summary, done)
            logger.info(
                f"Spawning worker {assignment.index + 1}/{summary.workers} "
                f"for rows {assignment.start_y}-{assignment.end_y - 1}"
            )
            try:
                await self.manager.run_worker(assignment.index, config, on_message)
            except WorkerFatalError as e:
                if self.settings.worker_failure_policy == "respawn" and respawns < self.settings.max_respawns:
                    respawns += 1
                    summary.respawns += 1
                    logger.warning(f"{e}; respawning rows {assignment.start_y}-{assignment.end_y - 1} ({respawns})")
                    continue
                summary.failed.append(assignment.index)
                raise
            msg = done.get(assignment.index)
            if msg is not None:
                summary.completed.append((msg.start_y, msg.end_y))
                logger.info(
                    f"Worker completed rows {msg.start_y}-{msg.end_y - 1} ({msg.end_y - msg.start_y} rows)."
                )
            return

    async def run_pass(self) -> PassSummary:
        s = self.settings
        self.passes += 1
        network = s.network
        assignments = plan_pass(network, s.max_y, s.workers)
        summary = PassSummary(number=self.passes, workers=len(assignments))
        logger.info(
            f"pass {summary.number}: workerCount={s.workers} rowsPerWorker={-(-s.max_y // s.workers)} "
            f"ipOffsetsPerWorker={host_bounds(network)[1] // s.workers}"
        )
        started = time.monotonic()
        with pass_timer():
            results = await asyncio.gather(
                *(self._run_assignment(a, summary) for a in assignments), return_exceptions=True
            )
            summary.duration_s = time.monotonic() - started
            failures = [r for r in results if isinstance(r, BaseException)]
            for failure in failures:
                if isinstance(failure, (PersistenceError, asyncio.CancelledError)):
                    raise failure
            if failures:
                raise PassFailedError(
                    f"pass {summary.number} failed: {len(failures)} worker(s) did not complete",
                    summary,
                    failures,
                ) from failures[0]
        if summary.matches == 0:
            logger.info("No pumpkins detected across processed tiles.")
        else:
            logger.info(f"Total pumpkins detected: {summary.matches}")
        logger.info(
            f"pass {summary.number} done in {summary.duration_s:.1f}s: tiles={summary.tiles} "
            f"errors={summary.errors} rows={sum(e - b for b, e in summary.completed)}"
        )
        return summary

    async def _progress_loop(self):
        interval = self.settings.progress_interval_s
        while True:
            await asyncio.sleep(interval)
            count, rate = self.meter.tick()
            logger.info(f"Processed tiles: {count} ({rate:.1f} tiles/sec)")

    async def _sweep_loop(self):
        interval = self.settings.sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.handler.sweep()
                set_pumpkins(len(self.handler.store))
            except PersistenceError as e:
                logger.critical(f"store write failed during sweep: {e}")
                raise
            except Exception as e:  # noqa: BLE001
                logger.exception(f"sweep loop error: {e}")

    async def _run_pass_with(self, sweeper: Optional[asyncio.Task]) -> PassSummary:
        """Run one pass; a failed sweep cancels it and its error is raised instead."""
        if sweeper is None:
            return await self.run_pass()
        current = asyncio.create_task(self.run_pass())
        await asyncio.wait({current, sweeper}, return_when=asyncio.FIRST_COMPLETED)
        if sweeper.done():
            if not current.done():
                current.cancel()
            await asyncio.gather(current, return_exceptions=True)
            sweeper.result()
        return current.result()

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None, max_passes: Optional[int] = None) -> int:
        """Run passes back to back until *stop_event* is set or *max_passes* passes ran.

        Failed passes are logged and followed by a fresh pass. A
        :class:`PersistenceError`, from a pass or from the periodic sweep, ends
        the loop. Returns the number of passes run.
        """
        stop_event = stop_event or asyncio.Event()
        background = [asyncio.create_task(self._progress_loop())]
        sweeper = None
        if self.settings.sweep_interval_s > 0:
            sweeper = asyncio.create_task(self._sweep_loop())
            background.append(sweeper)
        ran = 0
        try:
            while not stop_event.is_set() and (max_passes is None or ran < max_passes):
                ran += 1
                try:
                    await self._run_pass_with(sweeper)
                except PassFailedError as e:
                    logger.error(f"{e}; restarting scan")
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self.manager.stop_all()
        return ran


def build_lookup_client(settings: ScanSettings) -> httpx.AsyncClient:
    """HTTP client for event lookups; egress rotates over the block when one is configured."""
    if settings.cidr:
        return build_client(random_dispatcher(settings.network), timeout=settings.request_timeout_s)
    return httpx.AsyncClient(timeout=httpx.Timeout(settings.request_timeout_s))


def build_handler(settings: ScanSettings, store: PumpkinStore, client: httpx.AsyncClient) -> MatchHandler:
    lookup_factory = import_entry(settings.lookup["entry"])
    lookup = lookup_factory(dict(settings.lookup.get("params") or {}), client)
    project = functools.partial(project_tile_offset, **settings.projection)
    return MatchHandler(store, project, lookup, map_url=settings.map_url)


async def run_scan(
    settings: ScanSettings, *, stop_event: Optional[asyncio.Event] = None, max_passes: Optional[int] = None
) -> int:
    network = settings.network
    logger.info(
        f"scanning {settings.max_x}x{settings.max_y} tiles from {network} "
        f"workers={settings.workers} concurrency={settings.concurrency}"
    )
    store = PumpkinStore.load(settings.store_path)
    set_pumpkins(len(store))
    async with build_lookup_client(settings) as client:
        orchestrator = Orchestrator(settings, build_handler(settings, store, client))
        return await orchestrator.run_forever(stop_event=stop_event, max_passes=max_passes)


__all__ = [
    "WorkerAssignment",
    "PassSummary",
    "plan_rows",
    "plan_pass",
    "Orchestrator",
    "build_lookup_client",
    "build_handler",
    "run_scan",
]
