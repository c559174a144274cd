import asyncio
import json

import pytest

from pumpkinscan.canvas.mercator import GeoPoint
from pumpkinscan.core.config_loader import load_settings
from pumpkinscan.core.errors import AllocationError, PassFailedError, PersistenceError, WorkerFatalError
from pumpkinscan.core.matches import MatchHandler
from pumpkinscan.core.orchestrator import Orchestrator, plan_pass, plan_rows
from pumpkinscan.core.addresses import parse_cidr
from pumpkinscan.core.process_manager import WorkerInfo
from pumpkinscan.core.store import PumpkinRecord, PumpkinStore, utcnow
from pumpkinscan.core.worker_protocol import (
    DoneMessage,
    ErrorMessage,
    MatchMessage,
    NoMatchMessage,
    TileMatch,
)


def settings(**overrides):
    base = {"cidr": "10.0.0.0/24", "workers": 4, "max_x": 2, "max_y": 8, "sweep_interval_s": 0}
    base.update(overrides)
    return load_settings(overrides=base, environ={})


def make_handler(path, number=42):
    async def lookup(tx, ty, ox, oy):
        return number

    return MatchHandler(PumpkinStore(path), lambda tx, ty, ox, oy: GeoPoint(1.5, 2.5), lookup)


class FakeManager:
    """Plays a worker per assignment: one message per tile, then ``done``."""

    def __init__(self, fail=(), fail_times=None, matches=(), delay=0.0):
        self.delay = delay
        self.fail = set(fail)
        self.fail_times = dict(fail_times or {})
        self.matches = set(matches)
        self.configs = {}
        self.runs = []
        self.stopped = False

    async def run_worker(self, index, config, on_message):
        self.configs[index] = config
        self.runs.append(index)
        await asyncio.sleep(self.delay)
        wi = WorkerInfo(index=index, config=config)
        for y in range(config.start_y, config.end_y):
            for x in range(config.max_x):
                if (x, y) in self.matches:
                    await on_message(wi, MatchMessage(TileMatch(x, y, 3, 4)))
                elif x == 1 and y == config.start_y:
                    await on_message(wi, ErrorMessage("HTTP 429", tile_x=x, tile_y=y))
                else:
                    await on_message(wi, NoMatchMessage())
        await on_message(wi, DoneMessage(config.start_y, config.end_y, config.max_x))
        if index in self.fail or self.fail_times.get(index, 0) > 0:
            if index in self.fail_times:
                self.fail_times[index] -= 1
            raise WorkerFatalError(f"Worker {index} stopped with exit code 1", index=index, returncode=1)
        return wi

    async def stop_all(self):
        self.stopped = True


def test_plan_eight_rows_four_workers():
    plan = plan_pass(parse_cidr("10.0.0.0/24"), 8, 4)
    assert [(a.start_y, a.end_y) for a in plan] == [(0, 2), (2, 4), (4, 6), (6, 8)]
    assert [a.offsets.start for a in plan] == [1, 64, 127, 190]
    assert all(a.offsets.count == 63 for a in plan)


def test_plan_rows_skips_empty_ranges():
    assert plan_rows(5, 4) == [(0, 2), (2, 4), (4, 5)]
    assert plan_rows(3, 8) == [(0, 1), (1, 2), (2, 3)]
    with pytest.raises(AllocationError):
        plan_rows(8, 0)


def test_run_pass_covers_grid(tmp_path):
    manager = FakeManager(matches={(0, 5)})
    orch = Orchestrator(settings(), make_handler(tmp_path / "pumpkin.json"), manager=manager)
    summary = asyncio.run(orch.run_pass())

    assert sorted(summary.completed) == [(0, 2), (2, 4), (4, 6), (6, 8)]
    assert summary.tiles == 16
    assert summary.matches == 1
    assert summary.errors == 4
    assert summary.ok
    cfg = manager.configs[2]
    assert (cfg.ip_offset_start, cfg.ip_offset_count, cfg.cidr) == (127, 63, "10.0.0.0/24")
    assert cfg.timeout == 10.0
    stored = json.loads((tmp_path / "pumpkin.json").read_text())
    assert stored["42"]["tileY"] == 5


def test_failed_worker_fails_pass_without_committing_done(tmp_path):
    manager = FakeManager(fail={2}, matches={(0, 4)})
    orch = Orchestrator(settings(), make_handler(tmp_path / "pumpkin.json"), manager=manager)
    with pytest.raises(PassFailedError) as exc:
        asyncio.run(orch.run_pass())
    summary = exc.value.summary
    assert (4, 6) not in summary.completed
    assert sorted(summary.completed) == [(0, 2), (2, 4), (6, 8)]
    assert summary.failed == [2]
    assert "42" in orch.handler.store


def test_respawn_policy_reruns_failed_range(tmp_path):
    manager = FakeManager(fail_times={1: 1})
    orch = Orchestrator(
        settings(worker_failure_policy="respawn", max_respawns=2),
        make_handler(tmp_path / "pumpkin.json"),
        manager=manager,
    )
    summary = asyncio.run(orch.run_pass())
    assert summary.respawns == 1
    assert manager.runs.count(1) == 2
    assert sorted(summary.completed) == [(0, 2), (2, 4), (4, 6), (6, 8)]


def test_respawn_budget_exhausted(tmp_path):
    manager = FakeManager(fail={0})
    orch = Orchestrator(
        settings(worker_failure_policy="respawn", max_respawns=1),
        make_handler(tmp_path / "pumpkin.json"),
        manager=manager,
    )
    with pytest.raises(PassFailedError):
        asyncio.run(orch.run_pass())
    assert manager.runs.count(0) == 2


def test_run_forever_restarts_after_failed_pass(tmp_path):
    manager = FakeManager(fail={3})
    orch = Orchestrator(settings(), make_handler(tmp_path / "pumpkin.json"), manager=manager)
    ran = asyncio.run(orch.run_forever(max_passes=3))
    assert ran == 3
    assert orch.passes == 3
    assert manager.stopped


def test_run_forever_honours_stop_event(tmp_path):
    orch = Orchestrator(settings(), make_handler(tmp_path / "pumpkin.json"), manager=FakeManager())

    async def main():
        stop = asyncio.Event()
        stop.set()
        return await orch.run_forever(stop_event=stop)

    assert asyncio.run(main()) == 0


def test_persistence_error_stops_loop(tmp_path):
    store_path = tmp_path / "store_is_a_dir"
    store_path.mkdir()
    orch = Orchestrator(settings(), make_handler(store_path), manager=FakeManager(matches={(0, 0)}))
    with pytest.raises(PersistenceError):
        asyncio.run(orch.run_forever(max_passes=5))
    assert orch.passes == 1


def test_lookup_failure_does_not_fail_pass(tmp_path):
    async def lookup(tx, ty, ox, oy):
        raise RuntimeError("lookup down")

    handler = MatchHandler(PumpkinStore(tmp_path / "p.json"), lambda *a: GeoPoint(0.0, 0.0), lookup)
    orch = Orchestrator(settings(), handler, manager=FakeManager(matches={(1, 1)}))
    summary = asyncio.run(orch.run_pass())
    assert summary.matches == 1
    assert len(handler.store) == 0


def stored(tile=(9, 9, 0, 0)):
    return PumpkinRecord(1.0, 2.0, *tile, found_at=utcnow())


def test_sweep_persistence_error_stops_run_forever(tmp_path):
    store_path = tmp_path / "store_is_a_dir"
    store_path.mkdir()

    async def lookup(tx, ty, ox, oy):
        return 2

    handler = MatchHandler(PumpkinStore(store_path, {"1": stored()}), lambda *a: GeoPoint(0.0, 0.0), lookup)
    manager = FakeManager(delay=0.05)
    orch = Orchestrator(settings(sweep_interval_s=0.01), handler, manager=manager)
    with pytest.raises(PersistenceError):
        asyncio.run(orch.run_forever(max_passes=5))
    assert orch.passes == 1
    assert manager.stopped


def test_sweep_prunes_stale_record_during_run_forever(tmp_path):
    path = tmp_path / "pumpkin.json"

    async def lookup(tx, ty, ox, oy):
        return None

    handler = MatchHandler(PumpkinStore(path, {"7": stored()}), lambda *a: GeoPoint(0.0, 0.0), lookup)
    orch = Orchestrator(settings(sweep_interval_s=0.01), handler, manager=FakeManager(delay=0.05))
    assert asyncio.run(orch.run_forever(max_passes=2)) == 2
    assert "7" not in handler.store
    assert json.loads(path.read_text()) == {}
