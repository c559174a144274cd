import json
import os
import stat
from datetime import datetime, timezone

import pytest

from pumpkinscan.core.errors import PersistenceError
from pumpkinscan.core.store import PumpkinRecord, PumpkinStore, format_timestamp, parse_timestamp, utcnow


def record(**kw):
    base = dict(
        lat=52.5,
        lng=13.4,
        tile_x=1100,
        tile_y=671,
        offset_x=12,
        offset_y=34,
        found_at=datetime(2025, 10, 31, 12, 0, 1, 250000, tzinfo=timezone.utc),
    )
    base.update(kw)
    return PumpkinRecord(**base)


def test_missing_store_is_empty(tmp_path):
    store = PumpkinStore.load(tmp_path / "pumpkin.json")
    assert len(store) == 0
    assert not (tmp_path / "pumpkin.json").exists()


def test_upsert_writes_file_format(tmp_path):
    path = tmp_path / "pumpkin.json"
    store = PumpkinStore(path)
    store.upsert("42", record())
    raw = json.loads(path.read_text())
    assert raw == {
        "42": {
            "lat": 52.5,
            "lng": 13.4,
            "tileX": 1100,
            "tileY": 671,
            "offsetX": 12,
            "offsetY": 34,
            "foundAt": "2025-10-31T12:00:01.250Z",
        }
    }
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644
    assert path.read_text().startswith("{\n  ")
    assert PumpkinStore.load(path).get("42") == record()


def test_remove_at_matches_full_location(tmp_path):
    store = PumpkinStore(tmp_path / "pumpkin.json")
    store.upsert("1", record())
    store.upsert("2", record(offset_y=35))
    assert store.remove_at(1100, 671, 12, 34) == ["1"]
    assert list(store) == ["2"]
    assert store.remove_at(0, 0, 0, 0) == []


def test_corrupt_store_raises(tmp_path):
    path = tmp_path / "pumpkin.json"
    path.write_text("{not json")
    with pytest.raises(PersistenceError):
        PumpkinStore.load(path)
    path.write_text('{"1": {"lat": 1}}')
    with pytest.raises(PersistenceError):
        PumpkinStore.load(path)


def test_unwritable_store_raises(tmp_path):
    target = tmp_path / "taken"
    target.mkdir()
    with pytest.raises(PersistenceError):
        PumpkinStore(target).upsert("1", record())
    assert [p.name for p in tmp_path.iterdir()] == ["taken"]


def test_failed_write_leaves_memory_unchanged(tmp_path):
    target = tmp_path / "taken"
    target.mkdir()
    store = PumpkinStore(target, {"1": record()})
    with pytest.raises(PersistenceError):
        store.upsert("2", record(tile_x=5))
    with pytest.raises(PersistenceError):
        store.remove_at(1100, 671, 12, 34)
    assert store.to_json() == {"1": record().to_json()}


def test_timestamps_millisecond_precision():
    now = utcnow()
    assert now.microsecond % 1000 == 0
    text = format_timestamp(now)
    assert text.endswith("Z") and len(text) == 24
    assert parse_timestamp(text) == now
