import json

import pytest

from pumpkinscan.core.errors import ProtocolError
from pumpkinscan.core.worker_protocol import (
    DoneMessage,
    ErrorMessage,
    EvaluatorSpec,
    MatchMessage,
    NoMatchMessage,
    TileMatch,
    WorkerConfig,
    decode_message,
    encode_message,
)


def test_match_wire_format():
    line = encode_message(MatchMessage(TileMatch(1, 2, 3, 4)))
    assert json.loads(line) == {"type": "match", "data": {"tileX": 1, "tileY": 2, "offsetX": 3, "offsetY": 4}}
    assert decode_message(line) == MatchMessage(TileMatch(1, 2, 3, 4))


def test_error_with_and_without_coordinates():
    assert decode_message('{"type":"error","data":{"tileX":5,"tileY":6,"message":"boom"}}') == ErrorMessage(
        "boom", 5, 6
    )
    assert decode_message('{"type":"error","data":{"message":"boom"}}') == ErrorMessage("boom")
    assert "tileX" not in encode_message(ErrorMessage("boom"))


def test_no_match_and_done():
    assert decode_message(encode_message(NoMatchMessage())) == NoMatchMessage()
    assert decode_message('{"type":"done","data":{"startY":0,"endY":2,"maxX":2048}}') == DoneMessage(0, 2, 2048)


@pytest.mark.parametrize(
    "line",
    ["not json", "[]", '{"type":"bogus"}', '{"type":"match","data":{"tileX":1}}', '{"type":"done"}'],
)
def test_decode_rejects_malformed(line):
    with pytest.raises(ProtocolError):
        decode_message(line)


def test_config_offsets_travel_as_strings():
    cfg = WorkerConfig(
        start_y=0,
        end_y=512,
        max_x=2048,
        concurrency=160,
        ip_offset_start=2**64 + 1,
        ip_offset_count=2**60,
        cidr="2001:db8::/32",
        evaluator=EvaluatorSpec("mod:Cls", {"k": 1}),
    )
    raw = json.loads(cfg.to_json())
    assert raw["ipOffsetStart"] == str(2**64 + 1)
    assert raw["startY"] == 0 and raw["maxX"] == 2048
    assert WorkerConfig.from_json(cfg.to_json()) == cfg


def test_config_validation():
    base = {
        "startY": 0,
        "endY": 2,
        "maxX": 2,
        "concurrency": 0,
        "ipOffsetStart": "1",
        "ipOffsetCount": "63",
        "cidr": "10.0.0.0/24",
        "evaluator": {"entry": "m:C"},
    }
    with pytest.raises(ProtocolError):
        WorkerConfig.from_json(json.dumps(base))
    base.update(concurrency=1, startY=3)
    with pytest.raises(ProtocolError):
        WorkerConfig.from_json(json.dumps(base))
    with pytest.raises(ProtocolError):
        WorkerConfig.from_json("{}")
