"""Worker protocol: spawn contract and JSON line messages.

Master -> worker (one JSON line on stdin)::

    {"startY": 0, "endY": 512, "maxX": 2048, "concurrency": 160,
     "ipOffsetStart": "1", "ipOffsetCount": "63", "cidr": "10.0.0.0/24",
     "timeout": 10.0, "evaluator": {"entry": "module:Class", "params": {...}}}

Worker -> master (one JSON object per line on stdout)::

    {"type": "match", "data": {"tileX": 1, "tileY": 2, "offsetX": 3, "offsetY": 4}}
    {"type": "no_match"}
    {"type": "error", "data": {"tileX": 1, "tileY": 2, "message": "..."}}
    {"type": "done", "data": {"startY": 0, "endY": 512, "maxX": 2048}}

Offsets travel as strings so IPv6-sized integers survive any JSON reader.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .errors import ProtocolError

MATCH = "match"
NO_MATCH = "no_match"
ERROR = "error"
DONE = "done"


@dataclass(frozen=True)
class TileMatch:
    tile_x: int
    tile_y: int
    offset_x: int
    offset_y: int

    def to_json(self) -> Dict[str, int]:
        return {"tileX": self.tile_x, "tileY": self.tile_y, "offsetX": self.offset_x, "offsetY": self.offset_y}

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TileMatch":
        return cls(int(data["tileX"]), int(data["tileY"]), int(data["offsetX"]), int(data["offsetY"]))


@dataclass(frozen=True)
class MatchMessage:
    match: TileMatch


@dataclass(frozen=True)
class NoMatchMessage:
    pass


@dataclass(frozen=True)
class ErrorMessage:
    message: str
    tile_x: Optional[int] = None
    tile_y: Optional[int] = None


@dataclass(frozen=True)
class DoneMessage:
    start_y: int
    end_y: int
    max_x: int


WorkerMessage = Union[MatchMessage, NoMatchMessage, ErrorMessage, DoneMessage]


def encode_message(msg: WorkerMessage) -> str:
    if isinstance(msg, MatchMessage):
        payload: Dict[str, Any] = {"type": MATCH, "data": msg.match.to_json()}
    elif isinstance(msg, NoMatchMessage):
        payload = {"type": NO_MATCH}
    elif isinstance(msg, ErrorMessage):
        data: Dict[str, Any] = {"message": msg.message}
        if msg.tile_x is not None:
            data["tileX"] = msg.tile_x
        if msg.tile_y is not None:
            data["tileY"] = msg.tile_y
        payload = {"type": ERROR, "data": data}
    elif isinstance(msg, DoneMessage):
        payload = {"type": DONE, "data": {"startY": msg.start_y, "endY": msg.end_y, "maxX": msg.max_x}}
    else:
        raise ProtocolError(f"Unknown message {msg!r}")
    return json.dumps(payload, separators=(",", ":"))


def decode_message(line: Union[str, bytes]) -> WorkerMessage:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid message line: {line!r}") from e
    if not isinstance(payload, dict):
        raise ProtocolError(f"Message must be an object: {line!r}")
    kind = payload.get("type")
    data = payload.get("data") or {}
    try:
        if kind == MATCH:
            return MatchMessage(TileMatch.from_json(data))
        if kind == NO_MATCH:
            return NoMatchMessage()
        if kind == ERROR:
            tx, ty = data.get("tileX"), data.get("tileY")
            return ErrorMessage(
                str(data.get("message", "")),
                tile_x=None if tx is None else int(tx),
                tile_y=None if ty is None else int(ty),
            )
        if kind == DONE:
            return DoneMessage(int(data["startY"]), int(data["endY"]), int(data["maxX"]))
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed {kind} message: {line!r}") from e
    raise ProtocolError(f"Unknown message type {kind!r}")


@dataclass(frozen=True)
class EvaluatorSpec:
    entry: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkerConfig:
    start_y: int
    end_y: int
    max_x: int
    concurrency: int
    ip_offset_start: int
    ip_offset_count: int
    cidr: str
    evaluator: EvaluatorSpec
    timeout: Optional[float] = 10.0

    def to_json(self) -> str:
        return json.dumps(
            {
                "startY": self.start_y,
                "endY": self.end_y,
                "maxX": self.max_x,
                "concurrency": self.concurrency,
                "ipOffsetStart": str(self.ip_offset_start),
                "ipOffsetCount": str(self.ip_offset_count),
                "cidr": self.cidr,
                "timeout": self.timeout,
                "evaluator": {"entry": self.evaluator.entry, "params": self.evaluator.params},
            }
        )

    @classmethod
    def from_json(cls, line: Union[str, bytes]) -> "WorkerConfig":
        try:
            data = json.loads(line)
            evaluator = data["evaluator"]
            cfg = cls(
                start_y=int(data["startY"]),
                end_y=int(data["endY"]),
                max_x=int(data["maxX"]),
                concurrency=int(data["concurrency"]),
                ip_offset_start=int(data["ipOffsetStart"]),
                ip_offset_count=int(data["ipOffsetCount"]),
                cidr=str(data["cidr"]),
                timeout=None if data.get("timeout") is None else float(data["timeout"]),
                evaluator=EvaluatorSpec(evaluator["entry"], dict(evaluator.get("params") or {})),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid worker config: {e}") from e
        if cfg.concurrency < 1:
            raise ProtocolError("concurrency must be >= 1")
        if cfg.start_y > cfg.end_y:
            raise ProtocolError(f"empty row range [{cfg.start_y}, {cfg.end_y})")
        return cfg


__all__ = [
    "MATCH",
    "NO_MATCH",
    "ERROR",
    "DONE",
    "TileMatch",
    "MatchMessage",
    "NoMatchMessage",
    "ErrorMessage",
    "DoneMessage",
    "WorkerMessage",
    "encode_message",
    "decode_message",
    "EvaluatorSpec",
    "WorkerConfig",
]
