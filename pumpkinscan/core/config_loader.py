"""Scanner configuration loading and normalization.

Precedence (lowest first):

1. ``DEFAULT_SETTINGS``
2. YAML file (``path`` argument or ``PUMPKINSCAN_CONFIG_FILE``)
3. environment variables (``ENV_OVERRIDES``)
4. explicit overrides (CLI flags)

Example YAML::

    cidr: 2001:db8::/48
    workers: 8
    concurrency: 160
    store_path: /var/lib/pumpkinscan/pumpkin.json
    evaluator:
      entry: pumpkinscan.canvas.tiles:TileEvaluator
      params: {tile_url: "https://backend.wplace.live/files/s0/tiles/{x}/{y}.png"}
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from .addresses import IPNetwork, parse_cidr
from .errors import ConfigError

VALID_FAILURE_POLICIES = {"abandon", "respawn"}


def default_worker_count() -> int:
    return min(os.cpu_count() or 1, 8)


DEFAULT_SETTINGS: Dict[str, Any] = {
    "cidr": None,
    "workers": None,  # None -> min(cpu_count, 8)
    "concurrency": 160,
    "max_x": 2048,
    "max_y": 2048,
    "store_path": "pumpkin.json",
    "bucket": None,  # archival only; carried through untouched
    "request_timeout_s": 10.0,
    "sweep_interval_s": 60.0,
    "progress_interval_s": 5.0,
    "worker_failure_policy": "abandon",
    "max_respawns": 1,
    "map_url": "https://wplace.live/?lat={lat}&lng={lng}&zoom=14",
    "evaluator": {
        "entry": "pumpkinscan.canvas.tiles:TileEvaluator",
        "params": {},
    },
    "lookup": {
        "entry": "pumpkinscan.canvas.events:PixelEventLookup",
        "params": {},
    },
    "projection": {
        "tile_size": 1000,
        "zoom": 11,
    },
}

# env var -> (setting key, converter)
ENV_OVERRIDES: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "PUMPKINSCAN_CIDR": ("cidr", str),
    "PUMPKINSCAN_WORKERS": ("workers", int),
    "PUMPKINSCAN_WORKER_CONCURRENCY": ("concurrency", int),
    "PUMPKINSCAN_STORE": ("store_path", str),
    "PUMPKINSCAN_BUCKET": ("bucket", str),
    "PUMPKINSCAN_REQUEST_TIMEOUT": ("request_timeout_s", float),
    "PUMPKINSCAN_SWEEP_INTERVAL": ("sweep_interval_s", float),
    "PUMPKINSCAN_WORKER_FAILURE_POLICY": ("worker_failure_policy", str),
}


@dataclass
class ScanSettings:
    cidr: Optional[str]
    workers: int
    concurrency: int
    max_x: int
    max_y: int
    store_path: Path
    bucket: Optional[str]
    request_timeout_s: Optional[float]
    sweep_interval_s: float
    progress_interval_s: float
    worker_failure_policy: str
    max_respawns: int
    map_url: str
    evaluator: Dict[str, Any] = field(default_factory=dict)
    lookup: Dict[str, Any] = field(default_factory=dict)
    projection: Dict[str, Any] = field(default_factory=dict)

    @property
    def network(self) -> IPNetwork:
        if not self.cidr:
            raise ConfigError("cidr is required (set PUMPKINSCAN_CIDR or --cidr)")
        return parse_cidr(self.cidr)


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    return data


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for var, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(var, "").strip()
        if not raw:
            continue
        try:
            out[key] = convert(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid {var}={raw!r}: {e}") from e
    return out


def _validate(cfg: Dict[str, Any]):
    for key in ("workers", "concurrency", "max_x", "max_y"):
        if int(cfg[key]) < 1:
            raise ConfigError(f"{key} must be >= 1, got {cfg[key]}")
    if cfg["worker_failure_policy"] not in VALID_FAILURE_POLICIES:
        raise ConfigError(f"Invalid worker_failure_policy: {cfg['worker_failure_policy']}")
    if int(cfg["max_respawns"]) < 0:
        raise ConfigError("max_respawns must be >= 0")
    for section in ("evaluator", "lookup"):
        entry = (cfg.get(section) or {}).get("entry")
        if not entry or ":" not in entry:
            raise ConfigError(f"{section}.entry must be 'module:attr'")
    if cfg.get("cidr"):
        parse_cidr(cfg["cidr"])


def load_settings(
    path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> ScanSettings:
    environ = dict(os.environ) if environ is None else environ
    cfg = dict(DEFAULT_SETTINGS)
    cfg_file = path or (Path(environ["PUMPKINSCAN_CONFIG_FILE"]) if environ.get("PUMPKINSCAN_CONFIG_FILE") else None)
    if cfg_file:
        cfg = _deep_merge(cfg, _read_yaml(Path(cfg_file)))
    cfg = _deep_merge(cfg, _env_overrides(environ))
    cfg = _deep_merge(cfg, {k: v for k, v in (overrides or {}).items() if v is not None})
    if cfg.get("workers") is None:
        cfg["workers"] = default_worker_count()
    _validate(cfg)
    timeout = cfg.get("request_timeout_s")
    return ScanSettings(
        cidr=cfg.get("cidr"),
        workers=int(cfg["workers"]),
        concurrency=int(cfg["concurrency"]),
        max_x=int(cfg["max_x"]),
        max_y=int(cfg["max_y"]),
        store_path=Path(cfg["store_path"]),
        bucket=cfg.get("bucket"),
        request_timeout_s=None if timeout is None else float(timeout),
        sweep_interval_s=float(cfg["sweep_interval_s"]),
        progress_interval_s=float(cfg["progress_interval_s"]),
        worker_failure_policy=cfg["worker_failure_policy"],
        max_respawns=int(cfg["max_respawns"]),
        map_url=cfg["map_url"],
        evaluator=dict(cfg["evaluator"]),
        lookup=dict(cfg["lookup"]),
        projection=dict(cfg.get("projection") or {}),
    )


__all__ = ["ScanSettings", "load_settings", "default_worker_count", "DEFAULT_SETTINGS", "ENV_OVERRIDES", "ConfigError"]
