"""Core scanning components for pumpkinscan.

Modules:
  addresses: CIDR host ranges, per-worker offset allocation, random source addresses.
  freebind: Sockets bound to arbitrary addresses of an owned block (httpcore backend).
  dispatcher: httpx transports whose connections leave from a chosen source address.
  worker_protocol: JSON line protocol between the orchestrator and worker processes.
  worker: Bounded-concurrency tile scan of one row range.
  worker_entry: Subprocess entrypoint for a worker.
  process_manager: Spawn worker subprocesses and stream their messages.
  orchestrator: Grid partitioning, pass loop, periodic sweep and progress.
  matches: Turn matches into store mutations (single writer).
  store: Persisted pumpkin records.
  config_loader: Defaults, YAML, environment and CLI settings.
  logging / metrics / errors / utils: ambient helpers.
"""

from .errors import ScanError  # noqa: F401
