"""Subprocess worker entrypoint (JSON line protocol).

Started as ``python -m pumpkinscan.core.worker_entry`` by the process manager.
Reads one :class:`WorkerConfig` line from stdin, scans its rows and writes
worker messages to stdout, one JSON object per line. Logs go to stderr.

Exit codes: 0 after the ``done`` message, 1 on any uncaught fault.
"""
from __future__ import annotations

import asyncio
import sys
from typing import TextIO

from .logging import logger, setup_logging
from .worker import TileWorker, load_evaluator
from .worker_protocol import WorkerConfig, WorkerMessage, encode_message


def make_emitter(out: TextIO):
    def emit(msg: WorkerMessage) -> None:
        out.write(encode_message(msg) + "\n")
        out.flush()

    return emit


async def run_worker(config: WorkerConfig, out: TextIO) -> None:
    evaluator = load_evaluator(config.evaluator.entry, config.evaluator.params)
    worker = TileWorker(config, evaluator, make_emitter(out))
    await worker.run()


def main(stdin: TextIO = sys.stdin, stdout: TextIO = sys.stdout) -> int:
    setup_logging()
    try:
        line = stdin.readline()
        if not line.strip():
            raise ValueError("no worker config on stdin")
        config = WorkerConfig.from_json(line)
        asyncio.run(run_worker(config, stdout))
    except Exception:  # noqa: BLE001 - reported through the exit code
        logger.exception("worker failed")
        logger.complete()
        return 1
    logger.complete()
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
