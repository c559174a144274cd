"""Process manager for out-of-process scan workers."""
from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import ProtocolError, WorkerFatalError, WorkerSpawnError
from .logging import logger
from .worker_protocol import WorkerConfig, WorkerMessage, decode_message

MessageHandler = Callable[["WorkerInfo", WorkerMessage], Awaitable[None]]


@dataclass
class WorkerInfo:
    index: int
    config: WorkerConfig
    process: Optional[asyncio.subprocess.Process] = None
    started: float = field(default_factory=time.time)
    status: str = "idle"
    returncode: Optional[int] = None


class ProcessManager:
    """Spawn workers as ``python -m pumpkinscan.core.worker_entry`` and stream their messages."""

    def __init__(self, python: str = sys.executable, env: Optional[Dict[str, str]] = None):
        self.python = python
        self.env = env
        self._workers: Dict[int, WorkerInfo] = {}

    @property
    def workers(self) -> List[WorkerInfo]:
        return list(self._workers.values())

    async def spawn(self, index: int, config: WorkerConfig) -> WorkerInfo:
        entrypoint = [self.python, "-m", "pumpkinscan.core.worker_entry"]
        logger.debug(f"spawn worker index={index} cmd={' '.join(entrypoint)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *entrypoint,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            raise WorkerSpawnError(f"Failed spawning worker {index}: {e}") from e
        wi = WorkerInfo(index=index, config=config, process=proc, status="running")
        self._workers[index] = wi
        return wi

    async def _send_config(self, wi: WorkerInfo) -> None:
        assert wi.process is not None and wi.process.stdin is not None
        stdin = wi.process.stdin
        try:
            stdin.write((wi.config.to_json() + "\n").encode())
            await stdin.drain()
            stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise WorkerFatalError(
                f"Worker {wi.index} exited before reading its config: {e}",
                index=wi.index,
                returncode=wi.process.returncode,
            ) from e

    async def _pump(self, wi: WorkerInfo, on_message: MessageHandler) -> None:
        assert wi.process is not None and wi.process.stdout is not None
        async for raw in wi.process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                msg = decode_message(line)
            except ProtocolError:
                # stray stdout (e.g. a library printing) is not part of the protocol
                logger.debug(f"worker {wi.index} ignored line: {line[:200]}")
                continue
            await on_message(wi, msg)

    async def run_worker(self, index: int, config: WorkerConfig, on_message: MessageHandler) -> WorkerInfo:
        """Run one worker to completion.

        Raises :class:`WorkerFatalError` when the worker exits non-zero
        or closes its stdin before taking the config. If
        *on_message* raises, the worker is killed and the error propagates.
        """
        wi = await self.spawn(index, config)
        assert wi.process is not None
        try:
            await self._send_config(wi)
            await self._pump(wi, on_message)
            wi.returncode = await wi.process.wait()
        except BaseException:
            await self.stop(index)
            wi.status = "failed"
            raise
        finally:
            self._workers.pop(index, None)
        logger.info(f"Worker {index} exited with code {wi.returncode}")
        if wi.returncode != 0:
            wi.status = "failed"
            raise WorkerFatalError(
                f"Worker {index} stopped with exit code {wi.returncode}", index=index, returncode=wi.returncode
            )
        wi.status = "completed"
        return wi

    async def stop(self, index: int) -> None:
        wi = self._workers.get(index)
        if wi and wi.process and wi.process.returncode is None:
            try:
                wi.process.kill()
            except ProcessLookupError:
                pass
            wi.returncode = await wi.process.wait()

    async def stop_all(self) -> None:
        for index in list(self._workers):
            await self.stop(index)


__all__ = ["ProcessManager", "WorkerInfo", "MessageHandler"]
