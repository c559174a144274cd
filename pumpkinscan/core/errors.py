"""Centralized exception hierarchy for the scanner."""
from __future__ import annotations

from typing import Any, List, Optional


class ScanError(Exception):
    """Base class for all scanner related errors."""


class ConfigError(ScanError):
    pass


class AllocationError(ConfigError):  # address/offset partitioning
    pass


class FreebindError(ScanError):
    """Failure producing a bound, connected socket."""


class BindError(FreebindError):
    pass


class ConnectError(FreebindError):
    pass


class MatchEvaluationError(ScanError):
    pass


class EventLookupError(ScanError):
    pass


class ProtocolError(ScanError):  # malformed worker message / spawn contract
    pass


class WorkerSpawnError(ScanError):
    pass


class WorkerFatalError(ScanError):
    def __init__(self, message: str, *, index: Optional[int] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.index = index
        self.returncode = returncode


class PassFailedError(ScanError):
    def __init__(self, message: str, summary: Any = None, failures: Optional[List[BaseException]] = None):
        super().__init__(message)
        self.summary = summary
        self.failures = list(failures or [])


class PersistenceError(ScanError):
    pass
