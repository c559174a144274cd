"""Misc helper utilities."""
from __future__ import annotations
from importlib import import_module
from typing import Any

from .errors import ConfigError


def import_entry(entry: str) -> Any:
    """Resolve a ``module:attr`` entry string to the object it names."""
    if ":" not in entry:
        raise ConfigError(f"entry must be 'module:attr', got {entry!r}")
    module_name, attr = entry.split(":", 1)
    try:
        mod = import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import {module_name!r} for entry {entry!r}: {e}") from e
    try:
        return getattr(mod, attr)
    except AttributeError as e:
        raise ConfigError(f"{module_name!r} has no attribute {attr!r}") from e

__all__ = ["import_entry"]
