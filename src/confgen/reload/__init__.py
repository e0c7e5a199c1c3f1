"""Regeneration support: file watching, atomic swap and rollback.

- File watching for changes that force a regeneration
- Atomic replacement of the live config file
- Server reload with health checks
- Rollback when a change breaks a healthy server
"""

from confgen.reload.cycle import ConfigCycler, CycleResult, RegenOutcome
from confgen.reload.safety import validate_durations
from confgen.reload.watcher import (
    NullWatchSource,
    WatchEvent,
    WatchKind,
    WatchPath,
    WatchSet,
    WatchSource,
)

__all__ = [
    "ConfigCycler",
    "CycleResult",
    "NullWatchSource",
    "RegenOutcome",
    "WatchEvent",
    "WatchKind",
    "WatchPath",
    "WatchSet",
    "WatchSource",
    "validate_durations",
]
