"""Filesystem watching for config regeneration.

Watches come in two flavours:
- File watches fire when a write to that exact file completes
- Directory watches are recursive and fire when anything beneath the
  directory is created, modified, deleted or moved

Notification comes from a watchdog observer running in its own thread.
If native notification cannot be set up, a NullWatchSource that never
fires is used instead, so the regeneration loop keeps working off its
timeout alone.
"""

import asyncio
import logging
import os
import sys
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from confgen.events.channel import Channel, wait_any

logger = logging.getLogger(__name__)

# inotify reports close-after-write; elsewhere a modify is the best we get
FILE_EVENT_TYPES = frozenset(
    {"closed", "moved"} if sys.platform.startswith("linux") else {"closed", "moved", "modified"}
)
DIRECTORY_EVENT_TYPES = frozenset({"created", "modified", "deleted", "moved"})


class WatchKind(str, Enum):
    """What a watched path is."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class WatchPath:
    """A single registered watch."""

    path: Path
    kind: WatchKind


@dataclass
class WatchEvent:
    """Represents a detected change to a watched path."""

    path: Path
    change_type: str  # watchdog event type: "created", "modified", "closed", ...
    watch: WatchPath
    detected_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class WatchSet:
    """The set of paths whose changes force a regeneration.

    Paths are only ever added. A path registered twice keeps the kind it
    was first registered with.
    """

    def __init__(self, paths: Iterable[str | Path] = ()):
        self._entries: dict[Path, WatchKind] = {}
        for path in paths:
            self.add(path)

    def add(self, path: str | Path, kind: WatchKind | None = None) -> WatchPath:
        """Register a path.

        Args:
            path: File or directory to watch.
            kind: Explicit kind; detected from the filesystem when omitted
                (anything that is not an existing directory is a file).

        Returns:
            The registered watch.
        """
        resolved = Path(path).expanduser().absolute()
        if kind is None:
            kind = WatchKind.DIRECTORY if resolved.is_dir() else WatchKind.FILE
        kind = self._entries.setdefault(resolved, WatchKind(kind))
        return WatchPath(resolved, kind)

    def update(self, other: Iterable[str | Path | WatchPath]) -> None:
        """Merge paths (or another WatchSet) into this one."""
        for item in other:
            if isinstance(item, WatchPath):
                self.add(item.path, item.kind)
            else:
                self.add(item)

    def __iter__(self) -> Iterator[WatchPath]:
        return iter([WatchPath(path, kind) for path, kind in self._entries.items()])

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        if isinstance(path, WatchPath):
            path = path.path
        if not isinstance(path, (str, Path)):
            return False
        return Path(path).expanduser().absolute() in self._entries

    def __repr__(self) -> str:
        items = ", ".join(f"{w.path}({w.kind.value})" for w in self)
        return f"WatchSet([{items}])"


class _WatchHandler(FileSystemEventHandler):
    """Routes watchdog events for one watch into the owning source."""

    def __init__(self, watch: WatchPath, record: Callable[[WatchEvent], None]):
        super().__init__()
        self.watch = watch
        self._record = record

    def _event_paths(self, event: FileSystemEvent) -> list[Path]:
        paths = [Path(os.fsdecode(event.src_path))]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(Path(os.fsdecode(dest)))
        return paths

    def on_any_event(self, event: FileSystemEvent) -> None:
        if self.watch.kind is WatchKind.FILE:
            if event.is_directory or event.event_type not in FILE_EVENT_TYPES:
                return
            # The parent directory is what is being observed, so only take
            # events that touch the watched file itself.
            if self.watch.path not in self._event_paths(event):
                return
            path = self.watch.path
        else:
            if event.event_type not in DIRECTORY_EVENT_TYPES:
                return
            path = self._event_paths(event)[-1]

        self._record(WatchEvent(path=path, change_type=event.event_type, watch=self.watch))


class WatchSource:
    """Watch Source backed by a watchdog observer.

    Usage:
        source = WatchSource(watch_set)
        source.start(asyncio.get_running_loop())

        await source.wait()          # until something changes
        events = source.drain()      # acknowledge the whole backlog
    """

    def __init__(
        self,
        watches: WatchSet | None = None,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.watches = watches if watches is not None else WatchSet()
        self.channel = Channel("watch")
        self._observer_factory = observer_factory
        self._observer: Observer | None = None
        self._lock = threading.Lock()
        self._buffer: list[WatchEvent] = []
        self._ignored: Path | None = None

    @property
    def active(self) -> bool:
        """Whether native notification is running."""
        return self._observer is not None and self._observer.is_alive()

    def ignore_self_writes(self, config_file: Path) -> None:
        """Drop events caused by swapping config_file (and its temp/backup files)."""
        self._ignored = config_file.absolute()
        if self._ignored in self.watches:
            logger.warning(
                f"{self._ignored} is the generated config file; "
                "changes to it will not trigger regeneration"
            )

    def _is_self_write(self, path: Path) -> bool:
        if self._ignored is None or path.parent != self._ignored.parent:
            return False
        name = self._ignored.name
        return path.name == name or path.name.startswith(f".{name}.")

    def _record(self, event: WatchEvent) -> None:
        if self._is_self_write(event.path):
            return
        logger.debug(f"watcher: {event.change_type} on {event.path}")
        with self._lock:
            self._buffer.append(event)
        self.channel.fire()

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind to the loop and start the observer thread.

        Raises:
            OSError: If the native notification facility is unavailable.
        """
        self.channel.bind(loop)
        observer = self._observer_factory()
        for watch in self.watches:
            self._schedule(observer, watch)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"Watching {len(self.watches)} paths for changes")

    def register(self, path: str | Path, kind: WatchKind | None = None) -> WatchPath:
        """Add a watch; scheduled immediately if the observer is running."""
        watch = self.watches.add(path, kind)
        if self._observer is not None:
            self._schedule(self._observer, watch)
        return watch

    def _schedule(self, observer: Observer, watch: WatchPath) -> None:
        if watch.kind is WatchKind.DIRECTORY:
            target, recursive = watch.path, True
        else:
            target, recursive = watch.path.parent, False

        if not target.is_dir():
            logger.warning(f"Cannot watch {watch.path}: {target} is not a directory")
            return

        observer.schedule(_WatchHandler(watch, self._record), str(target), recursive=recursive)
        logger.debug(f"Scheduled {watch.kind.value} watch on {watch.path}")

    async def wait(self, timeout: float | None = None) -> bool:
        """Block until at least one change is pending, or timeout seconds pass.

        Returns:
            True if changes are waiting to be drained.
        """
        if timeout is None:
            await self.channel.wait()
            return True
        return await wait_any([self.channel], timeout)

    def drain(self) -> list[WatchEvent]:
        """Acknowledge every buffered change.

        Returns:
            The buffered events, keeping only the latest per path.
        """
        with self._lock:
            events = self._buffer
            self._buffer = []
            self.channel.drain()

        latest: dict[Path, WatchEvent] = {}
        for event in events:
            latest.pop(event.path, None)
            latest[event.path] = event
        return list(latest.values())

    def stop(self) -> None:
        """Stop the observer thread."""
        self.channel.unbind()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.debug("Watch observer stopped")


class NullWatchSource(WatchSource):
    """A Watch Source that never fires.

    Used when native filesystem notification cannot be set up.
    """

    @property
    def active(self) -> bool:
        return False

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self.channel.bind(loop)
        if len(self.watches):
            logger.warning(
                f"File watching unavailable; {len(self.watches)} watches will be ignored"
            )

    def register(self, path: str | Path, kind: WatchKind | None = None) -> WatchPath:
        return self.watches.add(path, kind)

    def stop(self) -> None:
        self.channel.unbind()


def open_watch_source(
    watches: WatchSet,
    loop: asyncio.AbstractEventLoop,
    config_file: Path | None = None,
    observer_factory: Callable[[], Observer] = Observer,
) -> WatchSource:
    """Start a WatchSource, degrading to a NullWatchSource on failure."""
    source = WatchSource(watches, observer_factory=observer_factory)
    if config_file is not None:
        source.ignore_self_writes(config_file)
    try:
        source.start(loop)
        return source
    except Exception as e:
        logger.warning(f"Native file watching failed to start ({type(e).__name__}: {e})")
        source.stop()

    fallback = NullWatchSource(watches)
    fallback.start(loop)
    return fallback
