"""Framework for config generation daemons.

Many servers read a configuration file that needs to change over time. A
ConfigGenerator owns one such file: it regenerates the contents
periodically, when watched files change, or on request; writes the new
file only if it differs (or a reload is forced); reloads the server; and
rolls back if the server didn't take it.

To build a config generator:

1. Subclass ConfigGenerator and implement config_file, config_data and
   reload_server (and optionally config_ok, sleep_duration,
   cooldown_duration and the before/after regeneration hooks). Any of
   these may be plain or async functions.

2. Declare watches: the `watches` class attribute for paths that never
   change, watch() for paths only known at runtime, or pass a WatchSet
   to the constructor.

3. Instantiate and start:

       class MyConfig(ConfigGenerator):
           ...

       if __name__ == "__main__":
           MyConfig().start()

Signals are hooked while running:
- SIGHUP: regenerate the config and force a server reload
- SIGINT/SIGTERM: stop after any regeneration in progress
- SIGUSR1/SIGUSR2: increase/decrease log verbosity
"""

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import ClassVar

from confgen.events import Channel, WakeReason, wait_any
from confgen.metrics import MetricsRecorder
from confgen.reload.cycle import ConfigCycler, CycleResult, call_port
from confgen.reload.safety import validate_durations
from confgen.reload.watcher import (
    WatchKind,
    WatchPath,
    WatchSet,
    WatchSource,
    open_watch_source,
)
from confgen.settings import GeneratorSettings, service_name

logger = logging.getLogger(__name__)

# Root logger for the package; SIGUSR1/SIGUSR2 adjust its level
package_logger = logging.getLogger("confgen")


class EngineState(str, Enum):
    """Lifecycle of the regeneration engine."""

    STARTING = "starting"
    RUNNING = "running"
    TERMINATED = "terminated"


class ConfigGenerator(ABC):
    """Base class for config generators.

    Owns the regeneration loop: waits on file watches, the regeneration
    trigger, the termination request and a timeout, and runs one
    regeneration per wake-up. Regenerations never overlap, and shutdown
    is only honoured between them.
    """

    # Paths watched by every instance of the class
    watches: ClassVar[Iterable[str]] = ()

    # How many CycleResults to keep
    history_limit: ClassVar[int] = 50

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        *,
        settings: GeneratorSettings | None = None,
        watches: WatchSet | Iterable[str | Path] | None = None,
        prefix: str | None = None,
    ):
        """Create a config generator.

        Args:
            env: Environment to read settings from; defaults to os.environ.
            settings: Ready-made settings (env and prefix are then ignored).
            watches: Extra paths to watch, merged with the class-level watches.
            prefix: Environment variable prefix; defaults to the class name
                in upper snake case.

        Raises:
            InvalidDurationError: If sleep/cooldown durations are invalid.
            SettingsError: If the environment holds invalid settings.
        """
        self.settings = settings or GeneratorSettings.from_env(
            prefix or service_name(type(self)), env
        )
        self.metrics = MetricsRecorder(self.settings.metrics_prefix)

        self._sleep = float(self.sleep_duration())
        self._cooldown = float(self.cooldown_duration())
        validate_durations(self._sleep, self._cooldown)

        self._watches = WatchSet(self.watches)
        if watches is not None:
            self._watches.update(watches)

        self._trigger = Channel("trigger")
        self._terminate = Channel("terminate")
        self._cycler = ConfigCycler(self, self.metrics)
        self._watch_source: WatchSource | None = None
        self._history: list[CycleResult] = []
        self._signals: list[int] = []
        self.metrics_server = None
        self.config_path: Path | None = None
        self.state = EngineState.STARTING

    # ------------------------------------------------------------------
    # Ports implemented by subclasses

    @abstractmethod
    def config_file(self) -> str | Path:
        """The absolute path of the config file to write."""

    @abstractmethod
    def config_data(self) -> bytes | str:
        """Generate the desired contents of the config file.

        Compared against the current file to decide whether the server
        needs reloading. May raise; the regeneration is then skipped and
        the live file left alone.
        """

    @abstractmethod
    def reload_server(self) -> None:
        """Make the server pick up the new config file.

        Should not return until the reload is complete. Any exception
        marks the reload as failed.
        """

    def config_ok(self) -> bool:
        """Whether the server is running happily on its current config.

        Used around each reload: if the server was healthy before and is
        not afterwards, the previous config is restored. Defaults to True
        for servers that can't be interrogated.
        """
        return True

    def before_regenerate_config(
        self, force_reload: bool, existing_hash: str, existing_data: bytes
    ) -> None:
        """Called before each regeneration with the current file contents."""

    def after_regenerate_config(
        self,
        force_reload: bool,
        config_was_different: bool,
        config_was_cycled: bool,
        new_hash: str | None,
    ) -> None:
        """Called after each regeneration with what happened."""

    def sleep_duration(self) -> float:
        """Seconds between proactive regenerations; must not be negative."""
        return 60

    def cooldown_duration(self) -> float:
        """Seconds after a regeneration during which wake-ups are held back.

        Bursts of file changes or triggers in this window collapse into a
        single regeneration. Must be between 0 and sleep_duration.
        """
        return 5

    # ------------------------------------------------------------------
    # Control surface

    def watch(self, *paths: str | Path, kind: WatchKind | None = None) -> list[WatchPath]:
        """Watch files or directories for this instance.

        Whenever a watched file is written, or anything under a watched
        directory (recursively) is created, modified, deleted or moved, the
        config is regenerated and the server reloaded.
        """
        if self._watch_source is not None:
            return [self._watch_source.register(p, kind) for p in paths]
        return [self._watches.add(p, kind) for p in paths]

    @property
    def watch_set(self) -> WatchSet:
        return self._watches

    def trigger_regen(self) -> None:
        """Request a regeneration with a forced reload.

        Safe from any thread. Requests made before the loop gets to them
        collapse into one regeneration.
        """
        self._trigger.fire()

    def shutdown(self) -> None:
        """Ask the loop to stop. Idempotent and safe from any thread."""
        self._terminate.fire()

    def get_cycle_history(self, limit: int = 10) -> list[CycleResult]:
        """Most recent regeneration results, oldest first."""
        return self._history[-limit:] if limit > 0 else []

    @property
    def last_result(self) -> CycleResult | None:
        return self._history[-1] if self._history else None

    # ------------------------------------------------------------------
    # Running

    def start(self) -> None:
        """Run the generator until shut down. Blocks."""
        asyncio.run(self.run())

    async def run(self) -> None:
        """Generate, then regenerate on every wake-up until shut down.

        The package log level comes from settings unless it was already set
        (by the CLI, or by the embedding application).

        Raises:
            OSError: Filesystem errors on the config file are fatal.
        """
        if package_logger.level == logging.NOTSET:
            package_logger.setLevel(self.settings.logging_level)
        logger.info("Commencing config management")
        loop = asyncio.get_running_loop()
        self.state = EngineState.STARTING
        self._trigger.bind(loop)
        self._terminate.bind(loop)
        self.config_path = Path(await call_port(self.config_file))
        self._install_signal_handlers(loop)
        self._start_metrics_server()

        try:
            await self._write_initial_config()

            if self.settings.oneshot:
                logger.info("One-shot mode: initial config generated, exiting")
                return

            self._watch_source = open_watch_source(self._watches, loop, config_file=self.config_path)
            self.state = EngineState.RUNNING
            await self._main_loop()
        finally:
            self.state = EngineState.TERMINATED
            if self._watch_source is not None:
                self._watch_source.stop()
            self._remove_signal_handlers(loop)
            self._stop_metrics_server()
            self._trigger.unbind()
            self._terminate.unbind()
            logger.info("Config management stopped")

    async def regenerate_config(self, force_reload: bool = False) -> CycleResult:
        """Run one regeneration attempt now."""
        if self.config_path is None:
            self.config_path = Path(await call_port(self.config_file))
        result = await self._cycler.regenerate(self.config_path, force_reload=force_reload)
        self._record(result)
        return result

    async def _write_initial_config(self) -> None:
        """Write a config file if none exists, otherwise bring it up to date."""
        if self.config_path.exists():
            logger.info("Triggering a config regen on startup to ensure config is up-to-date")
            await self.regenerate_config()
        else:
            logger.info(f"No existing config file {self.config_path} found; writing one")
            self._record(await self._cycler.bootstrap(self.config_path))

    async def _main_loop(self) -> None:
        while True:
            reason = await self._next_wake()

            if reason is WakeReason.TERMINATE:
                logger.debug("triggered by termination request")
                break

            if reason is WakeReason.WATCH_EVENT:
                for event in self._watch_source.drain():
                    logger.info(
                        f"detected {event.change_type} on {event.path}; regenerating config"
                    )
            elif reason is WakeReason.MANUAL_TRIGGER:
                count = self._trigger.drain()
                logger.debug(f"triggered by regen trigger ({count} requests)")
            else:
                logger.debug("triggered by timeout")

            await self.regenerate_config(force_reload=reason.forces_reload)

    async def _next_wake(self) -> WakeReason:
        """Wait for the next reason to act, honouring the cooldown."""
        if self._cooldown > 0:
            logger.debug(f"Cooling down for {self._cooldown} seconds")
            await wait_any([self._terminate], self._cooldown)
            if self._terminate.pending:
                return WakeReason.TERMINATE

        sleep = self._sleep - self._cooldown
        logger.debug(f"Sleeping for {sleep} seconds")
        watch_channel = self._watch_source.channel
        await wait_any([self._terminate, watch_channel, self._trigger], sleep)

        if self._terminate.pending:
            return WakeReason.TERMINATE
        if watch_channel.pending:
            return WakeReason.WATCH_EVENT
        if self._trigger.pending:
            return WakeReason.MANUAL_TRIGGER
        return WakeReason.TIMEOUT

    def _record(self, result: CycleResult) -> None:
        self._history.append(result)
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_limit :]

    # ------------------------------------------------------------------
    # Signals

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        handlers = {
            "SIGHUP": self._on_sighup,
            "SIGINT": self._on_terminate_signal,
            "SIGTERM": self._on_terminate_signal,
            "SIGUSR1": self._on_verbosity_signal,
            "SIGUSR2": self._on_verbosity_signal,
        }
        for name, handler in handlers.items():
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, handler, signum)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"Cannot handle {name} here: {e}")
                continue
            self._signals.append(signum)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in self._signals:
            loop.remove_signal_handler(signum)
        self._signals = []

    def _count_signal(self, signum: int) -> str:
        name = signal.Signals(signum).name
        self.metrics.signals_total.inc({"signal": name})
        return name

    def _on_sighup(self, signum: int) -> None:
        self._count_signal(signum)
        logger.info("received SIGHUP, triggering config regeneration")
        self.trigger_regen()

    def _on_terminate_signal(self, signum: int) -> None:
        name = self._count_signal(signum)
        logger.info(f"received {name}, shutting down")
        self.shutdown()

    def _on_verbosity_signal(self, signum: int) -> None:
        name = self._count_signal(signum)
        step = -10 if name == "SIGUSR1" else 10
        level = min(max(package_logger.getEffectiveLevel() + step, logging.DEBUG), logging.CRITICAL)
        package_logger.setLevel(level)
        logger.warning(f"received {name}, log level now {logging.getLevelName(level)}")

    # ------------------------------------------------------------------
    # Metrics server

    def _start_metrics_server(self) -> None:
        if self.settings.metrics_port is None or self.metrics_server is not None:
            return
        from confgen.api.server import MetricsServer

        self.metrics_server = MetricsServer(
            self, host=self.settings.metrics_host, port=self.settings.metrics_port
        )
        self.metrics_server.start()

    def _stop_metrics_server(self) -> None:
        if self.metrics_server is not None:
            self.metrics_server.stop()
            self.metrics_server = None
