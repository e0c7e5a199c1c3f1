"""Atomic config swap with reload and rollback.

Handles one regeneration attempt:
- Generating candidate config contents
- Deciding whether the live file needs replacing
- Swapping the new file into place atomically
- Reloading the server and checking it is still healthy
- Rolling back to the previous file if the change broke things
"""

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from confgen.metrics import MetricsRecorder
from confgen.reload.safety import config_diff, content_hash, match_permissions

if TYPE_CHECKING:
    from confgen.generator import ConfigGenerator

logger = logging.getLogger(__name__)


def _read_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# Read once at import, before any observer or server thread exists
PROCESS_UMASK = _read_umask()


async def call_port(func: Callable[..., Any], *args: Any) -> Any:
    """Call a generator port that may be a plain or async function."""
    result = func(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


class RegenOutcome(str, Enum):
    """Outcome of a regeneration attempt."""

    UNCHANGED = "unchanged"
    SUCCESS = "success"
    RELOAD_FAILURE = "failure"
    BAD_CONFIG_ROLLED_BACK = "bad-config"
    EVERYTHING_IS_AWFUL = "everything-is-awful"
    GENERATION_FAILED = "generation-failed"
    CREATED = "created"


@dataclass(frozen=True)
class CandidateArtifact:
    """Freshly generated config contents."""

    data: bytes
    hash: str

    @classmethod
    def from_data(cls, data: bytes | str) -> "CandidateArtifact":
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not isinstance(data, bytes):
            raise TypeError(f"config_data must return bytes or str, not {type(data).__name__}")
        return cls(data=data, hash=content_hash(data))


@dataclass
class GenerationResult:
    """Result of calling config_data."""

    artifact: CandidateArtifact | None = None
    error: BaseException | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.artifact is not None


@dataclass
class ReloadAttempt:
    """Result of calling reload_server."""

    ok: bool
    error: BaseException | None = None


@dataclass
class CycleResult:
    """Result of a regeneration attempt."""

    outcome: RegenOutcome
    force_reload: bool
    existing_hash: str | None = None
    new_hash: str | None = None
    config_was_different: bool = False
    config_was_cycled: bool = False
    diff: str = ""
    error_message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class ConfigCycler:
    """Swaps generated config into place and reloads the server.

    Flow:
    1. Read the live file and tell the generator what is there
    2. Generate new contents (a failure ends the attempt, nothing written)
    3. Write them to a temp file beside the live file and diff the two
    4. If forced or different: back up, rename into place, reload
    5. Classify the reload, rolling back if a healthy server was broken
    6. Tell the generator what happened
    7. Always: update timestamps and remove temp/backup files
    """

    def __init__(self, generator: "ConfigGenerator", metrics: MetricsRecorder):
        self.generator = generator
        self.metrics = metrics

    async def generate(self) -> GenerationResult:
        """Call config_data with instrumentation.

        Exceptions are logged and returned rather than raised.
        """
        self.metrics.generation_requests.inc()
        self.metrics.generation_in_progress.inc()
        start = time.monotonic()
        try:
            artifact = CandidateArtifact.from_data(await call_port(self.generator.config_data))
        except Exception as e:
            logger.error(f"Call to config_data raised exception: {type(e).__name__}: {e}", exc_info=True)
            self.metrics.generation_exceptions.inc({"class": type(e).__name__})
            self.metrics.generation_ok.set(0)
            return GenerationResult(error=e, duration=time.monotonic() - start)
        finally:
            self.metrics.generation_in_progress.dec()
            self.metrics.generation_duration.observe(time.monotonic() - start)

        self.metrics.generation_ok.set(1)
        return GenerationResult(artifact=artifact, duration=time.monotonic() - start)

    async def bootstrap(self, config_file: Path) -> CycleResult:
        """Write the first config file when none exists; never reloads."""
        generation = await self.generate()
        self.metrics.last_generation_timestamp.set(time.time())
        if not generation.ok:
            logger.warning(f"Initial config generation failed; {config_file} not written")
            return CycleResult(
                outcome=RegenOutcome.GENERATION_FAILED,
                force_reload=False,
                error_message=str(generation.error),
            )

        artifact = generation.artifact
        fd, name = tempfile.mkstemp(prefix=f".{config_file.name}.", suffix=".tmp", dir=config_file.parent)
        tmp_path = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(artifact.data)
            os.chmod(tmp_path, 0o666 & ~PROCESS_UMASK)
            os.replace(tmp_path, config_file)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()

        self.metrics.last_change_timestamp.set(time.time())
        logger.info(f"Wrote initial config {config_file} (hash {artifact.hash})")
        return CycleResult(
            outcome=RegenOutcome.CREATED,
            force_reload=False,
            new_hash=artifact.hash,
            config_was_different=True,
        )

    async def regenerate(self, config_file: Path, force_reload: bool = False) -> CycleResult:
        """Run one regeneration attempt against the live config file.

        Args:
            config_file: The live config file; must exist.
            force_reload: Reload the server even if the contents are unchanged.

        Returns:
            CycleResult describing the outcome.

        Raises:
            OSError: Filesystem failures on the live or temp file are not recovered.
        """
        logger.debug(f"force? {force_reload}")
        existing = config_file.read_bytes()
        existing_hash = content_hash(existing)
        await call_port(self.generator.before_regenerate_config, force_reload, existing_hash, existing)

        result = CycleResult(
            outcome=RegenOutcome.UNCHANGED, force_reload=force_reload, existing_hash=existing_hash
        )
        tmp_path: Path | None = None
        backup_path: Path | None = None
        try:
            generation = await self.generate()
            if not generation.ok:
                result.outcome = RegenOutcome.GENERATION_FAILED
                result.error_message = f"{type(generation.error).__name__}: {generation.error}"
            else:
                artifact = generation.artifact
                fd, name = tempfile.mkstemp(
                    prefix=f".{config_file.name}.", suffix=".tmp", dir=config_file.parent
                )
                tmp_path = Path(name)
                logger.debug(f"Tempfile is {tmp_path}")
                with os.fdopen(fd, "wb") as f:
                    f.write(artifact.data)
                logger.debug(f"Existing config hash: {existing_hash}, new config hash: {artifact.hash}")

                match_permissions(config_file, tmp_path)

                result.new_hash = artifact.hash
                result.diff = config_diff(existing, artifact.data, str(config_file), str(tmp_path))
                result.config_was_different = result.diff != ""
                if result.config_was_different:
                    logger.info(f"Config has changed.  Diff:\n{result.diff}")

                if force_reload:
                    logger.debug("Forcing config reload because force_reload is set")

                if force_reload or result.config_was_different:
                    backup_path = tmp_path.with_name(f"{tmp_path.name}.old")
                    result.outcome, error = await self._cycle(config_file, tmp_path, backup_path)
                    result.config_was_cycled = True
                    if error is not None:
                        result.error_message = f"{type(error).__name__}: {error}"

            await call_port(
                self.generator.after_regenerate_config,
                force_reload,
                result.config_was_different,
                result.config_was_cycled,
                result.new_hash,
            )
        finally:
            self.metrics.last_generation_timestamp.set(time.time())
            self.metrics.last_change_timestamp.set(config_file.stat().st_mtime)
            for path in (backup_path, tmp_path):
                if path is not None:
                    with contextlib.suppress(FileNotFoundError):
                        path.unlink()

        logger.info(
            f"Regeneration finished: {result.outcome.value} "
            f"(forced={force_reload}, hash {existing_hash} -> {result.new_hash})"
        )
        return result

    async def _reload(self) -> ReloadAttempt:
        logger.debug("Reloading the server...")
        try:
            await call_port(self.generator.reload_server)
        except Exception as e:
            return ReloadAttempt(ok=False, error=e)
        return ReloadAttempt(ok=True)

    async def _cycle(
        self, config_file: Path, new_config: Path, backup: Path
    ) -> tuple[RegenOutcome, BaseException | None]:
        """Move new_config into place and reload, rolling back if needed."""
        logger.debug(f"Cycling {new_config} into operation")

        # Only roll back if this cycle is what broke the server
        config_was_ok = bool(await call_port(self.generator.config_ok))
        logger.debug("Current config is OK" if config_was_ok else "Current config is a dumpster fire")

        shutil.copyfile(config_file, backup)
        os.replace(new_config, config_file)

        reload = await self._reload()
        if not reload.ok:
            logger.error(
                f"Server reload failed: {type(reload.error).__name__}: {reload.error}",
                exc_info=reload.error,
            )
            if config_was_ok:
                os.replace(backup, config_file)
                logger.info("Restored previous config file")
            self.metrics.reload_total.inc({"status": RegenOutcome.RELOAD_FAILURE.value})
            return RegenOutcome.RELOAD_FAILURE, reload.error

        logger.debug("Server reloaded successfully")

        if await call_port(self.generator.config_ok):
            self.metrics.config_ok.set(1)
            self.metrics.reload_total.inc({"status": RegenOutcome.SUCCESS.value})
            logger.info("Configuration successfully updated.")
            return RegenOutcome.SUCCESS, None

        self.metrics.config_ok.set(0)
        if config_was_ok:
            logger.warning(
                "New config file failed config_ok check; rolling back to previous known-good config"
            )
            os.replace(backup, config_file)
            retry = await self._reload()
            if not retry.ok:
                logger.error(
                    f"Reload of restored config failed: {type(retry.error).__name__}: {retry.error}"
                )
            self.metrics.reload_total.inc({"status": RegenOutcome.BAD_CONFIG_ROLLED_BACK.value})
            return RegenOutcome.BAD_CONFIG_ROLLED_BACK, None

        logger.warning(
            "New config file failed config_ok check; "
            "leaving new config in place because old config is broken too"
        )
        self.metrics.reload_total.inc({"status": RegenOutcome.EVERYTHING_IS_AWFUL.value})
        return RegenOutcome.EVERYTHING_IS_AWFUL, None
