"""Pytest configuration and fixtures."""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

import pytest

from confgen import ConfigGenerator, GeneratorSettings


class RecordingGenerator(ConfigGenerator):
    """A config generator that records every call made to it.

    config_ok answers from `health` in order, then True once exhausted.
    """

    def __init__(
        self,
        path: Path,
        data: bytes | str = b"generated\n",
        *,
        sleep: float = 60,
        cooldown: float = 0,
        health: Iterable[bool] = (),
        reload_error: Exception | None = None,
        generation_error: Exception | None = None,
        **kwargs,
    ):
        self.path = path
        self.data = data
        self.sleep = sleep
        self.cooldown = cooldown
        self.health = list(health)
        self.reload_error = reload_error
        self.generation_error = generation_error
        self.on_generate: Callable[[], object] | None = None

        self.generate_calls = 0
        self.reload_calls = 0
        self.config_ok_calls = 0
        self.before_calls: list[tuple] = []
        self.after_calls: list[tuple] = []

        kwargs.setdefault("settings", GeneratorSettings(prefix="TEST_CONFIG"))
        super().__init__(**kwargs)

    def config_file(self) -> Path:
        return self.path

    async def config_data(self) -> bytes | str:
        self.generate_calls += 1
        if self.on_generate is not None:
            result = self.on_generate()
            if asyncio.iscoroutine(result):
                await result
        if self.generation_error is not None:
            raise self.generation_error
        return self.data

    def reload_server(self) -> None:
        self.reload_calls += 1
        if self.reload_error is not None:
            raise self.reload_error

    def config_ok(self) -> bool:
        self.config_ok_calls += 1
        if self.health:
            return self.health.pop(0)
        return True

    def before_regenerate_config(self, force_reload, existing_hash, existing_data) -> None:
        self.before_calls.append((force_reload, existing_hash, existing_data))

    def after_regenerate_config(
        self, force_reload, config_was_different, config_was_cycled, new_hash
    ) -> None:
        self.after_calls.append((force_reload, config_was_different, config_was_cycled, new_hash))

    def sleep_duration(self) -> float:
        return self.sleep

    def cooldown_duration(self) -> float:
        return self.cooldown

    @property
    def forced_flags(self) -> list[bool]:
        """force_reload of every regeneration so far, in order."""
        return [call[0] for call in self.before_calls]


async def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll condition until true, failing the test after timeout seconds."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(0.01)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    """A live config file holding "current\\n"."""
    path = tmp_path / "server.conf"
    path.write_bytes(b"current\n")
    return path


@pytest.fixture
def make_generator(config_path: Path) -> Callable[..., RecordingGenerator]:
    """Build a RecordingGenerator for the live config file."""

    def factory(data: bytes | str = b"generated\n", **kwargs) -> RecordingGenerator:
        path = kwargs.pop("path", config_path)
        return RecordingGenerator(path, data, **kwargs)

    return factory


@pytest.fixture(autouse=True)
def restore_package_log_level():
    """Put the confgen logger level back after each test."""
    package_logger = logging.getLogger("confgen")
    level = package_logger.level
    yield
    package_logger.setLevel(level)
