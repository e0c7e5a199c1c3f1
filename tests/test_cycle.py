"""Tests for the regeneration cycle: swap, reload, rollback."""

import os
from pathlib import Path

import pytest

from confgen.reload.cycle import PROCESS_UMASK, CandidateArtifact, RegenOutcome
from confgen.reload.safety import content_hash


def leftover_files(config_path: Path) -> list[str]:
    """Names in the config directory other than the live file."""
    return sorted(p.name for p in config_path.parent.iterdir() if p != config_path)


class TestUnchangedConfig:
    """Regeneration that produces identical contents."""

    async def test_unchanged_does_not_write_or_reload(self, make_generator, config_path: Path):
        """Identical contents without force: no write, no reload."""
        generator = make_generator(b"current\n")
        before = config_path.stat()

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.UNCHANGED
        assert generator.reload_calls == 0
        assert config_path.stat().st_ino == before.st_ino
        assert config_path.read_bytes() == b"current\n"
        assert leftover_files(config_path) == []

    async def test_unchanged_after_hook(self, make_generator):
        """After-hook reports no difference and no cycle."""
        generator = make_generator(b"current\n")

        await generator.regenerate_config()

        assert generator.after_calls == [(False, False, False, content_hash(b"current\n"))]

    async def test_force_overrides_identical_content(self, make_generator, config_path: Path):
        """force_reload reloads even when nothing changed."""
        generator = make_generator(b"current\n")

        result = await generator.regenerate_config(force_reload=True)

        assert result.outcome == RegenOutcome.SUCCESS
        assert result.config_was_cycled
        assert not result.config_was_different
        assert generator.reload_calls == 1
        assert config_path.read_bytes() == b"current\n"
        assert generator.metrics.reload_total.value({"status": "success"}) == 1


class TestChangedConfig:
    """Regeneration that produces new contents."""

    async def test_change_is_swapped_in_and_reloaded(self, make_generator, config_path: Path):
        """New contents replace the live file and the server is reloaded."""
        generator = make_generator(b"new\n")

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.SUCCESS
        assert config_path.read_bytes() == b"new\n"
        assert generator.reload_calls == 1
        assert "-current" in result.diff
        assert "+new" in result.diff
        assert result.existing_hash == content_hash(b"current\n")
        assert result.new_hash == content_hash(b"new\n")
        assert generator.metrics.config_ok.value() == 1
        assert leftover_files(config_path) == []

    async def test_before_hook_sees_existing_contents(self, make_generator):
        """before_regenerate_config gets the hash and bytes of the live file."""
        generator = make_generator(b"new\n")

        await generator.regenerate_config(force_reload=True)

        assert generator.before_calls == [(True, content_hash(b"current\n"), b"current\n")]
        assert generator.after_calls == [(True, True, True, content_hash(b"new\n"))]

    async def test_string_data_is_encoded(self, make_generator, config_path: Path):
        """config_data may return str."""
        generator = make_generator("naïve\n")

        await generator.regenerate_config()

        assert config_path.read_bytes() == "naïve\n".encode()

    async def test_permissions_are_preserved(self, make_generator, config_path: Path):
        """The swapped-in file keeps the live file's mode."""
        os.chmod(config_path, 0o640)
        generator = make_generator(b"new\n")

        await generator.regenerate_config()

        assert config_path.stat().st_mode & 0o777 == 0o640

    async def test_timestamps_recorded(self, make_generator, config_path: Path):
        """Last-change timestamp follows the live file's mtime."""
        generator = make_generator(b"new\n")

        await generator.regenerate_config()

        assert generator.metrics.last_change_timestamp.value() == config_path.stat().st_mtime
        assert generator.metrics.last_generation_timestamp.value() > 0


class TestReloadFailure:
    """The reload hook raising."""

    async def test_rollback_when_server_was_healthy(self, make_generator, config_path: Path):
        """A healthy server keeps its previous config when reload fails."""
        generator = make_generator(b"new\n", reload_error=RuntimeError("kaboom"))

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.RELOAD_FAILURE
        assert config_path.read_bytes() == b"current\n"
        assert "kaboom" in result.error_message
        assert generator.reload_calls == 1
        assert generator.config_ok_calls == 1  # no post-reload check
        assert generator.metrics.reload_total.value({"status": "failure"}) == 1
        assert leftover_files(config_path) == []

    async def test_no_rollback_when_server_was_unhealthy(self, make_generator, config_path: Path):
        """An already-broken server keeps the new config even if reload fails."""
        generator = make_generator(b"new\n", health=[False], reload_error=RuntimeError("nope"))

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.RELOAD_FAILURE
        assert config_path.read_bytes() == b"new\n"


class TestHealthRegression:
    """config_ok failing after a reload."""

    async def test_rollback_on_regression(self, make_generator, config_path: Path):
        """Healthy before, unhealthy after: restore and reload again."""
        generator = make_generator(b"bad\n", health=[True, False])

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.BAD_CONFIG_ROLLED_BACK
        assert config_path.read_bytes() == b"current\n"
        assert generator.reload_calls == 2
        assert generator.metrics.config_ok.value() == 0
        assert generator.metrics.reload_total.value({"status": "bad-config"}) == 1
        assert leftover_files(config_path) == []

    async def test_failed_rollback_reload_keeps_classification(
        self, make_generator, config_path: Path
    ):
        """A failing second reload is logged, not reclassified."""
        generator = make_generator(b"bad\n", health=[True, False])
        calls = []

        def flaky_reload() -> None:
            calls.append(1)
            if len(calls) == 2:
                raise RuntimeError("second reload failed")

        generator.reload_server = flaky_reload

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.BAD_CONFIG_ROLLED_BACK
        assert config_path.read_bytes() == b"current\n"
        assert len(calls) == 2

    async def test_everything_is_awful(self, make_generator, config_path: Path):
        """Unhealthy before and after: keep the new config."""
        generator = make_generator(b"also bad\n", health=[False, False])

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.EVERYTHING_IS_AWFUL
        assert config_path.read_bytes() == b"also bad\n"
        assert generator.reload_calls == 1
        assert generator.metrics.reload_total.value({"status": "everything-is-awful"}) == 1


class TestGenerationFailure:
    """config_data raising."""

    async def test_generation_failure_leaves_config_alone(self, make_generator, config_path: Path):
        """Nothing is written or reloaded, and the failure is recorded."""
        generator = make_generator(generation_error=ValueError("no data"))

        result = await generator.regenerate_config(force_reload=True)

        assert result.outcome == RegenOutcome.GENERATION_FAILED
        assert "no data" in result.error_message
        assert config_path.read_bytes() == b"current\n"
        assert generator.reload_calls == 0
        assert generator.after_calls == [(True, False, False, None)]
        assert generator.metrics.generation_exceptions.value({"class": "ValueError"}) == 1
        assert generator.metrics.generation_ok.value() == 0
        assert generator.metrics.generation_in_progress.value() == 0
        assert leftover_files(config_path) == []

    async def test_non_bytes_result_is_a_generation_failure(self, make_generator):
        """Returning something other than bytes/str counts as a failure."""
        generator = make_generator(data=None)

        result = await generator.regenerate_config()

        assert result.outcome == RegenOutcome.GENERATION_FAILED
        assert generator.metrics.generation_exceptions.value({"class": "TypeError"}) == 1

    async def test_generation_metrics(self, make_generator):
        """Each attempt is counted and timed."""
        generator = make_generator(b"current\n")

        await generator.regenerate_config()
        await generator.regenerate_config()

        assert generator.metrics.generation_requests.value() == 2
        assert generator.metrics.generation_duration.count == 2
        assert generator.metrics.generation_ok.value() == 1


class TestBootstrap:
    """Writing the first config file."""

    async def test_bootstrap_writes_without_reload(self, make_generator, tmp_path: Path):
        """A missing config file is created with the generated contents."""
        (tmp_path / "boot").mkdir()
        path = tmp_path / "boot" / "fresh.conf"
        generator = make_generator(b"first\n", path=path)

        result = await generator._cycler.bootstrap(path)

        assert result.outcome == RegenOutcome.CREATED
        assert path.read_bytes() == b"first\n"
        assert generator.reload_calls == 0
        assert leftover_files(path) == []

    async def test_bootstrap_mode_follows_umask(self, make_generator, tmp_path: Path, monkeypatch):
        """The first file gets the default mode without touching the process umask."""
        path = tmp_path / "fresh.conf"
        generator = make_generator(path=path)

        def no_umask(mask):
            raise AssertionError("umask changed while threads may be running")

        monkeypatch.setattr(os, "umask", no_umask)

        await generator._cycler.bootstrap(path)

        assert path.stat().st_mode & 0o777 == 0o666 & ~PROCESS_UMASK

    async def test_bootstrap_generation_failure_writes_nothing(self, make_generator, tmp_path: Path):
        """No file is created if generation fails."""
        path = tmp_path / "fresh.conf"
        generator = make_generator(path=path, generation_error=RuntimeError("down"))

        result = await generator._cycler.bootstrap(path)

        assert result.outcome == RegenOutcome.GENERATION_FAILED
        assert not path.exists()


class TestFilesystemErrors:
    """Filesystem faults are not recovered."""

    async def test_missing_live_file_raises(self, make_generator, tmp_path: Path):
        """Regenerating against a vanished file propagates the error."""
        generator = make_generator(path=tmp_path / "gone.conf")

        with pytest.raises(FileNotFoundError):
            await generator.regenerate_config()


def test_candidate_artifact_hash():
    """Artifacts carry the hash of their bytes."""
    artifact = CandidateArtifact.from_data("abc")
    assert artifact.data == b"abc"
    assert artifact.hash == content_hash(b"abc")
