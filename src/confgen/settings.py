"""Environment-driven settings for config generators.

Every generator reads variables named <PREFIX>_<SETTING>, where the prefix
defaults to the generator's class name in upper snake case (MyConfig ->
MY_CONFIG):

- <PREFIX>_LOG_LEVEL: logging level name (default INFO)
- <PREFIX>_METRICS_PORT: port for the metrics HTTP server (unset = off)
- <PREFIX>_METRICS_HOST: interface for the metrics HTTP server
- <PREFIX>_ONESHOT: generate the config once and exit

Any other <PREFIX>_* variable is kept in `extra` for the generator's own
use, keyed by the lower-cased remainder of its name.
"""

import logging
import os
import re
from collections.abc import Mapping

from pydantic import BaseModel, Field, ValidationError, field_validator

from confgen.errors import SettingsError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def service_name(cls: type) -> str:
    """Derive the upper snake case service prefix from a class name."""
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", cls.__name__)
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    return name.upper()


class GeneratorSettings(BaseModel):
    """Settings shared by every config generator."""

    prefix: str
    log_level: str = "INFO"
    metrics_port: int | None = Field(default=None, ge=1, le=65535)
    metrics_host: str = "0.0.0.0"
    oneshot: bool = False
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return level

    @property
    def metrics_prefix(self) -> str:
        """Prefix for metric names (lower snake case)."""
        return self.prefix.lower()

    @property
    def logging_level(self) -> int:
        return logging.getLevelName(self.log_level)

    @classmethod
    def from_env(cls, prefix: str, env: Mapping[str, str] | None = None) -> "GeneratorSettings":
        """Build settings from environment variables.

        Args:
            prefix: Variable name prefix, without the trailing underscore.
            env: Variables to read; defaults to os.environ.

        Raises:
            SettingsError: If a known setting has an invalid value.
        """
        env = os.environ if env is None else env
        prefix = prefix.upper()
        lead = f"{prefix}_"

        values = {
            key[len(lead) :].lower(): value for key, value in env.items() if key.startswith(lead)
        }
        known = {}
        for name in ("log_level", "metrics_port", "metrics_host", "oneshot"):
            value = values.pop(name, None)
            if value is not None and value.strip() != "":
                known[name] = value.strip()

        try:
            return cls(prefix=prefix, extra=values, **known)
        except ValidationError as e:
            raise SettingsError(f"Invalid {prefix}_* environment: {e}") from e
