"""confgen - engine for config-generator daemons."""

__version__ = "0.1.0"

from confgen.errors import (  # noqa: E402
    ConfigGeneratorError,
    GeneratorLoadError,
    InvalidDurationError,
    SettingsError,
)
from confgen.generator import ConfigGenerator, EngineState  # noqa: E402
from confgen.reload import CycleResult, RegenOutcome, WatchKind, WatchSet  # noqa: E402
from confgen.settings import GeneratorSettings  # noqa: E402

__all__ = [
    "ConfigGenerator",
    "ConfigGeneratorError",
    "CycleResult",
    "EngineState",
    "GeneratorLoadError",
    "GeneratorSettings",
    "InvalidDurationError",
    "RegenOutcome",
    "SettingsError",
    "WatchKind",
    "WatchSet",
    "__version__",
]
