"""Exception types raised by confgen."""


class ConfigGeneratorError(Exception):
    """Base class for all confgen errors."""


class InvalidDurationError(ConfigGeneratorError):
    """Raised when sleep/cooldown durations are out of range."""

    def __init__(self, sleep_duration: float, cooldown_duration: float, reason: str):
        self.sleep_duration = sleep_duration
        self.cooldown_duration = cooldown_duration
        self.reason = reason
        super().__init__(
            f"Invalid durations (sleep={sleep_duration}, cooldown={cooldown_duration}): {reason}"
        )


class SettingsError(ConfigGeneratorError):
    """Raised when the environment holds invalid settings."""


class GeneratorLoadError(ConfigGeneratorError):
    """Raised when a generator class cannot be resolved from a target string."""
