"""Wake-up reasons for the regeneration loop."""

from enum import Enum


class WakeReason(str, Enum):
    """Why the regeneration loop woke up.

    Listed in priority order: when several sources are pending at once,
    the earliest member wins.
    """

    TERMINATE = "terminate"
    WATCH_EVENT = "watch_event"
    MANUAL_TRIGGER = "manual_trigger"
    TIMEOUT = "timeout"

    @property
    def forces_reload(self) -> bool:
        """Whether a regeneration for this reason must reload the server."""
        return self in (WakeReason.WATCH_EVENT, WakeReason.MANUAL_TRIGGER)
