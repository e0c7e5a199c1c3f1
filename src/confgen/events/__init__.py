"""Wake-up sources for the regeneration loop."""

from confgen.events.channel import Channel, wait_any
from confgen.events.types import WakeReason

__all__ = ["Channel", "WakeReason", "wait_any"]
