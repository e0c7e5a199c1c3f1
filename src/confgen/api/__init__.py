"""HTTP exposition of generator metrics and controls."""

from confgen.api.app import create_app
from confgen.api.server import MetricsServer

__all__ = ["MetricsServer", "create_app"]
