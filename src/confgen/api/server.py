"""Background HTTP server for the metrics/control application."""

import logging
import threading
from typing import TYPE_CHECKING

import uvicorn

from confgen.api.app import create_app

if TYPE_CHECKING:
    from confgen.generator import ConfigGenerator

logger = logging.getLogger(__name__)


class MetricsServer:
    """Runs the metrics app with uvicorn in a daemon thread.

    The regeneration loop may block while generating or reloading, so the
    server gets its own thread and event loop. It only reads metrics and
    fires the generator's (thread-safe) regeneration trigger.
    """

    def __init__(self, generator: "ConfigGenerator", host: str = "0.0.0.0", port: int = 9100):
        self.host = host
        self.port = port
        config = uvicorn.Config(
            create_app(generator),
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start serving in the background."""
        if self.running:
            return
        self._thread = threading.Thread(
            target=self._server.run, name="confgen-metrics", daemon=True
        )
        self._thread.start()
        logger.info(f"Metrics server listening on http://{self.host}:{self.port}/metrics")

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the server to exit and wait for its thread."""
        if self._thread is None:
            return
        self._server.should_exit = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Metrics server did not stop in time")
        self._thread = None
