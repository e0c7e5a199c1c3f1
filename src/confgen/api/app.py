"""FastAPI application exposing a generator's metrics and controls."""

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from confgen import __version__

if TYPE_CHECKING:
    from confgen.generator import ConfigGenerator

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class LastCycle(BaseModel):
    """Summary of the most recent regeneration."""

    outcome: str
    force_reload: bool
    config_was_different: bool
    config_was_cycled: bool
    new_hash: str | None
    error: str | None
    timestamp: str


class HealthResponse(BaseModel):
    """Generator health."""

    status: str
    state: str
    version: str
    config_file: str | None
    last_cycle: LastCycle | None


class RegenerateResponse(BaseModel):
    """Acknowledgement of a regeneration request."""

    status: str


def create_app(generator: "ConfigGenerator") -> FastAPI:
    """Create the metrics/control application for a generator."""
    app = FastAPI(
        title=f"{generator.settings.prefix} config generator",
        version=__version__,
    )
    app.state.generator = generator

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics."""
        return PlainTextResponse(generator.metrics.render(), media_type=PROMETHEUS_CONTENT_TYPE)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Engine state and the outcome of the last regeneration."""
        last = generator.last_result
        last_cycle = None
        if last is not None:
            last_cycle = LastCycle(
                outcome=last.outcome.value,
                force_reload=last.force_reload,
                config_was_different=last.config_was_different,
                config_was_cycled=last.config_was_cycled,
                new_hash=last.new_hash,
                error=last.error_message,
                timestamp=last.timestamp.isoformat(),
            )
        return HealthResponse(
            status="healthy" if generator.metrics.config_ok.value() else "degraded",
            state=generator.state.value,
            version=__version__,
            config_file=str(generator.config_path) if generator.config_path else None,
            last_cycle=last_cycle,
        )

    @app.post("/regenerate", status_code=202, response_model=RegenerateResponse)
    async def regenerate() -> RegenerateResponse:
        """Request a regeneration with a forced reload."""
        logger.info("Regeneration requested over HTTP")
        generator.trigger_regen()
        return RegenerateResponse(status="accepted")

    return app
