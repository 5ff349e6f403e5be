"""Puppy Station server — dashboard, store and producers in one event loop."""

from __future__ import annotations

import asyncio
import logging

import structlog
import uvicorn

from puppystation import __version__
from puppystation.config import StationSettings, settings as default_settings
from puppystation.dashboard.app import configure, dashboard_app
from puppystation.station import Station

_logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))


async def main(config: StationSettings | None = None) -> None:
    config = config or default_settings
    configure_logging(config.log_level)
    config.workspace_dir.mkdir(parents=True, exist_ok=True)

    station = Station(config)
    configure(station)

    uv_config = uvicorn.Config(
        dashboard_app,
        host=config.host,
        port=config.port,
        log_level="warning",
    )
    server = uvicorn.Server(uv_config)

    async def _announce() -> None:
        # The station is started by the app lifespan; wait for it.
        while not server.started:
            await asyncio.sleep(0.1)
        _logger.info("🐕 Puppy Station running on http://%s:%d", config.host, config.port)
        await station.announce_startup(__version__, config.port)

    announce_task = asyncio.create_task(_announce())
    try:
        await server.serve()
    finally:
        announce_task.cancel()


if __name__ == "__main__":
    asyncio.run(main())
