"""Entry point for the Bitcoin benefit API server.

Loads settings, configures logging, wires the service container, and serves
the FastAPI app with uvicorn. The lifespan starts the maintenance loop
(stale breakers, expired rate limit windows) and closes every HTTP session
and the rate limit store on shutdown.
"""

import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from btc_benefit.api.app import create_app
from btc_benefit.config import AppSettings
from btc_benefit.logging import get_logger, setup_logging
from btc_benefit.services import BenefitServices, build_services

MAINTENANCE_INTERVAL = 60.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run background maintenance while the server is up; release resources on exit."""
    logger = get_logger("btc_benefit.main")
    services: BenefitServices = app.state.services

    maintenance_task = asyncio.create_task(
        services.run_maintenance(MAINTENANCE_INTERVAL)
    )
    logger.info(
        "lifespan_started",
        use_fallback_only=services.settings.prices.use_fallback_only,
        require_signature=services.settings.security.require_signature,
    )

    yield

    maintenance_task.cancel()
    try:
        await maintenance_task
    except asyncio.CancelledError:
        pass

    await services.close()
    logger.info("btc_benefit_stopped")


async def run() -> None:
    """Build services and serve the API until interrupted."""
    settings = AppSettings()
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("btc_benefit.main")

    services = build_services(settings)
    app = create_app(services, lifespan=lifespan)

    logger.info("starting_api_server", host=settings.api.host, port=settings.api.port)

    config = uvicorn.Config(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
