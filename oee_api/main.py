from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from common.config import get_settings
from .endpoints import events, health, oee
from .service import OEEDataService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    service = OEEDataService(settings)
    await service.start()
    app.state.service = service
    logger.info("[API] OEE hub ready (telemetry=%s)", service.get_connection_status()["state"])
    try:
        yield
    finally:
        app.state.service = None
        await service.shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="OEE Data Hub", version="0.1.0", lifespan=lifespan)
    app.include_router(health.router)
    app.include_router(oee.router)
    app.include_router(events.router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    uvicorn.run(
        "oee_api.main:app",
        host=os.getenv("OEE_API_HOST", "0.0.0.0"),
        port=int(os.getenv("OEE_API_PORT", "8080")),
    )


if __name__ == "__main__":
    run()
