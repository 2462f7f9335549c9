from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fourbyte.api.router import api_router
from fourbyte.config import Settings, settings
from fourbyte.runtime import RelayRuntime

logger = logging.getLogger(__name__)


def _cors_origins(value: str) -> list[str]:
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return origins or ["*"]


def create_app(app_settings: Settings | None = None) -> FastAPI:
    config = app_settings or settings
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for warning in config.warnings():
        logger.warning("config: %s", warning)

    app = FastAPI(title="FourByte Relay", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(config.cors_origin),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    runtime = RelayRuntime(config)
    app.state.runtime = runtime
    app.include_router(api_router)

    @app.on_event("startup")
    async def on_startup() -> None:
        await runtime.startup()
        logger.info("relay started env=%s port=%d", config.app_env, config.port)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await runtime.shutdown()

    return app


app = create_app()
