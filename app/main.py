from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import api_router
from app.core.config import get_settings
from app.dependencies import ConfigurationError, build_pipeline, set_pipeline
from backdrop import RemoveBgClient

logger = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    pipeline = None
    try:
        pipeline = build_pipeline(settings)
    except ConfigurationError:
        logger.error("Pipeline not configured; set APP_REMOVE_BG_API_KEY or choose a local matte backend.")
    set_pipeline(pipeline)
    yield
    set_pipeline(None)
    if pipeline is not None and isinstance(pipeline.matte_client, RemoveBgClient):
        pipeline.matte_client.close()


app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(_: Request, exc: ConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc), "kind": "configuration"})


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(api_router)
