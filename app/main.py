from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import Settings
from app.controllers import v1
from app.dependencies import ErrorResponse
from app.logger import setup_logging
from app.models import ErrorCode
from app.runtime import Runtime
from app.services.persistence import WriteConflict

setup_logging()
logger = logging.getLogger(__name__)


async def write_conflict_handler(request: Request, exc: WriteConflict) -> JSONResponse:
    logger.warning("%s %s: %s", request.method, request.url.path, exc)
    err = ErrorResponse(code=ErrorCode.STORE_CONFLICT, message="Store busy, please retry")
    return JSONResponse(status_code=503, content=err.model_dump())


def create_app(settings: Settings | None = None) -> FastAPI:
    cfg = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = Runtime.build(cfg)
        app.state.runtime = runtime
        await runtime.start()
        try:
            yield
        finally:
            await runtime.close()
            logger.info("runtime stopped")

    app = FastAPI(
        title="Lab Report Extraction Gateway",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(WriteConflict, write_conflict_handler)

    # browser and mini-program clients call from other origins
    cors_origins = cfg.cors_origin_list
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "Authorization",
                "X-Gemini-Api-Key",
                "X-Admin-Token",
            ],
        )

    app.include_router(v1.router)

    # 👇 Prometheus metrics at /metrics
    Instrumentator().instrument(app).expose(app)
    return app


app = create_app()
