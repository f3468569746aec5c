from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from omegaconf import DictConfig

from .configuration import load_settings
from .errors import install_exception_handlers
from .job_manager import JobManager
from .logging_config import configure_logging
from .models import PingResponse, StatusResponse, UpscaleResponse
from .runner import ProcessRunner

logger = logging.getLogger(__name__)


def build_job_manager(settings: DictConfig) -> JobManager:
    runner = ProcessRunner(
        executable=str(settings.executable),
        gpu_index=int(settings.gpu_index),
        scale=int(settings.scale),
        merge_stderr=bool(settings.merge_stderr),
    )
    return JobManager(
        cache_dir=Path(settings.cache_dir),
        runner=runner,
        default_extension=str(settings.default_extension),
        job_ttl_seconds=float(settings.job_ttl_seconds),
        chunk_size=int(settings.chunk_size),
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    manager: JobManager = app.state.job_manager
    settings: DictConfig = app.state.settings
    eviction: Optional[asyncio.Task] = None
    if manager.job_ttl_seconds > 0:
        eviction = asyncio.create_task(manager.run_eviction_loop(float(settings.eviction_interval_seconds)))
    logger.info(f"Serving upscale jobs from {manager.cache_dir}")
    try:
        yield
    finally:
        if eviction is not None:
            eviction.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await eviction
        await manager.runner.wait_for_reapers()


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


def create_app(settings: Optional[DictConfig] = None) -> FastAPI:
    settings = settings if settings is not None else load_settings()
    configure_logging(str(settings.log_level))

    app = FastAPI(title="Upscale API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.job_manager = build_job_manager(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_exception_handlers(app)

    @app.get("/ping", response_model=PingResponse)
    def ping() -> PingResponse:
        logger.info("Received ping request")
        return PingResponse()

    @app.post("/upscale", response_model=UpscaleResponse, response_model_exclude_none=True)
    async def upscale_image(request: Request, manager: JobManager = Depends(get_job_manager)) -> UpscaleResponse:
        logger.info("Received request to upscale image")
        record = await manager.submit(request.headers, request.stream())
        return record.to_response()

    @app.get("/status/{request_id}", response_model=StatusResponse)
    def get_status(request_id: str, manager: JobManager = Depends(get_job_manager)):
        status = manager.get_status(request_id)
        if status is None:
            return PlainTextResponse("Request ID not found", status_code=404)
        return StatusResponse(status=status)

    return app


app = create_app()
