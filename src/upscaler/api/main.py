from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from upscaler.config import resolve_config
from upscaler.exceptions import JobNotFoundError, setup_exception_handlers
from upscaler.logging import get_logger, setup_logging
from upscaler.models import UpscalerConfig
from upscaler.orchestrator import JobOrchestrator

logger = get_logger(__name__)


# --- Pydantic Models for Requests ---
class ProcessCreate(BaseModel):
    images: List[str] = Field(default_factory=list)
    title: Optional[str] = None


class CrawlCreate(BaseModel):
    url: str = Field(..., min_length=1)


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def create_app(
    config: Optional[UpscalerConfig] = None,
    orchestrator: Optional[JobOrchestrator] = None,
) -> FastAPI:
    """Build the API around an orchestrator.

    When no orchestrator is given one is wired from ``config`` (resolved from
    YAML and the environment if omitted) at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            resolved = config or resolve_config()
            setup_logging(resolved.logging.level, resolved.logging.json_format)
            app.state.orchestrator = JobOrchestrator.from_config(resolved)
        await app.state.orchestrator.start()
        logger.info("service_started")
        yield
        await app.state.orchestrator.shutdown()

    app = FastAPI(title="Upscaler", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_exception_handlers(app)

    @app.get("/")
    async def root():
        return {"message": "Image Upscaler API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post("/api/process")
    async def create_process(
        data: ProcessCreate, orchestrator: JobOrchestrator = Depends(get_orchestrator)
    ):
        job_id = await orchestrator.create_process(data.images, data.title)
        return {"id": job_id}

    @app.post("/api/process/crawl")
    async def crawl_process(
        data: CrawlCreate, orchestrator: JobOrchestrator = Depends(get_orchestrator)
    ):
        job_id = await orchestrator.create_process_from_page(data.url)
        return {"id": job_id}

    @app.get("/api/process")
    async def list_processes(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
        return [record.to_api() for record in await orchestrator.list_all()]

    @app.get("/api/process/{job_id}")
    async def get_process(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
        result = await orchestrator.get_result(job_id)
        if result is None:
            raise JobNotFoundError(job_id=job_id)
        return result.to_api()

    @app.delete("/api/process/{job_id}")
    async def delete_process(
        job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)
    ):
        if not await orchestrator.delete_process(job_id):
            raise JobNotFoundError(job_id=job_id)
        return {"id": job_id}

    @app.get("/api/static/{job_id}/output/{file_name}")
    async def get_output_file(
        job_id: str, file_name: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)
    ):
        path = orchestrator.output_file(job_id, file_name)
        if path is None:
            raise JobNotFoundError("File not found", job_id=job_id)
        return FileResponse(path)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = resolve_config()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)
