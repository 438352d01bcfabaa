"""
Exception taxonomy for the upscaling service.

Stage failures are the only errors that reach the orchestrator's failure
path; per-download errors never leave the fetch stage. ``code`` is the HTTP
status the API answers with when one of these escapes a request handler.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .logging import get_logger

logger = get_logger(__name__)


class UpscalerError(Exception):
    """Base exception for the upscaling service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.job_id = job_id
        self.details = details or {}
        super().__init__(self.message)


class InvalidJobRequest(UpscalerError):
    """Raised when a creation request is rejected before any record exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ScrapeError(InvalidJobRequest):
    """Raised when a page cannot be fetched or yields no images."""

    def __init__(self, message: str, url: str, **kwargs):
        super().__init__(message, **kwargs)
        self.details["url"] = url


class JobNotFoundError(UpscalerError):
    """Raised for an unknown job id or artifact."""

    def __init__(self, message: str = "Process not found", **kwargs):
        super().__init__(message, code=404, **kwargs)


class InvalidTransitionError(UpscalerError):
    """Raised when a status change is not allowed by the job state machine."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Illegal transition {from_status} -> {to_status}",
            code=409,
            job_id=job_id,
            details={"from": from_status, "to": to_status},
        )


class StagingError(UpscalerError):
    """Raised when a job directory cannot be created, listed or removed."""

    def __init__(self, message: str, path: str, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["path"] = path


class StageError(UpscalerError):
    """Raised when a pipeline stage fails."""

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.stage = stage
        self.details["stage"] = stage


class UpscaleError(StageError):
    """Raised when one upscaler invocation fails; aborts the whole stage."""

    def __init__(
        self,
        message: str,
        file_name: str,
        returncode: Optional[int] = None,
        error_type: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, stage="upscale", **kwargs)
        self.file_name = file_name
        self.returncode = returncode
        self.error_type = error_type
        self.details.update(
            {"file": file_name, "returncode": returncode, "error_type": error_type}
        )


def setup_exception_handlers(app: FastAPI) -> None:
    """Map service exceptions onto JSON error responses."""

    @app.exception_handler(UpscalerError)
    async def upscaler_exception_handler(request: Request, exc: UpscalerError):
        if exc.code >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error=exc.message,
                details=exc.details,
            )
        return JSONResponse(
            status_code=exc.code,
            content={"error": exc.message, "details": exc.details},
        )
