"""
Exception taxonomy for upload handling and the external upscaling process.

Upload-side errors abort a submission and surface as HTTP 500 responses.
Process-side errors never escape the runner; they are recorded on the run
outcome and turned into a terminal job status by the classifier.
"""

from __future__ import annotations

import errno
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .models import JobStatus

logger = logging.getLogger(__name__)


class UpscaleError(Exception):
    """Base exception for the upscale backend."""

    def __init__(
        self,
        message: str,
        code: str = "UPSCALE_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UploadError(UpscaleError):
    """Failure while receiving the uploaded file."""


class MalformedUpload(UploadError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="MALFORMED_UPLOAD")


class StorageError(UploadError):
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="STORAGE_ERROR", details={"path": path} if path else {})


class TransportError(UploadError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="TRANSPORT_ERROR")


class ProcessError(UpscaleError):
    """Failure around the external upscaling process."""


class SpawnError(ProcessError):
    """The executable could not be started."""

    NOT_FOUND = "not found"
    PERMISSION_DENIED = "permission denied"
    EXEC_FORMAT = "exec format error"
    OTHER = "spawn failed"

    def __init__(self, executable: str, reason: str, os_errno: Optional[int] = None) -> None:
        self.executable = executable
        self.reason = reason
        self.os_errno = os_errno
        super().__init__(
            f"Could not start {executable}: {reason}",
            code="SPAWN_ERROR",
            details={"executable": executable, "reason": reason, "errno": os_errno},
        )

    @classmethod
    def from_os_error(cls, executable: str, exc: OSError) -> "SpawnError":
        """Classify an OSError raised by process creation using its errno."""
        if exc.errno == errno.ENOENT:
            reason = cls.NOT_FOUND
        elif exc.errno in (errno.EACCES, errno.EPERM):
            reason = cls.PERMISSION_DENIED
        elif exc.errno == errno.ENOEXEC:
            reason = cls.EXEC_FORMAT
        else:
            reason = f"{cls.OTHER}: {exc.strerror or exc}"
        return cls(executable, reason, exc.errno)


class StreamReadError(ProcessError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="STREAM_READ_ERROR")


class WaitError(ProcessError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="WAIT_ERROR")


class UploadRejected(UpscaleError):
    """A submission whose upload failed after a job identity was issued."""

    def __init__(self, job_id: str, cause: UploadError) -> None:
        self.job_id = job_id
        self.cause = cause
        super().__init__(cause.message, code=cause.code, status_code=cause.status_code, details=cause.details)


def install_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers on the FastAPI app."""

    @app.exception_handler(UploadRejected)
    async def upload_rejected_handler(request: Request, exc: UploadRejected):
        logger.error(f"Upload for request {exc.job_id} rejected: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": JobStatus.ERROR.value,
                "data": {"request_id": exc.job_id},
                "error": exc.code,
                "message": exc.message,
            },
        )

    @app.exception_handler(UpscaleError)
    async def upscale_error_handler(request: Request, exc: UpscaleError):
        logger.error(f"{exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": JobStatus.ERROR.value,
                "error": exc.code,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": JobStatus.ERROR.value,
                "error": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )
