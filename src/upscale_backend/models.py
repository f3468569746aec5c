from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class JobStatus(str, Enum):
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    ERROR = "Error"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class UpscaleData(BaseModel):
    request_id: str
    upscaled_path: Optional[str] = None


class UpscaleResponse(BaseModel):
    status: JobStatus
    data: UpscaleData


class StatusResponse(BaseModel):
    status: JobStatus


class PingResponse(BaseModel):
    status: str = "healthy"
    data: str = "pong"
