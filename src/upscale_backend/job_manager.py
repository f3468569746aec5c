"""
Job orchestration and lifecycle management for image upscaling.

This module manages the end-to-end lifecycle of an upscale job:
- Job identity allocation and registration
- Streaming the uploaded image to disk
- Running the external upscaler without blocking other jobs
- Classifying the outcome and recording the terminal status
- Periodic eviction of finished jobs from the registry

The JobManager class is the core business logic behind the HTTP API. It is
created once per application and handed to request handlers through a
FastAPI dependency.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterable, Mapping, Optional
from uuid import uuid4

from .classifier import classify
from .errors import UploadError, UploadRejected
from .models import JobStatus, UpscaleData, UpscaleResponse
from .registry import JobRegistry
from .runner import ProcessRunner
from .storage import DEFAULT_CHUNK_SIZE, UploadReceiver
from .utils import OUTPUT_EXTENSIONS, ensure_directory, output_extension

logger = logging.getLogger(__name__)


@dataclass
class JobRecord:
    """
    Everything known about one submitted job.

    Attributes:
        id: Unique job identifier (uuid4 string)
        status: Terminal status once the submission has finished
        original_filename: Filename declared by the client
        input_path: Where the uploaded image was stored
        output_path: Where the upscaler was told to write its result
        created_at: Submission time (UTC)
        updated_at: Time the status was last recorded (UTC)
    """

    id: str
    status: JobStatus
    original_filename: str
    input_path: Path
    output_path: Path
    created_at: datetime
    updated_at: datetime

    def to_response(self) -> UpscaleResponse:
        upscaled_path = str(self.output_path) if self.status is JobStatus.COMPLETED else None
        return UpscaleResponse(
            status=self.status,
            data=UpscaleData(request_id=self.id, upscaled_path=upscaled_path),
        )


class JobManager:
    """
    Central coordinator for upscale jobs.

    Every submission gets a fresh identity that is recorded as
    ``Processing`` before any byte of the upload is read. The submission
    then stores the file, runs the upscaler and records a terminal status,
    even when something fails along the way, so a job never stays stuck at
    ``Processing``.

    Attributes:
        cache_dir: Directory holding upscaled artifacts
        upload_dir: Directory holding uploaded originals
        registry: Shared job id -> status store
        runner: Driver for the external upscaler
    """

    def __init__(
        self,
        cache_dir: Path,
        runner: ProcessRunner,
        registry: Optional[JobRegistry] = None,
        default_extension: str = ".png",
        job_ttl_seconds: float = 0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.cache_dir = ensure_directory(cache_dir)
        self.upload_dir = ensure_directory(cache_dir / "originals")
        self.runner = runner
        self.registry = registry or JobRegistry()
        self.default_extension = default_extension
        self.job_ttl_seconds = job_ttl_seconds
        self.chunk_size = chunk_size

    def get_status(self, job_id: str) -> Optional[JobStatus]:
        return self.registry.get(job_id)

    def output_path_for(self, job_id: str, filename: str, content_type: Optional[str]) -> Path:
        extension = output_extension(filename, content_type, self.default_extension, OUTPUT_EXTENSIONS)
        return self.cache_dir / f"{job_id}{extension}"

    async def submit(self, headers: Mapping[str, str], stream: AsyncIterable[bytes]) -> JobRecord:
        """
        Receive an upload and upscale it.

        Args:
            headers: Request headers, used for the multipart boundary
            stream: The request body as an async iterable of chunks

        Returns:
            JobRecord carrying the terminal status of the job

        Raises:
            UploadRejected: If the upload could not be received; the job is
                recorded as ``Error`` before this is raised
        """
        job_id = str(uuid4())
        created_at = datetime.now(timezone.utc)
        self.registry.record_processing(job_id)
        logger.info(f"Started request {job_id}")

        try:
            receiver = UploadReceiver(self.upload_dir, job_id, self.chunk_size)
            try:
                upload = await receiver.receive(headers, stream)
            except UploadError as exc:
                self.registry.complete(job_id, JobStatus.ERROR)
                raise UploadRejected(job_id, exc) from exc

            output_path = self.output_path_for(job_id, upload.original_filename, upload.content_type)
            outcome = await self.runner.run(upload.path, output_path, job_id)
            status = classify(outcome, output_path.exists())
            status = self.registry.complete(job_id, status)
        except UploadRejected:
            raise
        except Exception:
            self.registry.complete(job_id, JobStatus.ERROR)
            raise

        if status is JobStatus.COMPLETED:
            logger.info(f"Upscaling of {job_id} succeeded, file saved to {output_path}")
        else:
            logger.error(f"Upscaling of {job_id} finished with status {status.value}")

        return JobRecord(
            id=job_id,
            status=status,
            original_filename=upload.original_filename,
            input_path=upload.path,
            output_path=output_path,
            created_at=created_at,
            updated_at=datetime.now(timezone.utc),
        )

    def evict_expired(self) -> int:
        if self.job_ttl_seconds <= 0:
            return 0
        return self.registry.evict_expired(self.job_ttl_seconds)

    async def run_eviction_loop(self, interval_seconds: float) -> None:
        """
        Evict expired jobs every ``interval_seconds`` until cancelled.

        Note:
            Only the registry entry is dropped; files in the cache directory
            are left in place.
        """
        while True:
            await asyncio.sleep(interval_seconds)
            self.evict_expired()
