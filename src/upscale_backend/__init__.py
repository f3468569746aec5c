"""
Upscale Backend - REST API around an external image upscaler

This package provides a FastAPI-based web service that runs the
Real-ESRGAN ncnn upscaler on uploaded images. It enables:

- Streamed image uploads stored under a server-generated job identity
- Concurrent, non-blocking execution of the external upscaler
- Job status polling while other jobs are still running
- Classification of upscaler failures into terminal job statuses

The upscaler itself is treated as an opaque executable: it is invoked with
positional arguments and observed only through its output lines, its exit
status and whether it produced an output file.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job lifecycle coordinator
    - storage: Streaming multipart receiver
    - runner: Asynchronous driver for the upscaler process
    - classifier: Maps a process run to a terminal job status
    - registry: Lock-guarded job id -> status store
    - configuration: Config defaults, YAML file and environment overrides

Usage:
    Run the API server with:
        uvicorn upscale_backend.main:app --host 127.0.0.1 --port 3443
"""
