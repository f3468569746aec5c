"""
Pytest configuration and fixtures for Upscale Backend tests.
"""

import os
import shutil
import stat
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["UPSCALE_CACHE_DIR"] = tempfile.mkdtemp(prefix="upscale_test_cache_")
os.environ["UPSCALE_EXECUTABLE"] = "/nonexistent/realesrgan-ncnn-vulkan"
os.environ["UPSCALE_JOB_TTL_SECONDS"] = "0"

from upscale_backend.configuration import load_settings
from upscale_backend.main import app, create_app


# Parses the upscaler's positional arguments into $src, $dst, $gpu and $scale
ARGUMENT_PREAMBLE = """#!/bin/sh
while [ $# -gt 0 ]; do
  case "$1" in
    -i) src="$2"; shift ;;
    -o) dst="$2"; shift ;;
    -g) gpu="$2"; shift ;;
    -s) scale="$2"; shift ;;
  esac
  shift
done
"""

WRITES_OUTPUT = ARGUMENT_PREAMBLE + """
echo "upscaling $src x$scale on gpu $gpu"
cp "$src" "$dst"
echo "done"
exit 0
"""

WRITES_OUTPUT_EXITS_NONZERO = ARGUMENT_PREAMBLE + """
echo "upscaling $src"
cp "$src" "$dst"
exit 3
"""

NO_OUTPUT_EXITS_ZERO = ARGUMENT_PREAMBLE + """
echo "upscaling $src"
echo "pretending everything went fine"
exit 0
"""

SLOW_WRITES_OUTPUT = ARGUMENT_PREAMBLE + """
echo "upscaling $src"
sleep 0.5
cp "$src" "$dst"
exit 0
"""

# Writes the artifact, closes stdout, then lingers before exiting
ARTIFACT_BEFORE_EXIT = ARGUMENT_PREAMBLE + """
cp "$src" "$dst"
echo "artifact written"
exec >&-
sleep 0.5
exit 7
"""

STUB_SCRIPTS = {
    "writes_output": WRITES_OUTPUT,
    "writes_output_exits_nonzero": WRITES_OUTPUT_EXITS_NONZERO,
    "no_output_exits_zero": NO_OUTPUT_EXITS_ZERO,
    "slow_writes_output": SLOW_WRITES_OUTPUT,
    "artifact_before_exit": ARTIFACT_BEFORE_EXIT,
}


@pytest.fixture(scope="session")
def test_dirs():
    """Create and cleanup the cache directory used by the default app."""
    cache_dir = os.environ["UPSCALE_CACHE_DIR"]

    yield {"cache": cache_dir}

    shutil.rmtree(cache_dir, ignore_errors=True)


@pytest.fixture
def client(test_dirs):
    """Create a test client for the default FastAPI app."""
    return TestClient(app)


@pytest.fixture
def stub_executable(tmp_path):
    """Write an executable shell script standing in for the upscaler."""

    def factory(behaviour: str, name: str = "realesrgan-stub") -> Path:
        path = tmp_path / name
        path.write_text(STUB_SCRIPTS.get(behaviour, behaviour))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return factory


@pytest.fixture
def make_app(tmp_path):
    """Build an app whose cache lives in tmp_path and which runs the given executable."""

    def factory(executable, **overrides):
        settings = load_settings(
            {
                "cache_dir": str(tmp_path / "cache"),
                "executable": str(executable),
                "job_ttl_seconds": 0,
                **overrides,
            },
            environ={},
        )
        return create_app(settings)

    return factory


@pytest.fixture
def multipart_body():
    """Encode parts as a multipart/form-data body.

    Each part is ``(field_name, filename, content_type, content)``; pass
    ``None`` as filename or content type to omit it.
    """

    def encode(parts, boundary: str = "upscaleboundary") -> bytes:
        body = b""
        for field_name, filename, content_type, content in parts:
            disposition = f'form-data; name="{field_name}"'
            if filename is not None:
                disposition += f'; filename="{filename}"'
            body += f"--{boundary}\r\nContent-Disposition: {disposition}\r\n".encode()
            if content_type is not None:
                body += f"Content-Type: {content_type}\r\n".encode()
            body += b"\r\n" + content + b"\r\n"
        body += f"--{boundary}--\r\n".encode()
        return body

    return encode
