"""
Tests for Upscale Backend API endpoints.

Tests cover:
- Health check
- Status lookup for unknown jobs
- Upscale submissions against stub upscalers (success, tool failure, spawn failure)
- Upload rejection
- Concurrent submissions and status reads during a running job
- CORS
"""

import asyncio
import sys
import uuid
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="stub upscalers are POSIX shell scripts")


def submit(client, filename="a.png", content=b"0123456789", content_type="image/png"):
    return client.post("/upscale", files={"file": (filename, content, content_type)})


class TestHealthCheck:
    """Tests for the /ping endpoint."""

    def test_ping_returns_pong(self, client):
        """Ping should report a healthy service."""
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "data": "pong"}


class TestStatus:
    """Tests for the /status/{request_id} endpoint."""

    def test_unknown_request_id_is_plain_text_404(self, client):
        """An identity that was never issued is not found, never Processing."""
        response = client.get(f"/status/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Request ID not found"


class TestUpscale:
    """Tests for the /upscale endpoint."""

    def test_completed_job(self, make_app, stub_executable):
        """A 10-byte a.png upscaled by a well-behaved tool completes."""
        app = make_app(stub_executable("writes_output"))
        with TestClient(app) as client:
            response = submit(client)
            assert response.status_code == 200

            body = response.json()
            assert body["status"] == "Completed"
            request_id = body["data"]["request_id"]
            uuid.UUID(request_id)
            upscaled_path = Path(body["data"]["upscaled_path"])
            assert upscaled_path.name == f"{request_id}.png"
            assert upscaled_path.read_bytes() == b"0123456789"

            status = client.get(f"/status/{request_id}")
            assert status.status_code == 200
            assert status.json() == {"status": "Completed"}

    def test_upload_is_stored_under_job_identity(self, make_app, stub_executable):
        """The original is stored by job identity, not by client filename."""
        app = make_app(stub_executable("writes_output"))
        with TestClient(app) as client:
            body = submit(client, filename="../../escape.png").json()

        request_id = body["data"]["request_id"]
        manager = app.state.job_manager
        assert (manager.upload_dir / f"{request_id}.png").read_bytes() == b"0123456789"
        assert not (manager.cache_dir.parent / "escape.png").exists()

    def test_nonzero_exit_with_artifact_is_completed(self, make_app, stub_executable):
        """The artifact wins over the exit status."""
        app = make_app(stub_executable("writes_output_exits_nonzero"))
        with TestClient(app) as client:
            body = submit(client).json()
            assert body["status"] == "Completed"
            assert "upscaled_path" in body["data"]

    def test_artifact_before_exit_is_completed(self, make_app, stub_executable):
        """A tool that writes its output and lingers still completes."""
        app = make_app(stub_executable("artifact_before_exit"))
        with TestClient(app) as client:
            body = submit(client).json()
            assert body["status"] == "Completed"

    def test_exit_zero_without_output_is_failed(self, make_app, stub_executable):
        """A clean exit that produced nothing is a tool failure."""
        app = make_app(stub_executable("no_output_exits_zero"))
        with TestClient(app) as client:
            response = submit(client)
            assert response.status_code == 200

            body = response.json()
            assert body["status"] == "Failed"
            assert "upscaled_path" not in body["data"]
            assert client.get(f"/status/{body['data']['request_id']}").json() == {"status": "Failed"}

    def test_missing_executable_is_error(self, make_app, tmp_path):
        """An upscaler that cannot be spawned yields Error."""
        app = make_app(tmp_path / "does-not-exist")
        with TestClient(app) as client:
            response = submit(client)
            assert response.status_code == 200

            body = response.json()
            assert body["status"] == "Error"
            request_id = body["data"]["request_id"]
            assert client.get(f"/status/{request_id}").json() == {"status": "Error"}
        assert app.state.job_manager.registry.get(request_id).value == "Error"

    def test_default_app_without_upscaler_is_error(self, client):
        """The test environment points the default app at a missing binary."""
        body = submit(client).json()
        assert body["status"] == "Error"

    @pytest.mark.parametrize(
        "filename,content_type,suffix",
        [
            ("photo.webp", "image/webp", ".webp"),
            ("photo.JPG", "image/jpeg", ".jpg"),
            ("photo.bmp", "image/bmp", ".png"),
            ("photo", "image/jpeg", ".jpg"),
            ("photo", "application/octet-stream", ".png"),
        ],
    )
    def test_output_extension_is_inferred(self, make_app, stub_executable, filename, content_type, suffix):
        """Output naming follows the upload's extension, falling back to .png."""
        app = make_app(stub_executable("writes_output"))
        with TestClient(app) as client:
            body = submit(client, filename=filename, content_type=content_type).json()
        assert body["data"]["upscaled_path"].endswith(f"{body['data']['request_id']}{suffix}")


class TestUploadRejection:
    """Tests for uploads that cannot be received."""

    def test_non_multipart_body(self, make_app, stub_executable):
        """A body that is not multipart is rejected with a JSON 500."""
        app = make_app(stub_executable("writes_output"))
        with TestClient(app) as client:
            response = client.post("/upscale", content=b"raw bytes", headers={"Content-Type": "image/png"})
            assert response.status_code == 500

            body = response.json()
            assert body["status"] == "Error"
            assert body["error"] == "MALFORMED_UPLOAD"
            request_id = body["data"]["request_id"]
            assert client.get(f"/status/{request_id}").json() == {"status": "Error"}

    def test_part_without_filename(self, make_app, stub_executable, multipart_body):
        """A part that declares no filename is malformed."""
        app = make_app(stub_executable("writes_output"))
        payload = multipart_body([("file", None, "image/png", b"0123456789")])
        with TestClient(app) as client:
            response = client.post(
                "/upscale",
                content=payload,
                headers={"Content-Type": "multipart/form-data; boundary=upscaleboundary"},
            )
        assert response.status_code == 500
        assert response.json()["error"] == "MALFORMED_UPLOAD"

    def test_truncated_body(self, make_app, stub_executable, multipart_body):
        """A body that stops mid-part is a transport failure."""
        app = make_app(stub_executable("writes_output"))
        payload = multipart_body([("file", "a.png", "image/png", b"0123456789")])[:-30]
        with TestClient(app) as client:
            response = client.post(
                "/upscale",
                content=payload,
                headers={"Content-Type": "multipart/form-data; boundary=upscaleboundary"},
            )
            assert response.status_code == 500

            body = response.json()
            assert body["error"] == "TRANSPORT_ERROR"
            assert client.get(f"/status/{body['data']['request_id']}").json() == {"status": "Error"}


class TestConcurrency:
    """Tests for many jobs in flight at once."""

    def test_concurrent_submissions_get_distinct_ids(self, make_app, stub_executable):
        """Eight parallel jobs each complete under their own identity."""
        app = make_app(stub_executable("slow_writes_output"))

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                responses = await asyncio.gather(
                    *[
                        client.post("/upscale", files={"file": (f"img{i}.png", bytes([i]) * 10, "image/png")})
                        for i in range(8)
                    ]
                )
                bodies = [response.json() for response in responses]
                statuses = [
                    (await client.get(f"/status/{body['data']['request_id']}")).json() for body in bodies
                ]
            await app.state.job_manager.runner.wait_for_reapers()
            return bodies, statuses

        bodies, statuses = asyncio.run(scenario())

        request_ids = {body["data"]["request_id"] for body in bodies}
        assert len(request_ids) == 8
        assert all(body["status"] == "Completed" for body in bodies)
        assert statuses == [{"status": "Completed"}] * 8

        outputs = {Path(body["data"]["upscaled_path"]) for body in bodies}
        assert len(outputs) == 8
        for i, body in enumerate(bodies):
            assert Path(body["data"]["upscaled_path"]).read_bytes() == bytes([i]) * 10

    def test_status_is_served_while_job_runs(self, make_app, stub_executable):
        """A status read is answered while the job's upscaler is still running."""
        app = make_app(stub_executable("slow_writes_output"))
        registry = app.state.job_manager.registry

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                job = asyncio.ensure_future(
                    client.post("/upscale", files={"file": ("a.png", b"0123456789", "image/png")})
                )
                while not registry.snapshot():
                    await asyncio.sleep(0.01)
                (request_id,) = registry.snapshot()

                during = await client.get(f"/status/{request_id}")
                still_running = not job.done()
                response = await job
                after = await client.get(f"/status/{request_id}")
            await app.state.job_manager.runner.wait_for_reapers()
            return request_id, during.json(), still_running, response.json(), after.json()

        request_id, during, still_running, response, after = asyncio.run(scenario())

        assert still_running
        assert during == {"status": "Processing"}
        assert response["data"]["request_id"] == request_id
        assert after == {"status": "Completed"}


class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_preflight_allowed(self, client):
        """Permissive CORS should answer a preflight request."""
        response = client.options(
            "/ping",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
