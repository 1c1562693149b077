"""Tests for the job HTTP API."""

import asyncio
import io

import pytest
from httpx import AsyncClient
from PIL import Image

from conftest import drain, make_image


async def upload(client, data, job_type, filename="photo.png", **fields):
    form = {"jobType": job_type}
    form.update({k: str(v) for k, v in fields.items()})
    return await client.post(
        "/api/documents/upload",
        files={"file": (filename, data, "application/octet-stream")},
        data=form,
    )


@pytest.mark.asyncio(loop_scope="function")
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["jobs"] == 0
    assert set(data["workers"]) == {"document_processing", "image_processing"}


@pytest.mark.asyncio(loop_scope="function")
async def test_resize_job_end_to_end(client: AsyncClient, app):
    """Upload, process, poll and download a resize job."""
    response = await upload(
        client, make_image(size=(300, 200)), "ResizeImage", width=800, height=600
    )
    assert response.status_code == 200
    job = response.json()
    assert job["status"] == "Pending"
    assert job["jobType"] == "ResizeImage"
    assert job["isDownloadReady"] is False

    assert drain(app.state.runtime) == 1

    status = (await client.get(f"/api/documents/status/{job['jobId']}")).json()
    assert status["status"] == "Completed"
    assert status["isDownloadReady"] is True
    assert status["completedAt"] is not None
    assert status["resultPath"] == f"results/{job['jobId']}.jpg"

    download = await client.get(f"/api/documents/download/{job['jobId']}")
    assert download.status_code == 200
    assert download.headers["content-type"] == "image/jpeg"
    assert 'filename="photo_processed.jpg"' in download.headers["content-disposition"]
    with Image.open(io.BytesIO(download.content)) as image:
        assert image.size == (800, 600)


@pytest.mark.asyncio(loop_scope="function")
async def test_pdf_of_non_image_fails(client: AsyncClient, app):
    response = await upload(client, b"just some text", "ConvertToPDF", filename="notes.txt")
    job_id = response.json()["jobId"]

    drain(app.state.runtime)

    status = (await client.get(f"/api/documents/status/{job_id}")).json()
    assert status["status"] == "Failed"
    assert status["errorMessage"]
    assert status["isDownloadReady"] is False

    download = await client.get(f"/api/documents/download/{job_id}")
    assert download.status_code == 400
    assert download.json()["detail"]["code"] == "RESULT_NOT_READY"
    assert app.state.runtime.transport.dead_letters("document_processing")


@pytest.mark.asyncio(loop_scope="function")
async def test_download_before_processing(client: AsyncClient):
    response = await upload(client, make_image(), "ConvertToJPG")
    job_id = response.json()["jobId"]

    download = await client.get(f"/api/documents/download/{job_id}")
    assert download.status_code == 400
    assert download.json()["detail"]["status"] == "Pending"


@pytest.mark.asyncio(loop_scope="function")
async def test_watermark_parameters_reach_message(client: AsyncClient, app):
    await upload(client, make_image(), "AddWatermark", watermarkText="DRAFT")

    published = app.state.runtime.transport.messages("image_processing")
    assert len(published) == 1
    assert b'"WatermarkText":"DRAFT"' in published[0]


@pytest.mark.asyncio(loop_scope="function")
async def test_list_jobs_most_recent_first(client: AsyncClient):
    first = (await upload(client, make_image(), "ConvertToPNG")).json()
    await asyncio.sleep(0.01)
    second = (await upload(client, make_image(), "ConvertToJPG")).json()

    response = await client.get("/api/documents/jobs")
    assert response.status_code == 200
    assert [j["jobId"] for j in response.json()] == [second["jobId"], first["jobId"]]


@pytest.mark.asyncio(loop_scope="function")
async def test_delete_job_removes_files(client: AsyncClient, app):
    job = (await upload(client, make_image(), "ConvertToPNG")).json()
    drain(app.state.runtime)
    runtime = app.state.runtime
    record = runtime.store.get(job["jobId"])

    response = await client.delete(f"/api/documents/job/{job['jobId']}")
    assert response.status_code == 200
    assert response.json() == {"status": "deleted", "id": job["jobId"]}

    assert not runtime.storage.exists(record.input_location)
    assert not runtime.storage.exists(record.result_location)
    assert (await client.get(f"/api/documents/status/{job['jobId']}")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/documents/status/missing"),
        ("get", "/api/documents/download/missing"),
        ("delete", "/api/documents/job/missing"),
    ],
)
async def test_unknown_job_returns_404(client: AsyncClient, method, path):
    response = await getattr(client, method)(path)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "JOB_NOT_FOUND"


@pytest.mark.asyncio(loop_scope="function")
async def test_broker_down_returns_503(client: AsyncClient, app):
    runtime = app.state.runtime
    runtime.transport.available = False

    response = await upload(client, make_image(), "ConvertToJPG")

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "BROKER_UNAVAILABLE"
    assert len(runtime.store) == 0
    assert list((runtime.storage.root / "uploads").iterdir()) == []


@pytest.mark.asyncio(loop_scope="function")
async def test_queue_conflict_returns_503(client: AsyncClient, app):
    runtime = app.state.runtime
    runtime.transport.declare_queue("image_processing", {"x-max-length": "10"})

    response = await upload(client, make_image(), "ConvertToJPG")

    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["code"] == "QUEUE_CONFIGURATION_CONFLICT"
    assert detail["queue"] == "image_processing"
    assert len(runtime.store) == 0
    assert list((runtime.storage.root / "uploads").iterdir()) == []


@pytest.mark.asyncio(loop_scope="function")
async def test_empty_file_returns_400(client: AsyncClient):
    response = await upload(client, b"", "ConvertToJPG")
    assert response.status_code == 400


@pytest.mark.asyncio(loop_scope="function")
async def test_unknown_job_type_returns_422(client: AsyncClient):
    response = await upload(client, make_image(), "Explode")
    assert response.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_oversized_upload_returns_413(app_config):
    from httpx import ASGITransport

    from filejobs.api.main import create_app
    from filejobs.jobs import InMemoryTransport

    config = app_config.model_copy(update={"api": app_config.api.model_copy(update={"max_upload_mb": 1})})
    app = create_app(config, transport=InMemoryTransport(poll_interval_s=0.01))

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await upload(ac, b"x" * (1024 * 1024 + 1), "ConvertToJPG")

    assert response.status_code == 413
    assert len(app.state.runtime.store) == 0


@pytest.mark.asyncio(loop_scope="function")
async def test_lifespan_runs_workers(client: AsyncClient, app):
    """With the lifespan running, in-process workers complete submitted jobs."""
    async with app.router.lifespan_context(app):
        job = (await upload(client, make_image(), "ConvertToPNG")).json()

        for _ in range(500):
            status = (await client.get(f"/api/documents/status/{job['jobId']}")).json()
            if status["status"] == "Completed":
                break
            await asyncio.sleep(0.01)

        assert status["status"] == "Completed"
        health = (await client.get("/health")).json()
        assert all(health["workers"].values())

    assert not any(w.is_running for w in app.state.runtime.workers)
