from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from filejobs.config import resolve_config
from filejobs.errors import (
    JobNotFound,
    QueueConfigurationConflict,
    ResultNotReady,
    TransportUnavailable,
)
from filejobs.jobs.backends import QueueTransport
from filejobs.jobs.models import JobRecord, JobStatus, JobType
from filejobs.models import FileJobsConfig
from filejobs.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


# --- Pydantic Models for Responses ---
class JobResponse(BaseModel):
    jobId: str  # noqa: N815
    originalFileName: str  # noqa: N815
    jobType: JobType  # noqa: N815
    status: JobStatus
    errorMessage: Optional[str] = None  # noqa: N815
    createdAt: datetime  # noqa: N815
    completedAt: Optional[datetime] = None  # noqa: N815
    resultPath: Optional[str] = None  # noqa: N815
    isDownloadReady: bool  # noqa: N815


def _job_to_response(record: JobRecord) -> JobResponse:
    return JobResponse(
        jobId=record.job_id,
        originalFileName=record.original_file_name,
        jobType=record.job_type,
        status=record.status,
        errorMessage=record.error_message,
        createdAt=record.created_at,
        completedAt=record.completed_at,
        resultPath=record.result_location,
        isDownloadReady=record.is_download_ready,
    )


def _not_found(e: JobNotFound) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "JOB_NOT_FOUND", "message": str(e), "jobId": e.job_id},
    )


def create_app(
    config: Optional[FileJobsConfig] = None,
    transport: Optional[QueueTransport] = None,
) -> FastAPI:
    """Build the API with its own runtime (store, broker, workers, sweeper).

    Components are created eagerly and exposed on ``app.state.runtime``;
    workers and the sweeper start with the app lifespan.
    """
    config = config or resolve_config()
    runtime = build_runtime(config, transport=transport)
    max_upload_bytes = config.api.max_upload_mb * 1024 * 1024

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await asyncio.to_thread(runtime.start)
        yield
        await asyncio.to_thread(runtime.stop)

    app = FastAPI(title="filejobs", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.get("/health")
    async def health_check(request: Request):
        rt = get_runtime(request)
        return {
            "status": "ok",
            "jobs": len(rt.store),
            "workers": {w.queue_name: w.is_running for w in rt.workers},
        }

    # --- JOB ENDPOINTS ---

    @app.post("/api/documents/upload", response_model=JobResponse)
    async def upload_file(
        request: Request,
        file: UploadFile = File(...),
        jobType: JobType = Form(...),  # noqa: N803
        width: Optional[int] = Form(default=None),
        height: Optional[int] = Form(default=None),
        watermarkText: Optional[str] = Form(default=None),  # noqa: N803
    ):
        """Accept a file and queue a transformation job for it."""
        data = await file.read(max_upload_bytes + 1)
        await file.close()
        if not data:
            raise HTTPException(status_code=400, detail="No file provided")
        if len(data) > max_upload_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File exceeds {config.api.max_upload_mb} MB",
            )

        parameters = {}
        if width is not None:
            parameters["Width"] = width
        if height is not None:
            parameters["Height"] = height
        if watermarkText:
            parameters["WatermarkText"] = watermarkText

        service = get_runtime(request).service
        try:
            record = await asyncio.to_thread(
                service.submit, data, file.filename or "upload", jobType, parameters
            )
        except TransportUnavailable as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "BROKER_UNAVAILABLE", "message": str(e)},
            )
        except QueueConfigurationConflict as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": "QUEUE_CONFIGURATION_CONFLICT",
                    "message": str(e),
                    "queue": e.queue_name,
                },
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _job_to_response(record)

    @app.get("/api/documents/status/{job_id}", response_model=JobResponse)
    async def get_job_status(job_id: str, request: Request):
        try:
            record = get_runtime(request).service.get_status(job_id)
        except JobNotFound as e:
            raise _not_found(e)
        return _job_to_response(record)

    @app.get("/api/documents/jobs", response_model=List[JobResponse])
    async def list_jobs(request: Request):
        """List all jobs, most recent first."""
        return [_job_to_response(r) for r in get_runtime(request).service.list_jobs()]

    @app.get("/api/documents/download/{job_id}")
    async def download_result(job_id: str, request: Request):
        service = get_runtime(request).service
        try:
            result = await asyncio.to_thread(service.fetch_result, job_id)
        except JobNotFound as e:
            raise _not_found(e)
        except ResultNotReady as e:
            raise HTTPException(
                status_code=400,
                detail={"code": "RESULT_NOT_READY", "message": str(e), "status": e.status},
            )
        return Response(
            content=result.data,
            media_type=result.content_type,
            headers={"Content-Disposition": f'attachment; filename="{result.file_name}"'},
        )

    @app.delete("/api/documents/job/{job_id}")
    async def delete_job(job_id: str, request: Request):
        """Delete a job together with its input and result files."""
        service = get_runtime(request).service
        try:
            await asyncio.to_thread(service.delete_job, job_id)
        except JobNotFound as e:
            raise _not_found(e)
        return {"status": "deleted", "id": job_id}

    return app


if __name__ == "__main__":
    import uvicorn

    from filejobs.logs import configure_logging

    app_config = resolve_config()
    configure_logging(app_config.logging.level)
    uvicorn.run(create_app(app_config), host=app_config.api.host, port=app_config.api.port)
