"""Submission, query and retrieval operations over the job pipeline.

This module is the seam between the HTTP layer and the core: it stores the
input, records the job and publishes exactly one message per submission, and
it answers status, download and delete requests from the job store.

Usage:
    service = JobService(store, storage, transport)
    record = service.submit(data, "photo.png", JobType.RESIZE_IMAGE, {"Width": 800})
    service.get_status(record.job_id)
"""

import logging
import uuid
from pathlib import Path
from typing import Any, List, Mapping, NamedTuple, Optional, Union

from .errors import JobNotFound, ResultNotReady
from .jobs.backends import QueueTransport
from .jobs.models import (
    CONTENT_TYPE_FOR,
    EXTENSION_FOR,
    QUEUE_FOR,
    JobRecord,
    JobStatus,
    JobType,
    ProcessingMessage,
    result_location_for,
)
from .jobs.store import JobStore
from .storage import UPLOADS_DIR, FileStorage, safe_file_name

logger = logging.getLogger(__name__)


class ResultFile(NamedTuple):
    data: bytes
    file_name: str
    content_type: str


def download_name(record: JobRecord) -> str:
    stem = Path(safe_file_name(record.original_file_name)).stem or "result"
    return f"{stem}_processed.{EXTENSION_FOR[record.job_type]}"


class JobService:
    """Job operations shared by the API and the CLI."""

    def __init__(self, store: JobStore, storage: FileStorage, transport: QueueTransport):
        self.store = store
        self.storage = storage
        self.transport = transport

    def submit(
        self,
        data: bytes,
        file_name: str,
        job_type: Union[JobType, str],
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> JobRecord:
        """Store the input, create a Pending job and publish its message.

        If publishing fails for any reason the job record and stored input
        are removed before the error propagates, so no Pending job is left
        without a message.

        Raises:
            ValueError: Empty input, unknown job type or invalid parameters
            TransportUnavailable: Broker unreachable (nothing is retained)
            QueueConfigurationConflict: Work queue declared with other arguments
        """
        if not data:
            raise ValueError("No file provided")
        job_type = JobType(job_type)

        job_id = str(uuid.uuid4())
        input_location = f"{UPLOADS_DIR}/{job_id}_{safe_file_name(file_name)}"
        record = JobRecord(
            job_id=job_id,
            original_file_name=file_name or "upload",
            input_location=input_location,
            job_type=job_type,
            status=JobStatus.PENDING,
            parameters=dict(parameters or {}),
        )

        self.storage.save(input_location, data)
        self.store.create(record)

        try:
            self.transport.publish(ProcessingMessage.from_record(record), QUEUE_FOR[job_type])
        except Exception as e:
            logger.error(f"Publishing job {job_id} failed; rolling back submission: {e}")
            self.store.delete(job_id)
            self.storage.delete(input_location)
            raise

        # A worker may already have picked the job up
        return self.store.get(job_id) or record

    def get_status(self, job_id: str) -> JobRecord:
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    def list_jobs(self) -> List[JobRecord]:
        return self.store.list_all()

    def fetch_result(self, job_id: str) -> ResultFile:
        """Load a Completed job's result.

        Raises:
            JobNotFound: No such job, or its result file is gone
            ResultNotReady: The job exists but is not Completed
        """
        record = self.get_status(job_id)
        if not record.is_download_ready:
            raise ResultNotReady(job_id, record.status.value)
        try:
            data = self.storage.load(record.result_location)
        except FileNotFoundError:
            raise JobNotFound(job_id, what="Result file") from None
        return ResultFile(data, download_name(record), CONTENT_TYPE_FOR[record.job_type])

    def delete_job(self, job_id: str) -> JobRecord:
        """Remove a job and its input and result files.

        The record goes first so a worker finishing concurrently cannot
        complete it; that worker then discards its own result.

        Raises:
            JobNotFound: No such job
        """
        record = self.store.delete(job_id)
        if record is None:
            raise JobNotFound(job_id)

        locations = {record.input_location, result_location_for(job_id, record.job_type)}
        if record.result_location:
            locations.add(record.result_location)
        for location in locations:
            if self.storage.exists(location):
                self.storage.delete(location)
        return record
