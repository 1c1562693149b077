"""Pydantic models and routing tables for the job pipeline.

This module defines the job record held by the job store, the message
published to the broker, and the static tables that map every job type to
its queue, result extension and content type.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
)

from ..errors import MalformedMessage


class JobType(str, Enum):
    """Closed set of transformations a job can request."""

    CONVERT_TO_PDF = "ConvertToPDF"
    RESIZE_IMAGE = "ResizeImage"
    ADD_WATERMARK = "AddWatermark"
    CONVERT_TO_JPG = "ConvertToJPG"
    CONVERT_TO_PNG = "ConvertToPNG"


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        Pending → Processing      (worker picks up the delivery)
        Processing → Processing   (redelivery of an in-flight job)
        Processing → Completed    (result saved)
        Processing → Failed       (input missing or transformer error)
        Pending → Failed          (message rejected before processing started)
    """

    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


# Strict members keep "1" from becoming 1 and True from becoming 1.
ParameterValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
Parameters = Dict[str, ParameterValue]


def get_int(parameters: Mapping[str, Any], key: str, default: int) -> int:
    """Return an int parameter, or ``default`` when missing or mistyped."""
    value = parameters.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def get_float(parameters: Mapping[str, Any], key: str, default: float) -> float:
    """Return a numeric parameter as float, or ``default`` when missing or mistyped."""
    value = parameters.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def get_str(parameters: Mapping[str, Any], key: str, default: str) -> str:
    """Return a string parameter, or ``default`` when missing or mistyped."""
    value = parameters.get(key)
    if not isinstance(value, str):
        return default
    return value


def get_bool(parameters: Mapping[str, Any], key: str, default: bool) -> bool:
    """Return a bool parameter, or ``default`` when missing or mistyped."""
    value = parameters.get(key)
    if not isinstance(value, bool):
        return default
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """Authoritative state of one job, owned by the job store.

    Invariants:
    - completed_at is set iff status is Completed or Failed
    - result_location is set iff status is Completed
    """

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    original_file_name: str = Field(..., description="File name supplied at submission")
    input_location: str = Field(..., description="Storage key of the uploaded input")
    job_type: JobType = Field(..., description="Requested transformation")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    error_message: Optional[str] = Field(default=None, description="Failure detail")
    result_location: Optional[str] = Field(default=None, description="Storage key of the result")
    created_at: datetime = Field(default_factory=utcnow, description="Submission time")
    started_at: Optional[datetime] = Field(default=None, description="Last Processing transition")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    parameters: Parameters = Field(default_factory=dict, description="Transformation parameters")

    @property
    def is_download_ready(self) -> bool:
        return self.status == JobStatus.COMPLETED and bool(self.result_location)


class ProcessingMessage(BaseModel):
    """Wire message published once per job.

    Serialized as JSON using the ``JobId``/``FilePath``/``JobType``/``Parameters``
    field names.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    job_id: str = Field(..., alias="JobId", min_length=1)
    input_location: str = Field(..., alias="FilePath", min_length=1)
    job_type: JobType = Field(..., alias="JobType")
    parameters: Parameters = Field(default_factory=dict, alias="Parameters")

    @classmethod
    def from_record(cls, record: JobRecord) -> "ProcessingMessage":
        return cls(
            job_id=record.job_id,
            input_location=record.input_location,
            job_type=record.job_type,
            parameters=dict(record.parameters),
        )

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, body: bytes) -> "ProcessingMessage":
        """Decode a delivery body.

        Raises:
            MalformedMessage: If the body is not valid JSON or fails validation
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise MalformedMessage(
                f"Malformed message: {e.error_count()} validation error(s)"
            ) from e


# --- routing tables ---

DOCUMENT_QUEUE = "document_processing"
IMAGE_QUEUE = "image_processing"

QUEUE_FOR: Dict[JobType, str] = {
    JobType.CONVERT_TO_PDF: DOCUMENT_QUEUE,
    JobType.RESIZE_IMAGE: IMAGE_QUEUE,
    JobType.ADD_WATERMARK: IMAGE_QUEUE,
    JobType.CONVERT_TO_JPG: IMAGE_QUEUE,
    JobType.CONVERT_TO_PNG: IMAGE_QUEUE,
}

EXTENSION_FOR: Dict[JobType, str] = {
    JobType.CONVERT_TO_PDF: "pdf",
    JobType.RESIZE_IMAGE: "jpg",
    JobType.ADD_WATERMARK: "jpg",
    JobType.CONVERT_TO_JPG: "jpg",
    JobType.CONVERT_TO_PNG: "png",
}

CONTENT_TYPE_FOR: Dict[JobType, str] = {
    JobType.CONVERT_TO_PDF: "application/pdf",
    JobType.RESIZE_IMAGE: "image/jpeg",
    JobType.ADD_WATERMARK: "image/jpeg",
    JobType.CONVERT_TO_JPG: "image/jpeg",
    JobType.CONVERT_TO_PNG: "image/png",
}


def ensure_exhaustive(table: Mapping[JobType, Any], name: str) -> None:
    """Fail loudly if a routing table is missing a job type.

    Raises:
        RuntimeError: If any JobType member has no entry
    """
    missing = [member.value for member in JobType if member not in table]
    if missing:
        raise RuntimeError(f"{name} has no entry for: {', '.join(missing)}")


ensure_exhaustive(QUEUE_FOR, "QUEUE_FOR")
ensure_exhaustive(EXTENSION_FOR, "EXTENSION_FOR")
ensure_exhaustive(CONTENT_TYPE_FOR, "CONTENT_TYPE_FOR")


def dead_letter_names(queue_name: str) -> Dict[str, str]:
    """Return the dead-letter exchange, queue and routing key for a queue."""
    return {
        "exchange": f"{queue_name}_dlx",
        "queue": f"{queue_name}_dlq",
        "routing_key": f"{queue_name}_dlq",
    }


def queue_arguments(queue_name: str) -> Dict[str, str]:
    """Broker arguments attached to every work queue."""
    names = dead_letter_names(queue_name)
    return {
        "x-dead-letter-exchange": names["exchange"],
        "x-dead-letter-routing-key": names["routing_key"],
    }


def result_location_for(job_id: str, job_type: JobType) -> str:
    """Deterministic storage key for a job's result."""
    return f"results/{job_id}.{EXTENSION_FOR[job_type]}"
