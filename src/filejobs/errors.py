"""Error types for the job pipeline.

All errors inherit from FileJobsError so callers at the API edge can catch
the whole family. Errors raised while handling a single delivery derive from
ProcessingError; the worker turns those into a Failed job and a rejected
delivery.
"""


class FileJobsError(Exception):
    """Base exception for all filejobs failures."""
    pass


class DuplicateJob(FileJobsError):
    """Raised when a job id is inserted twice into the job store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job already exists: {job_id}")


class JobNotFound(FileJobsError):
    """Raised when a job (or its result file) cannot be found."""

    def __init__(self, job_id: str, what: str = "Job"):
        self.job_id = job_id
        super().__init__(f"{what} not found: {job_id}")


class ResultNotReady(FileJobsError):
    """Raised when a result is requested for a job that is not Completed."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Result for job {job_id} not ready (status: {status})")


# --- transport ---


class TransportError(FileJobsError):
    """Base exception for broker failures."""
    pass


class TransportUnavailable(TransportError):
    """Raised when no broker connection can be established."""
    pass


class QueueConfigurationConflict(TransportError):
    """Raised when a queue already exists with different arguments."""

    def __init__(self, queue_name: str, reason: str = ""):
        self.queue_name = queue_name
        message = f"Queue {queue_name} already declared with conflicting arguments"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# --- per-delivery processing ---


class ProcessingError(FileJobsError):
    """Base exception for failures while handling one delivery."""
    pass


class MalformedMessage(ProcessingError):
    """Raised when a delivery body cannot be decoded into a ProcessingMessage."""
    pass


class InputUnavailable(ProcessingError):
    """Raised when the job's input file cannot be loaded."""

    def __init__(self, location: str):
        self.location = location
        super().__init__(f"Input file not found: {location}")


class UnsupportedJobType(ProcessingError):
    """Raised when a worker receives a job type routed to another queue."""

    def __init__(self, job_type: str, queue_name: str):
        self.job_type = job_type
        self.queue_name = queue_name
        super().__init__(f"Job type {job_type} not supported by worker for {queue_name}")


class UnsupportedOperation(ProcessingError):
    """Raised for unknown job types or invalid parameter combinations."""
    pass


class TransformFailed(ProcessingError):
    """Raised when a transformer cannot decode or encode the payload."""
    pass
