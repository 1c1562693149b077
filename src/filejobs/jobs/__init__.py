"""Job store, queue transports and workers for asynchronous file jobs."""

from .backends import Outcome, QueueTransport
from .memory_backend import InMemoryTransport
from .models import (
    CONTENT_TYPE_FOR,
    EXTENSION_FOR,
    QUEUE_FOR,
    JobRecord,
    JobStatus,
    JobType,
    ProcessingMessage,
    result_location_for,
)
from .rabbitmq_backend import RabbitMQTransport
from .store import JobStore, RetentionSweeper
from .worker import JobWorker, build_workers

__all__ = [
    "Outcome",
    "QueueTransport",
    "InMemoryTransport",
    "RabbitMQTransport",
    "CONTENT_TYPE_FOR",
    "EXTENSION_FOR",
    "QUEUE_FOR",
    "JobRecord",
    "JobStatus",
    "JobType",
    "ProcessingMessage",
    "result_location_for",
    "JobStore",
    "RetentionSweeper",
    "JobWorker",
    "build_workers",
]
