"""Queue worker: ties deliveries to job status transitions.

This module provides the per-queue consumer with:
- One terminal status transition per handled delivery
- Ack on success, reject without requeue (dead-letter) on failure
- Safe handling of redeliveries (already-resolved jobs are not reprocessed)
- A cancellable consume thread that finishes the in-flight delivery on stop
"""

import json
import logging
import threading
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional


from ..errors import (
    InputUnavailable,
    MalformedMessage,
    TransportUnavailable,
    UnsupportedJobType,
)
from ..storage import FileStorage
from .backends import Outcome, QueueTransport
from .models import QUEUE_FOR, JobStatus, JobType, ProcessingMessage, result_location_for
from .store import JobStore

logger = logging.getLogger(__name__)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class JobWorker:
    """Consumes one queue and drives each job through its state machine.

    Deliveries are processed serially (the transport keeps prefetch=1);
    throughput scales by running more workers on the same queue.
    """

    def __init__(
        self,
        queue_name: str,
        job_types: Iterable[JobType],
        store: JobStore,
        storage: FileStorage,
        transport: QueueTransport,
        transform_fn: Optional[Callable] = None,
        reconnect_delay_s: float = 5.0,
    ):
        """Initialize worker.

        Args:
            queue_name: Queue this worker consumes
            job_types: Job types this worker accepts
            store: Shared job store
            storage: File store for inputs and results
            transport: Broker transport
            transform_fn: Callable(job_type, data, parameters) -> bytes
                (default: filejobs.transformers.transform)
            reconnect_delay_s: Pause before reconnecting after a broker failure
        """
        self.queue_name = queue_name
        self.job_types: FrozenSet[JobType] = frozenset(job_types)
        self.store = store
        self.storage = storage
        self.transport = transport
        if transform_fn is None:
            # Imported here: transformers depends on jobs.models
            from ..transformers import transform as transform_fn
        self.transform_fn = transform_fn
        self.reconnect_delay_s = reconnect_delay_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- per-delivery protocol ---

    def handle(self, body: bytes) -> Outcome:
        """Handle one delivery and return the ack/reject verdict.

        Never raises: every failure is recorded on the job (when its id is
        known) and mapped to REJECT.
        """
        try:
            message = ProcessingMessage.from_bytes(body)
        except MalformedMessage as e:
            return self._reject_malformed(body, e)

        job_id = message.job_id
        record = self.store.get(job_id)
        if record is None:
            logger.warning(f"Job {job_id} is unknown (deleted or expired); rejecting delivery")
            return Outcome.REJECT

        if record.status.is_terminal:
            # Redelivery after a lost ack: the job is already resolved
            logger.info(f"Job {job_id} already {record.status.value}; not reprocessing")
            return Outcome.ACK if record.status == JobStatus.COMPLETED else Outcome.REJECT

        self.store.update_status(job_id, JobStatus.PROCESSING)

        try:
            result_location = self._process(message)
        except Exception as e:
            logger.error(
                f"Job {job_id} failed on {self.queue_name}: {_describe(e)}",
                exc_info=not isinstance(e, (InputUnavailable, UnsupportedJobType)),
            )
            self.store.update_status(job_id, JobStatus.FAILED, error=_describe(e))
            return Outcome.REJECT

        completed = self.store.update_status(
            job_id, JobStatus.COMPLETED, result_location=result_location
        )
        if not completed:
            # Deleted or failed as stale while we worked; drop the orphan result
            self.storage.delete(result_location)
            logger.warning(f"Job {job_id} changed during processing; result discarded")
            return Outcome.ACK

        logger.info(f"Successfully processed job {job_id} -> {result_location}")
        return Outcome.ACK

    def _process(self, message: ProcessingMessage) -> str:
        if message.job_type not in self.job_types:
            raise UnsupportedJobType(message.job_type.value, self.queue_name)

        try:
            data = self.storage.load(message.input_location)
        except FileNotFoundError:
            raise InputUnavailable(message.input_location) from None

        output = self.transform_fn(message.job_type, data, message.parameters)

        # Deterministic location: a redelivered job overwrites the same file
        location = result_location_for(message.job_id, message.job_type)
        self.storage.save(location, output)
        return location

    def _reject_malformed(self, body: bytes, error: MalformedMessage) -> Outcome:
        detail = str(error)
        cause = error.__cause__ or error
        job_id = _recover_job_id(body)
        if job_id is None:
            logger.error(f"{detail} on {self.queue_name}; job id unrecoverable: {cause}")
            return Outcome.REJECT

        logger.error(f"{detail} for job {job_id} on {self.queue_name}: {cause}")
        self.store.update_status(job_id, JobStatus.FAILED, error=detail)
        return Outcome.REJECT

    # --- lifecycle ---

    def run(self, stop_event: threading.Event) -> None:
        """Consume until ``stop_event`` is set, reconnecting on broker loss."""
        while not stop_event.is_set():
            try:
                self.transport.consume(self.queue_name, self.handle, stop_event)
            except TransportUnavailable as e:
                if stop_event.is_set():
                    break
                logger.error(
                    f"Worker for {self.queue_name} lost the broker: {e}; "
                    f"retrying in {self.reconnect_delay_s}s"
                )
                stop_event.wait(self.reconnect_delay_s)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_thread, name=f"worker-{self.queue_name}", daemon=True
        )
        self._thread.start()

    def _run_thread(self) -> None:
        try:
            self.run(self._stop_event)
        except Exception:
            logger.exception(f"Worker for {self.queue_name} stopped unexpectedly")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal shutdown and wait for the in-flight delivery to settle."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Worker for {self.queue_name} did not stop within {timeout}s")
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def _recover_job_id(body: bytes) -> Optional[str]:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    job_id = payload.get("JobId")
    return job_id if isinstance(job_id, str) and job_id else None


def build_workers(
    store: JobStore,
    storage: FileStorage,
    transport: QueueTransport,
    **kwargs,
) -> List[JobWorker]:
    """Create one worker per queue, each serving the job types routed to it."""
    by_queue: Dict[str, List[JobType]] = {}
    for job_type, queue_name in QUEUE_FOR.items():
        by_queue.setdefault(queue_name, []).append(job_type)
    return [
        JobWorker(queue_name, job_types, store, storage, transport, **kwargs)
        for queue_name, job_types in sorted(by_queue.items())
    ]
