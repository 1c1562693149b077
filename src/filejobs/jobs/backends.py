"""Abstract base class for queue transports.

This module defines the interface between submitters, workers and the message
broker. Implementations exist for RabbitMQ (pika) and for an in-process broker
used by tests and single-process deployments.
"""

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from .models import ProcessingMessage

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Handler verdict for one delivery."""

    ACK = "ack"  # Processed; remove from the queue
    REJECT = "reject"  # Failed; route to the dead-letter queue, never requeue


Handler = Callable[[bytes], Outcome]


class QueueTransport(ABC):
    """Abstract at-least-once broker interface.

    Implementations must provide:
    - Idempotent queue declaration with a per-queue dead-letter sink
    - Persistent publishing that surfaces connection failures to the caller
    - A consume loop with prefetch=1 and manual acknowledgment
    """

    @abstractmethod
    def ensure_queue(self, name: str) -> None:
        """Declare a durable work queue and its dead-letter pair.

        Args:
            name: Queue name

        Implementation notes:
        - Queue is durable, non-exclusive, non-auto-deleting
        - Dead-letter exchange ``{name}_dlx`` routes to ``{name}_dlq``
        - Repeated calls with identical arguments are no-ops

        Raises:
            QueueConfigurationConflict: If the queue exists with other arguments
            TransportUnavailable: If the broker cannot be reached
        """
        pass

    @abstractmethod
    def publish(self, message: ProcessingMessage, queue_name: str) -> None:
        """Publish one persistent message to ``queue_name``.

        Raises:
            TransportUnavailable: If no connection can be established
        """
        pass

    @abstractmethod
    def consume(self, queue_name: str, handler: Handler, stop_event: threading.Event) -> None:
        """Run the consume loop until ``stop_event`` is set.

        Args:
            queue_name: Queue to consume from
            handler: Called with the raw body of each delivery
            stop_event: Shutdown signal

        Implementation notes:
        - At most one unacknowledged delivery in flight (prefetch=1)
        - ACK acknowledges; REJECT rejects without requeue (dead-lettered)
        - A handler exception is treated as REJECT
        - The in-flight delivery is always acked or rejected before returning
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release publisher connections."""
        pass


def dispatch(handler: Handler, body: bytes, queue_name: str) -> Outcome:
    """Invoke a handler for one delivery, treating any exception as REJECT."""
    try:
        outcome = handler(body)
    except Exception:
        logger.exception(f"Handler raised on delivery from {queue_name}; rejecting")
        return Outcome.REJECT
    if not isinstance(outcome, Outcome):
        logger.error(f"Handler returned {outcome!r} for delivery from {queue_name}; rejecting")
        return Outcome.REJECT
    return outcome
