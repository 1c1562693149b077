"""In-process implementation of QueueTransport.

Honours the same contract as the RabbitMQ transport (durable queue registry,
argument conflict detection, dead-letter routing, unacked redelivery) without
a broker. Used by the test-suite and by single-process runs with
``broker.backend: memory``.
"""

import itertools
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from ..errors import QueueConfigurationConflict, TransportUnavailable
from .backends import Handler, Outcome, QueueTransport, dispatch
from .models import ProcessingMessage, dead_letter_names, queue_arguments

logger = logging.getLogger(__name__)


class _Queue:
    def __init__(self, name: str, arguments: Dict[str, str]):
        self.name = name
        self.arguments = dict(arguments)
        self.ready: Deque[bytes] = deque()
        self.unacked: Dict[int, bytes] = {}


class InMemoryTransport(QueueTransport):
    """Thread-safe in-process broker.

    Deliveries are identified by a delivery tag; each tag can be settled
    (acked or rejected) exactly once. Setting ``available = False`` makes
    every broker call raise TransportUnavailable.
    """

    def __init__(self, poll_interval_s: float = 0.05):
        self.poll_interval_s = poll_interval_s
        self.available = True
        self._cond = threading.Condition()
        self._queues: Dict[str, _Queue] = {}
        self._exchanges: set = set()
        self._bindings: Dict[Tuple[str, str], str] = {}
        self._tags = itertools.count(1)

    def _check_available(self) -> None:
        if not self.available:
            raise TransportUnavailable("In-memory broker is unavailable")

    def _declare_queue(self, name: str, arguments: Dict[str, str]) -> None:
        existing = self._queues.get(name)
        if existing is None:
            self._queues[name] = _Queue(name, arguments)
        elif existing.arguments != arguments:
            raise QueueConfigurationConflict(
                name, f"declared with {existing.arguments}, requested {arguments}"
            )

    def declare_queue(self, name: str, arguments: Optional[Dict[str, str]] = None) -> None:
        """Declare a bare queue with explicit arguments (no dead-letter pair)."""
        self._check_available()
        with self._cond:
            self._declare_queue(name, arguments or {})

    def ensure_queue(self, name: str) -> None:
        self._check_available()
        names = dead_letter_names(name)
        with self._cond:
            self._declare_queue(name, queue_arguments(name))
            self._exchanges.add(names["exchange"])
            self._declare_queue(names["queue"], {})
            self._bindings[(names["exchange"], names["routing_key"])] = names["queue"]

    def publish(self, message: ProcessingMessage, queue_name: str) -> None:
        self._check_available()
        if queue_name not in self._queues:
            self.ensure_queue(queue_name)
        with self._cond:
            self._queues[queue_name].ready.append(message.to_bytes())
            self._cond.notify_all()
        logger.info(f"Published job {message.job_id} to {queue_name}")

    def publish_raw(self, body: bytes, queue_name: str) -> None:
        """Publish an arbitrary body (for malformed-message scenarios)."""
        self._check_available()
        if queue_name not in self._queues:
            self.ensure_queue(queue_name)
        with self._cond:
            self._queues[queue_name].ready.append(body)
            self._cond.notify_all()

    # --- delivery primitives ---

    def receive(self, queue_name: str, timeout: float = 0.0) -> Optional[Tuple[int, bytes]]:
        """Take the next delivery as unacked.

        Returns:
            Tuple of (delivery_tag, body), or None if nothing arrived in time
        """
        self._check_available()
        with self._cond:
            queue = self._queues.get(queue_name)
            if queue is None:
                return None
            if not queue.ready and timeout > 0:
                self._cond.wait_for(lambda: bool(queue.ready), timeout=timeout)
            if not queue.ready:
                return None
            body = queue.ready.popleft()
            tag = next(self._tags)
            queue.unacked[tag] = body
            return tag, body

    def _settle(self, queue_name: str, tag: int) -> bytes:
        queue = self._queues[queue_name]
        if tag not in queue.unacked:
            raise RuntimeError(f"Delivery {tag} on {queue_name} is unknown or already settled")
        return queue.unacked.pop(tag)

    def ack(self, queue_name: str, tag: int) -> None:
        with self._cond:
            self._settle(queue_name, tag)

    def reject(self, queue_name: str, tag: int) -> None:
        """Reject without requeue: route to the queue's dead-letter sink."""
        with self._cond:
            body = self._settle(queue_name, tag)
            arguments = self._queues[queue_name].arguments
            exchange = arguments.get("x-dead-letter-exchange")
            routing_key = arguments.get("x-dead-letter-routing-key")
            target = self._bindings.get((exchange, routing_key))
            if target is None:
                logger.warning(f"Rejected delivery on {queue_name} dropped (no dead-letter binding)")
                return
            self._queues[target].ready.append(body)
            self._cond.notify_all()

    def requeue_unacked(self, queue_name: str) -> int:
        """Simulate a consumer connection loss: unacked deliveries go back first.

        Returns:
            Count of requeued deliveries
        """
        with self._cond:
            queue = self._queues[queue_name]
            bodies = list(queue.unacked.values())
            queue.unacked.clear()
            queue.ready.extendleft(reversed(bodies))
            self._cond.notify_all()
            return len(bodies)

    # --- inspection ---

    def messages(self, queue_name: str) -> List[bytes]:
        with self._cond:
            queue = self._queues.get(queue_name)
            return list(queue.ready) if queue else []

    def dead_letters(self, queue_name: str) -> List[bytes]:
        return self.messages(dead_letter_names(queue_name)["queue"])

    def unacked_count(self, queue_name: str) -> int:
        with self._cond:
            queue = self._queues.get(queue_name)
            return len(queue.unacked) if queue else 0

    def arguments(self, queue_name: str) -> Dict[str, str]:
        with self._cond:
            return dict(self._queues[queue_name].arguments)

    # --- consume ---

    def consume(self, queue_name: str, handler: Handler, stop_event: threading.Event) -> None:
        self.ensure_queue(queue_name)
        logger.info(f"Consuming from {queue_name} (in-memory)")
        while not stop_event.is_set():
            delivery = self.receive(queue_name, timeout=self.poll_interval_s)
            if delivery is None:
                continue
            tag, body = delivery
            if dispatch(handler, body, queue_name) == Outcome.ACK:
                self.ack(queue_name, tag)
            else:
                self.reject(queue_name, tag)
        logger.info(f"Stopped consuming from {queue_name}")

    def close(self) -> None:
        pass
