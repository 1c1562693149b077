"""RabbitMQ implementation of QueueTransport.

This module provides the broker-backed transport using:
- pika BlockingConnection (one publisher connection, one per consumer)
- Durable queues with a direct dead-letter exchange per queue
- Persistent delivery mode so messages survive a broker restart
- prefetch=1 + manual ack, reject without requeue on failure
- Handlers run off the connection thread so heartbeats continue during long jobs
"""

import logging
import threading
from typing import Callable, Dict, Optional, Set

import pika
from pika.exceptions import AMQPChannelError, AMQPConnectionError, ChannelClosedByBroker

from ..errors import QueueConfigurationConflict, TransportUnavailable
from .backends import Handler, Outcome, QueueTransport, dispatch
from .models import ProcessingMessage, dead_letter_names, queue_arguments

logger = logging.getLogger(__name__)

PRECONDITION_FAILED = 406


class RabbitMQTransport(QueueTransport):
    """pika-based transport.

    pika connections are not thread-safe, so publishing goes through a single
    connection guarded by a lock (reopened on demand), and every consume()
    call opens a connection of its own.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5672,
        username: str = "guest",
        password: str = "guest",
        virtual_host: str = "/",
        heartbeat_s: int = 60,
        poll_interval_s: float = 1.0,
        connection_factory: Optional[Callable] = None,
    ):
        """Initialize transport (no connection is opened yet).

        Args:
            host: Broker host name
            port: AMQP port
            username: Broker user
            password: Broker password
            virtual_host: AMQP virtual host
            heartbeat_s: AMQP heartbeat interval
            poll_interval_s: How often an idle consumer checks its stop signal
            connection_factory: Callable(parameters) -> connection (default:
                pika.BlockingConnection)
        """
        self.address = f"{host}:{port}{virtual_host}"
        self.poll_interval_s = poll_interval_s
        self.parameters = pika.ConnectionParameters(
            host=host,
            port=port,
            virtual_host=virtual_host,
            credentials=pika.PlainCredentials(username, password),
            heartbeat=heartbeat_s,
        )
        self._connection_factory = connection_factory or pika.BlockingConnection
        self._publish_lock = threading.Lock()
        self._connection = None
        self._channel = None
        self._declared: Set[str] = set()

    # --- connection management ---

    def _connect(self):
        try:
            return self._connection_factory(self.parameters)
        except AMQPConnectionError as e:
            raise TransportUnavailable(f"Cannot connect to RabbitMQ at {self.address}: {e}") from e

    def _publisher_channel(self):
        """Return the publisher channel, reconnecting if needed (lock held)."""
        if (
            self._channel is None
            or self._channel.is_closed
            or self._connection is None
            or self._connection.is_closed
        ):
            self._reset_publisher()
            self._connection = self._connect()
            self._channel = self._connection.channel()
        return self._channel

    def _reset_publisher(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPConnectionError:
                logger.debug("Publisher connection already gone while closing")

    # --- declaration ---

    def _declare(self, channel, name: str) -> None:
        names = dead_letter_names(name)
        try:
            channel.exchange_declare(
                exchange=names["exchange"], exchange_type="direct", durable=True
            )
            channel.queue_declare(
                queue=names["queue"], durable=True, exclusive=False, auto_delete=False
            )
            channel.queue_bind(
                queue=names["queue"],
                exchange=names["exchange"],
                routing_key=names["routing_key"],
            )
            channel.queue_declare(
                queue=name,
                durable=True,
                exclusive=False,
                auto_delete=False,
                arguments=queue_arguments(name),
            )
        except ChannelClosedByBroker as e:
            if e.reply_code == PRECONDITION_FAILED:
                raise QueueConfigurationConflict(name, e.reply_text) from e
            raise

    def ensure_queue(self, name: str) -> None:
        with self._publish_lock:
            try:
                self._declare(self._publisher_channel(), name)
            except QueueConfigurationConflict:
                # The broker closes the channel on a failed declare
                self._channel = None
                raise
            except (AMQPConnectionError, AMQPChannelError) as e:
                self._reset_publisher()
                raise TransportUnavailable(f"Declaring {name} failed: {e}") from e
            self._declared.add(name)
        logger.info(f"Declared queue {name} (dead-letter: {dead_letter_names(name)['queue']})")

    # --- publish ---

    def publish(self, message: ProcessingMessage, queue_name: str) -> None:
        if queue_name not in self._declared:
            self.ensure_queue(queue_name)

        body = message.to_bytes()
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=pika.DeliveryMode.Persistent,
        )

        with self._publish_lock:
            # One reconnect covers a publisher connection or channel dropped while idle
            for attempt in (1, 2):
                try:
                    channel = self._publisher_channel()
                    channel.basic_publish(
                        exchange="",
                        routing_key=queue_name,
                        body=body,
                        properties=properties,
                    )
                    break
                except (AMQPConnectionError, AMQPChannelError) as e:
                    self._reset_publisher()
                    if attempt == 2:
                        raise TransportUnavailable(
                            f"Publishing job {message.job_id} to {queue_name} failed: {e}"
                        ) from e
                    logger.warning("Publisher connection lost; reconnecting")

        logger.info(f"Published job {message.job_id} to {queue_name}")

    # --- consume ---

    def consume(self, queue_name: str, handler: Handler, stop_event: threading.Event) -> None:
        connection = self._connect()
        try:
            channel = connection.channel()
            self._declare(channel, queue_name)
            channel.basic_qos(prefetch_count=1)
            logger.info(f"Consuming from {queue_name} on {self.address}")

            for method, _properties, body in channel.consume(
                queue_name, auto_ack=False, inactivity_timeout=self.poll_interval_s
            ):
                if method is None:
                    # Idle tick
                    if stop_event.is_set():
                        break
                    continue

                outcome = self._dispatch_serviced(connection, handler, body, queue_name)
                if outcome == Outcome.ACK:
                    channel.basic_ack(delivery_tag=method.delivery_tag)
                else:
                    channel.basic_reject(delivery_tag=method.delivery_tag, requeue=False)

                if stop_event.is_set():
                    break

            # Anything prefetched but not yet handled goes back to the queue
            channel.cancel()
            logger.info(f"Stopped consuming from {queue_name}")
        except (AMQPConnectionError, AMQPChannelError) as e:
            raise TransportUnavailable(f"Lost connection while consuming {queue_name}: {e}") from e
        finally:
            if connection.is_open:
                connection.close()

    def _dispatch_serviced(
        self, connection, handler: Handler, body: bytes, queue_name: str
    ) -> Outcome:
        """Run the handler on a helper thread while this thread services the connection.

        BlockingConnection sends heartbeats only while its own thread is inside
        pika; a transformation longer than about two heartbeat intervals run
        inline would get the connection closed by the broker and the delivery
        redelivered.
        """
        result: Dict[str, Outcome] = {}

        def run() -> None:
            result["outcome"] = dispatch(handler, body, queue_name)

        thread = threading.Thread(target=run, name=f"handler-{queue_name}", daemon=True)
        thread.start()
        thread.join(timeout=self.poll_interval_s)
        while thread.is_alive():
            connection.process_data_events(time_limit=0)
            thread.join(timeout=self.poll_interval_s)
        return result.get("outcome", Outcome.REJECT)

    def close(self) -> None:
        with self._publish_lock:
            self._reset_publisher()
