"""Wiring of store, storage, transport, workers and sweeper from config.

The job store is in-memory, so the workers must share a process (and the
store instance) with the API that submits jobs. Everything is passed by
explicit ownership; there are no module-level singletons.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from .errors import TransportUnavailable
from .jobs.backends import QueueTransport
from .jobs.memory_backend import InMemoryTransport
from .jobs.models import QUEUE_FOR
from .jobs.rabbitmq_backend import RabbitMQTransport
from .jobs.store import JobStore, RetentionSweeper
from .jobs.worker import JobWorker, build_workers
from .models import BrokerConfig, FileJobsConfig
from .service import JobService
from .storage import FileStorage

logger = logging.getLogger(__name__)


def build_transport(broker: BrokerConfig) -> QueueTransport:
    if broker.backend == "memory":
        return InMemoryTransport(poll_interval_s=min(broker.poll_interval_s, 0.5))
    return RabbitMQTransport(
        host=broker.host,
        port=broker.port,
        username=broker.username,
        password=broker.password,
        virtual_host=broker.virtual_host,
        heartbeat_s=broker.heartbeat_s,
        poll_interval_s=broker.poll_interval_s,
    )


@dataclass
class Runtime:
    config: FileJobsConfig
    store: JobStore
    storage: FileStorage
    transport: QueueTransport
    service: JobService
    sweeper: RetentionSweeper
    workers: List[JobWorker] = field(default_factory=list)

    def declare_queues(self) -> bool:
        """Declare every work queue; False if the broker is unreachable."""
        try:
            for queue_name in sorted(set(QUEUE_FOR.values())):
                self.transport.ensure_queue(queue_name)
        except TransportUnavailable as e:
            logger.warning(f"Queue declaration deferred, broker unavailable: {e}")
            return False
        return True

    def start(self) -> None:
        self.declare_queues()
        if self.config.workers.enabled:
            for worker in self.workers:
                worker.start()
            logger.info(f"Started {len(self.workers)} worker(s)")
        self.sweeper.start()

    def stop(self) -> None:
        """Stop workers (each finishes its in-flight delivery), then release the broker."""
        self.sweeper.stop()
        for worker in self.workers:
            worker.stop()
        self.transport.close()
        logger.info("Runtime stopped")


def build_runtime(
    config: FileJobsConfig,
    transport: Optional[QueueTransport] = None,
) -> Runtime:
    store = JobStore()
    storage = FileStorage(config.storage.root)
    transport = transport or build_transport(config.broker)

    retention = config.retention
    sweeper = RetentionSweeper(
        store,
        interval_s=retention.sweep_interval_s,
        retention_window=timedelta(seconds=retention.retention_window_s),
        stale_after=(
            timedelta(seconds=retention.stale_after_s)
            if retention.stale_after_s is not None
            else None
        ),
    )
    workers = build_workers(
        store, storage, transport, reconnect_delay_s=config.broker.reconnect_delay_s
    )
    return Runtime(
        config=config,
        store=store,
        storage=storage,
        transport=transport,
        service=JobService(store, storage, transport),
        sweeper=sweeper,
        workers=workers,
    )
