import io
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from filejobs.api.main import create_app
from filejobs.jobs import InMemoryTransport, JobStore
from filejobs.models import FileJobsConfig
from filejobs.storage import FileStorage


def make_image(fmt="PNG", size=(64, 48), color=(200, 30, 30), mode="RGB") -> bytes:
    """Encode a solid-colour test image."""
    buffer = io.BytesIO()
    fill = color + (255,) if mode == "RGBA" else color
    Image.new(mode, size, fill).save(buffer, format=fmt)
    return buffer.getvalue()


def wait_for(predicate, timeout=5.0, interval=0.01) -> bool:
    """Poll until predicate() is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def image_bytes():
    return make_image


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def storage(tmp_path):
    return FileStorage(tmp_path / "data")


@pytest.fixture
def transport():
    return InMemoryTransport(poll_interval_s=0.01)


@pytest.fixture
def app_config(tmp_path):
    return FileJobsConfig.from_dict({
        "broker": {"backend": "memory", "poll_interval_s": 0.01},
        "storage": {"root": str(tmp_path / "api-data")},
    })


@pytest.fixture
def app(app_config):
    return create_app(app_config, transport=InMemoryTransport(poll_interval_s=0.01))


@pytest_asyncio.fixture
async def client(app):
    # ASGITransport does not run the lifespan: workers stay stopped and tests
    # drive deliveries explicitly with drain()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def drain(runtime) -> int:
    """Hand every queued delivery to its worker; returns deliveries handled."""
    handled = 0
    for worker in runtime.workers:
        while True:
            delivery = runtime.transport.receive(worker.queue_name)
            if delivery is None:
                break
            tag, body = delivery
            if worker.handle(body).value == "ack":
                runtime.transport.ack(worker.queue_name, tag)
            else:
                runtime.transport.reject(worker.queue_name, tag)
            handled += 1
    return handled
