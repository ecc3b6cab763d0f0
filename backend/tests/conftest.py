import sys
import threading
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR))

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from comfy_batch.api.endpoints import images
from comfy_batch.core.config import Settings
from comfy_batch.models.job import ImageJob  # noqa: F401
from comfy_batch.services.job_store import JobStore
from comfy_batch.services.queue_driver import QueueDriver


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine


@pytest.fixture()
def store(engine):
    yield JobStore(engine)
    with Session(engine) as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()


@pytest.fixture()
def output_dir(tmp_path):
    path = tmp_path / "comfy_output"
    path.mkdir()
    return path


@pytest.fixture()
def queue_settings(tmp_path, output_dir):
    return Settings(
        _env_file=None,
        COMFYUI_OUTPUT_DIR=str(output_dir),
        GENERATED_IMAGES_DIR=tmp_path / "generated_images",
        WORKFLOW_PATH=tmp_path / "workflow.json",
        POLL_INTERVAL=0.01,
        POLL_MAX_ATTEMPTS=300,
        TICK_DELAY=0.01,
        STALE_JOB_GRACE_SECONDS=60,
    )


class FakeComfy:
    """
    Stands in for ComfyUI: every accepted prompt produces a PNG in the output
    directory after `delay` seconds, except prompts listed in `silent`, which
    are accepted but never rendered.
    """

    def __init__(self, output_dir: Path, delay: float = 0.0, silent=(), error=None):
        self.output_dir = output_dir
        self.delay = delay
        self.silent = set(silent)
        self.error = error
        self.prompts = []
        self.counter = 0
        self._lock = threading.Lock()
        self._timers = []
        self.on_submit = None

    def factory(self, cfg):
        return self

    def _write(self, name: str):
        (self.output_dir / name).write_bytes(b"\x89PNG\r\n\x1a\nfake")

    def submit(self, prompt_text):
        if self.on_submit:
            self.on_submit(prompt_text)
        with self._lock:
            self.prompts.append(prompt_text)
            if self.error:
                raise self.error
            if prompt_text in self.silent:
                return None
            self.counter += 1
            name = f"ComfyUI_{self.counter:05d}_.png"

        if self.delay:
            timer = threading.Timer(self.delay, self._write, args=(name,))
            timer.daemon = True
            self._timers.append(timer)
            timer.start()
        else:
            self._write(name)
        return f"prompt-{self.counter}"

    def check_health(self):
        return True

    def cancel(self):
        for timer in self._timers:
            timer.cancel()


@pytest.fixture()
def fake_comfy(output_dir):
    comfy = FakeComfy(output_dir)
    yield comfy
    comfy.cancel()


@pytest.fixture()
def driver(store, queue_settings, fake_comfy):
    queue_driver = QueueDriver(store, queue_settings, client_factory=fake_comfy.factory)
    yield queue_driver
    queue_driver.stop(timeout=5)


@pytest.fixture()
def client(driver):
    app = FastAPI()
    app.include_router(images.router, prefix="/api/images", tags=["images"])
    app.dependency_overrides[images.get_driver] = lambda: driver
    return TestClient(app)

