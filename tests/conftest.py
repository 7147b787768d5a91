"""Shared fixtures: a local object store under tmp_path, a fake encoder and an
aiosqlite metadata database."""

import os
import tempfile
import threading
from typing import Optional

# Settings are read at import time
_TEST_ROOT = tempfile.mkdtemp(prefix="video-delivery-tests-")
os.environ.setdefault("LOCAL_STORAGE_PATH", os.path.join(_TEST_ROOT, "storage"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/app.db")
os.environ.setdefault("LOG_JSON", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from video_delivery.core.database import Base
from video_delivery.core.exceptions import EncodeError
from video_delivery.core.storage import LocalStorage, ObjectStore, StorageConfig
from video_delivery.modules.files import models as _file_models  # noqa: F401  registers video_files
from video_delivery.modules.transcoding.models import CompressionStatus, QualityCatalog, QualityProfile
from video_delivery.modules.transcoding.notifier import StatusNotifier
from video_delivery.modules.transcoding.registry import InMemoryJobRegistry
from video_delivery.modules.transcoding.service import (
    CompressionState,
    CompressionStateStore,
    TranscodingCoordinator,
)


class FakeEncoder:
    """Stands in for ffmpeg: writes a small marker file per quality.

    ``fail`` lists qualities that raise EncodeError. When ``gate`` is set,
    every encode blocks until it is released, which keeps a job visibly in
    progress.
    """

    def __init__(self, fail: Optional[set[str]] = None, gate: Optional[threading.Event] = None):
        self.fail = fail or set()
        self.gate = gate
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self.scratch_paths: list[str] = []

    def encode(self, input_path: str, profile: QualityProfile, output_path: str):
        with self._lock:
            self.calls.append((input_path, profile.name))
            self.scratch_paths.append(os.path.dirname(output_path))
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if profile.name in self.fail:
            raise EncodeError(f"boom {profile.name}", quality=profile.name, stderr="fake stderr")
        with open(output_path, "wb") as f:
            f.write(f"rendition {profile.name}".encode())
        return output_path


class MemoryStateStore(CompressionStateStore):
    def __init__(self) -> None:
        self.states: dict[str, CompressionState] = {}
        self.history: list[tuple[str, CompressionStatus, list[str]]] = []

    async def get_compression_state(self, source_id: str) -> Optional[CompressionState]:
        return self.states.get(source_id)

    async def set_compression_status(self, source_id, status, qualities) -> None:
        self.history.append((source_id, status, list(qualities)))
        self.states[source_id] = CompressionState(status=status, qualities=list(qualities))


@pytest.fixture
def backend(tmp_path) -> LocalStorage:
    return LocalStorage(StorageConfig(backend="local", local_path=str(tmp_path / "objects")))


@pytest.fixture
def store(backend) -> ObjectStore:
    return ObjectStore(backend)


@pytest.fixture
def put_object(backend):
    """Write bytes straight into the local store."""

    def _put(key: str, data: bytes) -> str:
        path = backend.base_path / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return key

    return _put


@pytest.fixture
def catalog() -> QualityCatalog:
    return QualityCatalog()


@pytest.fixture
def scratch_dir(tmp_path) -> str:
    path = tmp_path / "scratch"
    path.mkdir()
    return str(path)


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def notifier() -> StatusNotifier:
    return StatusNotifier()


@pytest.fixture
def make_coordinator(store, catalog, scratch_dir, state_store, notifier):
    def _make(encoder=None, registry=None, **overrides) -> TranscodingCoordinator:
        kwargs = dict(
            store=store,
            registry=registry or InMemoryJobRegistry(),
            encoder=encoder or FakeEncoder(),
            notifier=notifier,
            state_store=state_store,
            catalog=catalog,
            scratch_dir=scratch_dir,
            max_concurrent_encodes=2,
        )
        kwargs.update(overrides)
        return TranscodingCoordinator(**kwargs)

    return _make


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'meta.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def make_encoder():
    """The FakeEncoder class, for tests that need failures or a gate."""
    return FakeEncoder
