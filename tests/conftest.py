"""
Shared fixtures for the upload tests.

Redis is replaced by fakeredis, remote storage by a recorder that keeps a copy
of every file it is handed, and staging happens under pytest's tmp_path.
"""
from pathlib import Path
import time

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis
from fastapi.testclient import TestClient

from app.clients.remote_store import RemoteStore
from app.controllers.upload_controller import UploadController
from app.models.uploading import StoredObject
from app.server import create_app
from app.utils.exceptions import RemoteStoreError
from app.utils.session_store import UploadSessionStore


class RecordingRemoteStore(RemoteStore):
    """Keeps the bytes of every uploaded file; can be told to fail."""

    def __init__(self) -> None:
        self.uploads: list[tuple[str, bytes]] = []
        self.fail_with: Exception | None = None
        self.delay = 0.0

    def upload(self, file_path: str, file_name: str, content_type: str = "application/octet-stream") -> StoredObject:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        data = Path(file_path).read_bytes()
        self.uploads.append((file_name, data))
        public_id = f"filmzone/videos/{len(self.uploads)}_{file_name}"
        return StoredObject(url=f"https://cdn.example.com/{public_id}", public_id=public_id, size=len(data))


@pytest.fixture
def redis_client():
    return fake_aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    return tmp_path / "staging"


@pytest.fixture
def store(redis_client, staging_dir) -> UploadSessionStore:
    return UploadSessionStore(redis_client, staging_dir=staging_dir, retention=3600, finalize_lock_ttl=60)


@pytest.fixture
def remote_store() -> RecordingRemoteStore:
    return RecordingRemoteStore()


@pytest.fixture
def controller(store, remote_store) -> UploadController:
    return UploadController(store, remote_store)


@pytest.fixture
def client(store, remote_store):
    app = create_app(store=store, remote_store=remote_store, enable_gc=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def failing_remote_store(remote_store) -> RecordingRemoteStore:
    remote_store.fail_with = RemoteStoreError("Remote storage upload failed: 503 Slow Down")
    return remote_store
