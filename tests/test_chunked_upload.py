import math

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from middleware.middleware import MaxContentLengthMiddleware

FILE_NAME = "test_upload.mp4"
CONTENT = b"Hello world! " * 10000  # ~130KB
CHUNK_SIZE = 1024 * 10  # 10KB
TOTAL_CHUNKS = math.ceil(len(CONTENT) / CHUNK_SIZE)


def init_upload(client, file_size=len(CONTENT), chunk_size=CHUNK_SIZE, total_chunks=TOTAL_CHUNKS):
    return client.post("/api/upload/init", json={
        "fileName": FILE_NAME,
        "fileSize": file_size,
        "chunkSize": chunk_size,
        "totalChunks": total_chunks,
        "contentType": "video/mp4",
    })


def send_chunk(client, session_id, index, data=None):
    if data is None:
        data = CONTENT[index * CHUNK_SIZE:(index + 1) * CHUNK_SIZE]
    return client.post(
        "/api/upload/chunk",
        data={"sessionId": session_id, "index": str(index), "totalChunks": str(TOTAL_CHUNKS)},
        files={"chunk": (f"chunk_{index}", data, "application/octet-stream")},
    )


def get_status(client, session_id):
    return client.post("/api/upload/status", json={"sessionId": session_id})


def finalize(client, session_id):
    return client.post("/api/upload/finalize", json={"sessionId": session_id})


class TestChunkedUploadFlow:
    def test_chunked_upload(self, client, remote_store):
        resp = init_upload(client)
        assert resp.status_code == 200
        session_id = resp.json()["payload"]["sessionId"]
        assert resp.json()["payload"]["totalChunks"] == TOTAL_CHUNKS

        for i in range(TOTAL_CHUNKS):
            resp = send_chunk(client, session_id, i)
            assert resp.status_code == 202, resp.text
            assert resp.json()["payload"]["index"] == i

        resp = get_status(client, session_id)
        assert resp.json()["payload"]["isComplete"] is True

        resp = finalize(client, session_id)
        assert resp.status_code == 200, resp.text
        payload = resp.json()["payload"]
        assert payload["size"] == len(CONTENT)
        assert payload["publicId"].endswith(FILE_NAME)
        assert remote_store.uploads == [(FILE_NAME, CONTENT)]

    def test_unuploaded_chunks_are_reported(self, client):
        session_id = init_upload(client).json()["payload"]["sessionId"]
        uploaded = list(range(TOTAL_CHUNKS // 2))
        for i in uploaded:
            send_chunk(client, session_id, i)

        resp = finalize(client, session_id)

        assert resp.status_code == 400
        body = resp.json()
        assert body["status_code"] == 400
        assert body["payload"]["missingChunks"] == [i for i in range(TOTAL_CHUNKS) if i not in uploaded]

        resp = get_status(client, session_id)
        assert resp.json()["payload"]["existingChunks"] == len(uploaded)

    def test_resent_chunk_is_flagged_duplicate(self, client):
        session_id = init_upload(client).json()["payload"]["sessionId"]

        send_chunk(client, session_id, 0)
        resp = send_chunk(client, session_id, 0)

        assert resp.status_code == 202
        assert resp.json()["payload"]["duplicate"] is True
        assert resp.json()["payload"]["receivedChunks"] == 1

    def test_remote_store_failure(self, client, failing_remote_store):
        session_id = init_upload(client, file_size=5, chunk_size=5, total_chunks=1).json()["payload"]["sessionId"]
        client.post(
            "/api/upload/chunk",
            data={"sessionId": session_id, "index": "0"},
            files={"chunk": ("chunk_0", b"12345", "application/octet-stream")},
        )

        resp = finalize(client, session_id)

        assert resp.status_code == 502
        assert get_status(client, session_id).json()["payload"]["existingChunks"] == 1


class TestErrors:
    def test_status_of_unknown_session(self, client):
        resp = get_status(client, "upload_1_0123456789ab")

        assert resp.status_code == 200
        assert resp.json()["detail"] == "Upload session not found"
        assert resp.json()["payload"]["existingChunks"] == 0

    def test_chunk_for_unknown_session(self, client):
        resp = send_chunk(client, "upload_1_0123456789ab", 0)

        assert resp.status_code == 404
        body = resp.json()
        assert body["status_code"] == 404
        assert body["payload"] == {"sessionId": "upload_1_0123456789ab"}
        assert "timestamp" in body

    def test_finalize_unknown_session(self, client):
        assert finalize(client, "upload_1_0123456789ab").status_code == 404

    def test_index_out_of_range(self, client):
        session_id = init_upload(client).json()["payload"]["sessionId"]

        resp = send_chunk(client, session_id, TOTAL_CHUNKS, data=b"x")

        assert resp.status_code == 400

    def test_chunk_larger_than_chunk_size(self, client):
        session_id = init_upload(client).json()["payload"]["sessionId"]

        resp = send_chunk(client, session_id, 0, data=b"x" * (CHUNK_SIZE + 1))

        assert resp.status_code == 413

    def test_mismatched_total_chunks(self, client):
        resp = init_upload(client, total_chunks=TOTAL_CHUNKS + 1)

        assert resp.status_code == 400

    @pytest.mark.parametrize("file_size, chunk_size", [(0, CHUNK_SIZE), (len(CONTENT), 0)])
    def test_invalid_sizes(self, client, file_size, chunk_size):
        resp = init_upload(client, file_size=file_size, chunk_size=chunk_size, total_chunks=None)

        assert resp.status_code == 400

    def test_missing_form_field(self, client):
        resp = client.post(
            "/api/upload/chunk",
            data={"index": "0"},
            files={"chunk": ("chunk_0", b"x", "application/octet-stream")},
        )

        assert resp.status_code == 422


class TestMisc:
    def test_instructions(self, client):
        payload = client.get("/api/upload/instr").json()["payload"]

        assert set(payload) == {"maxFileSize", "maxChunkSize", "sessionTtl"}

    def test_health(self, client):
        assert client.get("/health").json()["redis"] == "running"

    def test_stream_upload(self, client, remote_store, staging_dir):
        resp = client.post("/api/upload/stream", files={"video": ("clip.mp4", b"short clip", "video/mp4")})

        assert resp.status_code == 200
        assert resp.json()["payload"]["size"] == len(b"short clip")
        assert remote_store.uploads == [("clip.mp4", b"short clip")]
        assert not any((staging_dir / "_stream").iterdir())


class TestMaxContentLengthMiddleware:
    @pytest.fixture
    def small_client(self):
        app = FastAPI()
        app.add_middleware(MaxContentLengthMiddleware, max_content_length=10, exempt_paths=("/open",))

        @app.post("/echo")
        async def echo():
            return {"ok": True}

        @app.post("/open")
        async def open_route():
            return {"ok": True}

        return TestClient(app)

    def test_rejects_large_body(self, small_client):
        resp = small_client.post("/echo", content=b"x" * 11)

        assert resp.status_code == 413
        assert resp.json()["detail"] == "Request payload too large"

    def test_allows_small_body(self, small_client):
        assert small_client.post("/echo", content=b"x" * 10).status_code == 200

    def test_exempt_path(self, small_client):
        assert small_client.post("/open", content=b"x" * 100).status_code == 200

    def test_rejects_body_without_declared_length(self, small_client):
        resp = small_client.post("/echo", content=iter([b"x" * 5, b"x" * 5]))

        assert resp.status_code == 411
        assert resp.json()["detail"] == "Content-Length required"
