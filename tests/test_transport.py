from unittest.mock import MagicMock

import pytest
import requests

from uploader.transport import (
    ChunkRejected,
    ChunkTransport,
    ChunkUploadError,
    IncompleteUploadError,
    UploadApiError,
)


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.json.return_value = body if body is not None else {"detail": "ok", "payload": {}}
    response.text = str(body)
    return response


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def transport(session, sleeps):
    return ChunkTransport(
        "http://uploads.test/api/",
        max_retries=3,
        timeout=5,
        retry_delay=1.0,
        session=session,
        sleep=sleeps.append,
    )


class TestSendChunk:
    def test_success_on_first_attempt(self, transport, session, sleeps):
        session.post.return_value = make_response(202, {"detail": "ok", "payload": {"index": 0, "duplicate": False}})

        result = transport.send_chunk("upload_1_0123456789ab", 0, b"abc", 3)

        assert result == {"index": 0, "duplicate": False}
        assert sleeps == []
        args, kwargs = session.post.call_args
        assert args[0] == "http://uploads.test/api/upload/chunk"
        assert kwargs["timeout"] == 5
        assert kwargs["headers"]["Content-Type"].startswith("multipart/form-data")

    def test_multipart_body_carries_fields(self, transport, session):
        bodies = []

        def post(url, data=None, headers=None, timeout=None):
            bodies.append(data.read())
            return make_response(202)

        session.post.side_effect = post

        transport.send_chunk("upload_1_0123456789ab", 2, b"chunk-bytes", 3)

        body = bodies[0]
        assert b'name="sessionId"' in body
        assert b"upload_1_0123456789ab" in body
        assert b'name="index"' in body
        assert b'name="totalChunks"' in body
        assert b"chunk-bytes" in body

    def test_retries_network_errors_with_linear_backoff(self, transport, session, sleeps):
        session.post.side_effect = [
            requests.ConnectionError("connection refused"),
            requests.Timeout("read timed out"),
            make_response(202),
        ]

        transport.send_chunk("upload_1_0123456789ab", 0, b"abc", 1)

        assert session.post.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_retries_server_errors(self, transport, session, sleeps):
        session.post.side_effect = [make_response(503, {"detail": "busy"}), make_response(202)]

        transport.send_chunk("upload_1_0123456789ab", 0, b"abc", 1)

        assert session.post.call_count == 2
        assert sleeps == [1.0]

    def test_gives_up_after_max_retries(self, transport, session, sleeps):
        session.post.return_value = make_response(500, {"detail": "boom"})

        with pytest.raises(ChunkUploadError) as exc_info:
            transport.send_chunk("upload_1_0123456789ab", 4, b"abc", 5)

        assert session.post.call_count == 3
        assert sleeps == [1.0, 2.0]
        assert "chunk 4 failed after 3 attempts" in str(exc_info.value)
        assert "boom" in str(exc_info.value)

    @pytest.mark.parametrize("status_code", [400, 404, 409, 413, 422])
    def test_rejections_are_not_retried(self, transport, session, sleeps, status_code):
        session.post.return_value = make_response(status_code, {"detail": "nope", "payload": {"sessionId": "x"}})

        with pytest.raises(ChunkRejected) as exc_info:
            transport.send_chunk("upload_1_0123456789ab", 0, b"abc", 1)

        assert session.post.call_count == 1
        assert sleeps == []
        assert exc_info.value.status_code == status_code
        assert exc_info.value.payload == {"sessionId": "x"}

    def test_reports_progress_while_body_is_read(self, transport, session):
        fractions = []

        def post(url, data=None, headers=None, timeout=None):
            while data.read(64):
                pass
            return make_response(202)

        session.post.side_effect = post

        transport.send_chunk("upload_1_0123456789ab", 0, b"x" * 1000, 1, on_progress=fractions.append)

        assert len(fractions) > 2
        assert fractions == sorted(fractions)
        assert fractions[-1] == 1.0

    def test_every_attempt_resends_the_whole_body(self, transport, session):
        bodies = []

        def post(url, data=None, headers=None, timeout=None):
            bodies.append(data.read())
            if len(bodies) == 1:
                raise requests.ConnectionError("reset")
            return make_response(202)

        session.post.side_effect = post

        transport.send_chunk("upload_1_0123456789ab", 0, b"payload", 1)

        assert bodies[0] == bodies[1]


class TestSessionCalls:
    def test_init_upload_sends_camel_case(self, transport, session):
        session.post.return_value = make_response(200, {"detail": "ok", "payload": {"sessionId": "upload_1_0123456789ab", "totalChunks": 3}})

        payload = transport.init_upload("movie.mp4", 12, 5, 3, "video/mp4")

        assert payload["sessionId"] == "upload_1_0123456789ab"
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {
            "fileName": "movie.mp4",
            "fileSize": 12,
            "chunkSize": 5,
            "totalChunks": 3,
            "contentType": "video/mp4",
        }

    def test_finalize_incomplete(self, transport, session):
        session.post.return_value = make_response(
            400, {"detail": "missing", "payload": {"sessionId": "s", "missingChunks": [1, 3]}}
        )

        with pytest.raises(IncompleteUploadError) as exc_info:
            transport.finalize("upload_1_0123456789ab")

        assert exc_info.value.missing_chunks == [1, 3]

    def test_finalize_uses_its_own_timeout(self, transport, session):
        session.post.return_value = make_response(200, {"detail": "ok", "payload": {"url": "u"}})

        transport.finalize("upload_1_0123456789ab")

        assert session.post.call_args.kwargs["timeout"] == 600

    def test_network_error_becomes_api_error(self, transport, session):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(UploadApiError) as exc_info:
            transport.get_status("upload_1_0123456789ab")

        assert exc_info.value.status_code is None

    def test_token_sets_authorization_header(self, session):
        ChunkTransport("http://uploads.test/api", token="secret", session=session)

        assert session.headers["Authorization"] == "Bearer secret"
