"""HTTP side of the chunked uploader: one request per chunk, retried with linear backoff."""
from typing import Callable, Optional
import io
import logging
import time

import requests
from urllib3.filepost import encode_multipart_formdata

logger = logging.getLogger(__name__)

# session and validation rejections: sending the same request again cannot succeed
NON_RETRYABLE_STATUSES = {400, 404, 409, 413, 422}


class UploadApiError(Exception):
    def __init__(self, status_code: Optional[int], detail: str, payload: Optional[dict] = None) -> None:
        super().__init__(detail if status_code is None else f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.payload = payload or {}


class ChunkRejected(UploadApiError):
    """The server refused the chunk outright (unknown session, bad index, ...)."""


class ChunkUploadError(UploadApiError):
    """Every attempt to send a chunk failed."""


class IncompleteUploadError(UploadApiError):
    @property
    def missing_chunks(self) -> list:
        return self.payload.get("missingChunks", [])


class _ProgressReader(io.BytesIO):
    """Request body that reports the fraction already read by the connection."""

    def __init__(self, body: bytes, on_progress: Optional[Callable[[float], None]] = None) -> None:
        super().__init__(body)
        self._total = len(body) or 1
        self._on_progress = on_progress

    def read(self, size=-1):
        data = super().read(size)
        if data and self._on_progress is not None:
            self._on_progress(min(self.tell() / self._total, 1.0))
        return data


class ChunkTransport:
    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        max_retries: int = 3,
        timeout: float = 30,
        retry_delay: float = 1.0,
        finalize_timeout: Optional[float] = 600,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.finalize_timeout = finalize_timeout
        self.sleep = sleep
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _url(self, path: str) -> str:
        return f"{self.api_url}{path}"

    @staticmethod
    def _body(response: requests.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {"detail": response.text}
        return body if isinstance(body, dict) else {"detail": str(body)}

    def _post_json(self, path: str, json: dict, timeout: Optional[float]) -> requests.Response:
        try:
            return self.session.post(self._url(path), json=json, timeout=timeout)
        except requests.RequestException as e:
            raise UploadApiError(None, f"request to {path} failed: {e}") from e

    def _raise_for_status(self, response: requests.Response, error_cls=UploadApiError):
        if response.ok:
            return
        body = self._body(response)
        raise error_cls(response.status_code, str(body.get("detail")), body.get("payload"))

    def init_upload(self, file_name: str, file_size: int, chunk_size: int, total_chunks: int, content_type: str = "application/octet-stream") -> dict:
        response = self._post_json(
            "/upload/init",
            {
                "fileName": file_name,
                "fileSize": file_size,
                "chunkSize": chunk_size,
                "totalChunks": total_chunks,
                "contentType": content_type,
            },
            self.timeout,
        )
        self._raise_for_status(response)
        return self._body(response)["payload"]

    def get_status(self, session_id: str) -> dict:
        response = self._post_json("/upload/status", {"sessionId": session_id}, self.timeout)
        self._raise_for_status(response)
        return self._body(response)["payload"]

    def finalize(self, session_id: str) -> dict:
        response = self._post_json("/upload/finalize", {"sessionId": session_id}, self.finalize_timeout)
        if response.status_code == 400 and "missingChunks" in (self._body(response).get("payload") or {}):
            self._raise_for_status(response, IncompleteUploadError)
        self._raise_for_status(response)
        return self._body(response)["payload"]

    def send_chunk(
        self,
        session_id: str,
        index: int,
        payload: bytes,
        total_chunks: int,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> dict:
        """
        Send one chunk, retrying transient failures.

        Each attempt is bounded by ``timeout``; after failed attempt ``n`` the
        transport waits ``n * retry_delay`` seconds. Network errors, timeouts
        and 5xx responses are retried, rejections in NON_RETRYABLE_STATUSES are
        raised at once as ChunkRejected. Raises ChunkUploadError with the last
        error once all attempts are used up.
        """
        body, content_type = encode_multipart_formdata({
            "sessionId": session_id,
            "index": str(index),
            "totalChunks": str(total_chunks),
            "chunk": (f"chunk_{index}", payload, "application/octet-stream"),
        })

        last_error = None
        for attempt in range(1, self.max_retries + 1):
            logger.debug(f"Uploading chunk {index + 1}/{total_chunks}, attempt {attempt}")
            try:
                response = self.session.post(
                    self._url("/upload/chunk"),
                    data=_ProgressReader(body, on_progress),
                    headers={"Content-Type": content_type},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = str(e)
                logger.warning(f"Chunk {index} upload error (attempt {attempt}/{self.max_retries}): {e}")
            else:
                if response.ok:
                    if on_progress is not None:
                        on_progress(1.0)
                    return self._body(response).get("payload") or {}

                body_json = self._body(response)
                if response.status_code in NON_RETRYABLE_STATUSES:
                    raise ChunkRejected(response.status_code, str(body_json.get("detail")), body_json.get("payload"))

                last_error = f"{response.status_code}: {body_json.get('detail')}"
                logger.warning(f"Chunk {index} upload failed (attempt {attempt}/{self.max_retries}): {last_error}")

            if attempt < self.max_retries:
                self.sleep(attempt * self.retry_delay)

        raise ChunkUploadError(None, f"chunk {index} failed after {self.max_retries} attempts: {last_error}")
