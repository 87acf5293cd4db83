from typing import Optional

from fastapi import HTTPException


class CustomHTTPException(HTTPException):
    """HTTPException that also carries a structured payload for the client."""

    def __init__(self, status_code: int, detail: str, payload: Optional[dict] = None) -> None:
        super().__init__(status_code=status_code, detail=detail)
        self.payload = payload


class UploadError(Exception):
    status_code: int = 500

    def __init__(self, detail: str, payload: Optional[dict] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.payload = payload

    def to_http(self) -> CustomHTTPException:
        return CustomHTTPException(status_code=self.status_code, detail=self.detail, payload=self.payload)


class InvalidSize(UploadError):
    status_code = 400

class InvalidChunkCount(UploadError):
    status_code = 400

class IndexOutOfRange(UploadError):
    status_code = 400

class ChunkTooLarge(UploadError):
    status_code = 413


class UnknownSession(UploadError):
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Upload session {session_id} not found", payload={"sessionId": session_id})
        self.session_id = session_id


class FinalizeInProgress(UploadError):
    status_code = 409

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Upload session {session_id} is being finalized", payload={"sessionId": session_id})
        self.session_id = session_id


class WriteFailure(UploadError):
    """Chunk could not be staged. The client should resend the same chunk."""
    status_code = 503


class IncompleteUpload(UploadError):
    status_code = 400

    def __init__(self, session_id: str, missing: list[int]) -> None:
        super().__init__(
            f"Upload session {session_id} is missing {len(missing)} chunk(s)",
            payload={"sessionId": session_id, "missingChunks": missing},
        )
        self.session_id = session_id
        self.missing = missing


class RemoteStoreError(UploadError):
    """Remote storage rejected or failed the upload. Finalize may be retried."""
    status_code = 502
