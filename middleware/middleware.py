from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from config.config import settings


class MaxContentLengthMiddleware(BaseHTTPMiddleware):
    """Rejects oversized or unsized (chunked) request bodies before they reach the chunk endpoint."""

    def __init__(self, app, max_content_length: int = settings.MAX_CONTENT_LENGTH, exempt_paths: tuple = ()):
        super().__init__(app)
        self.max_content_length = max_content_length
        self.exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        content_length = request.headers.get("content-length")

        # without a declared length the body size is unknown until it has been read
        if content_length is None and "chunked" in request.headers.get("transfer-encoding", "").lower():
            return JSONResponse(
                status_code=411,
                content={"status_code": 411, "detail": "Content-Length required", "payload": None}
            )

        if content_length and int(content_length) > self.max_content_length:
            return JSONResponse(
                status_code=413,
                content={"status_code": 413, "detail": "Request payload too large", "payload": None}
            )

        return await call_next(request)
