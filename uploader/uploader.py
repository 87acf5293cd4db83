"""Resumable chunked upload of large video files."""
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
import argparse
import logging
import mimetypes
import os
import sys
import time

from dotenv import load_dotenv

from uploader.planner import plan_chunks
from uploader.transport import ChunkTransport, UploadApiError

logger = logging.getLogger(__name__)


@dataclass
class UploadProgress:
    chunk_index: int
    total_chunks: int
    chunk_progress: float
    overall_progress: float
    uploaded_chunks: int
    current_chunk_size: int
    total_size: int
    is_resuming: bool


@dataclass
class UploadResult:
    session_id: str
    url: str
    public_id: str
    size: int
    upload_time: float


class UploadFailed(Exception):
    """Upload stopped part way. Resume later with the same session id."""

    def __init__(self, session_id: str, uploaded_chunks: int, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.uploaded_chunks = uploaded_chunks


class ChunkedUploader:
    """
    Sends a file to the server one chunk at a time, in index order.

    Only one chunk is in flight at any moment, which bounds memory to a single
    chunk. With a session id the upload resumes: the server is asked which
    chunks it already holds and only the missing ones are sent.
    """

    def __init__(self, transport: ChunkTransport, chunk_size: Optional[int] = None) -> None:
        self.transport = transport
        self.chunk_size = chunk_size

    def _resume_plan(self, session_id: str, file_size: int):
        status = self.transport.get_status(session_id)
        if "totalChunks" not in status:
            logger.info(f"Upload session {session_id} not found, starting a new one")
            return None, None

        plan = plan_chunks(file_size, status["chunkSize"])
        if plan.total_chunks != status["totalChunks"]:
            raise UploadFailed(session_id, 0, f"file does not match upload session {session_id}")

        logger.info(f"Resuming {session_id}: {status['existingChunks']}/{plan.total_chunks} chunks already uploaded")
        return plan, set(status["missingChunks"])

    def upload_file(
        self,
        file_path: str,
        session_id: Optional[str] = None,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
        on_chunk_complete: Optional[Callable[[int, int], None]] = None,
    ) -> UploadResult:
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        file_size = path.stat().st_size
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        start_time = time.monotonic()

        plan, missing, resuming = None, None, False
        try:
            if session_id:
                plan, missing = self._resume_plan(session_id, file_size)
                resuming = plan is not None

            if plan is None:
                plan = plan_chunks(file_size, self.chunk_size)
                init = self.transport.init_upload(path.name, file_size, plan.chunk_size, plan.total_chunks, content_type)
                session_id = init["sessionId"]
                missing = set(range(plan.total_chunks))
                logger.info(f"Upload session {session_id}: {path.name} ({file_size} bytes, {plan.total_chunks} chunks)")
        except UploadApiError as e:
            raise UploadFailed(session_id or "", 0, str(e)) from e

        total_chunks = plan.total_chunks
        completed = 0

        def report(chunk_range, fraction, is_resuming):
            if on_progress is None:
                return
            on_progress(UploadProgress(
                chunk_index=chunk_range.index,
                total_chunks=total_chunks,
                chunk_progress=fraction,
                overall_progress=(completed + fraction) / total_chunks,
                uploaded_chunks=completed,
                current_chunk_size=chunk_range.size,
                total_size=file_size,
                is_resuming=is_resuming,
            ))

        with open(path, "rb") as f:
            for chunk_range in plan.ranges:
                if chunk_range.index not in missing:
                    report(chunk_range, 1.0, True)
                    completed += 1
                    continue

                f.seek(chunk_range.start)
                payload = f.read(chunk_range.size)

                try:
                    self.transport.send_chunk(
                        session_id,
                        chunk_range.index,
                        payload,
                        total_chunks,
                        on_progress=lambda fraction, r=chunk_range: report(r, fraction, resuming),
                    )
                except UploadApiError as e:
                    logger.error(f"Upload of {path.name} stopped at chunk {chunk_range.index}: {e}")
                    raise UploadFailed(session_id, completed, str(e)) from e

                completed += 1
                if on_chunk_complete is not None:
                    on_chunk_complete(completed, total_chunks)

        try:
            stored = self.transport.finalize(session_id)
        except UploadApiError as e:
            raise UploadFailed(session_id, completed, str(e)) from e

        upload_time = time.monotonic() - start_time
        logger.info(f"Upload of {path.name} completed in {upload_time:.2f}s: {stored['url']}")
        return UploadResult(
            session_id=session_id,
            url=stored["url"],
            public_id=stored["publicId"],
            size=stored["size"],
            upload_time=upload_time,
        )


def main(argv=None):
    """CLI for the chunked uploader."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Upload a large file in resumable chunks")
    parser.add_argument("file_path")
    parser.add_argument("--resume", dest="session_id", default=None, help="session id of an interrupted upload")
    parser.add_argument("--api", default=os.environ.get("API_BASE_URL", "http://localhost:8000/api"))
    parser.add_argument("--token", default=os.environ.get("API_TOKEN"))
    parser.add_argument("--retries", type=int, default=int(os.environ.get("UPLOAD_MAX_RETRIES", 3)))
    parser.add_argument("--timeout", type=float, default=float(os.environ.get("UPLOAD_CHUNK_TIMEOUT", 30)))
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)

    transport = ChunkTransport(args.api, token=args.token, max_retries=args.retries, timeout=args.timeout)
    uploader = ChunkedUploader(transport)

    def show_progress(progress: UploadProgress):
        print(
            f"\rchunk {progress.chunk_index + 1}/{progress.total_chunks} "
            f"{progress.chunk_progress * 100:5.1f}% | overall {progress.overall_progress * 100:5.1f}%",
            end="",
            flush=True,
        )

    try:
        result = uploader.upload_file(args.file_path, session_id=args.session_id, on_progress=show_progress)
    except UploadFailed as e:
        print(f"\nUpload failed: {e}")
        if e.session_id:
            print(f"Resume with: filmzone-upload {args.file_path} --resume {e.session_id}")
        return 1

    print(f"\nUpload completed: {result.url} ({result.size} bytes, {result.upload_time:.2f}s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
