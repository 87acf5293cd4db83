from fastapi import UploadFile
from pathlib import Path
from typing import Optional
from config.config import settings
from app.clients.remote_store import RemoteStore
from app.models.uploading import StoredObject
from app.utils.exceptions import (
    ChunkTooLarge,
    FinalizeInProgress,
    IndexOutOfRange,
    InvalidChunkCount,
    InvalidSize,
    RemoteStoreError,
    UnknownSession,
    WriteFailure,
)
from app.utils.reassembler import Reassembler
from app.utils.session_store import UploadSessionStore
import asyncio
import aiofiles
import aiofiles.os
import logging
import uuid
import weakref


info_log = logging.getLogger("info_logger")
debug_log = logging.getLogger("debug_logger")


class UploadController:
    def __init__(self, store: UploadSessionStore, remote_store: RemoteStore) -> None:
        self.__store = store
        self.__remote_store = remote_store
        self.__reassembler = Reassembler(store, remote_store)
        # an entry lives only while some request still holds its lock
        self.__upload_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.__upload_locks_lock = asyncio.Lock()

    @property
    def store(self) -> UploadSessionStore:
        return self.__store

    @property
    def active_upload_locks(self) -> int:
        return len(self.__upload_locks)

    async def _get_upload_lock(self, lock_id: str) -> asyncio.Lock:
        async with self.__upload_locks_lock:
            lock = self.__upload_locks.get(lock_id)
            if lock is None:
                lock = asyncio.Lock()
                self.__upload_locks[lock_id] = lock
            return lock

    async def chunked_upload_init(self, file_name: str, file_size: int, chunk_size: int, total_chunks: Optional[int] = None, content_type: str = "application/octet-stream"):

        if file_size > settings.MAX_FILESIZE:
            raise InvalidSize(f"File size exceeds the limit. {file_size} > {settings.MAX_FILESIZE}")

        if chunk_size > settings.MAX_CHUNK_SIZE:
            raise InvalidSize(f"Chunk size exceeds the limit. {chunk_size} > {settings.MAX_CHUNK_SIZE}")

        session = await self.__store.init(file_name, file_size, chunk_size, content_type)

        if total_chunks is not None and total_chunks != session.total_chunks:
            await self.__store.dispose(session.session_id)
            raise InvalidChunkCount(
                f"totalChunks {total_chunks} does not match ceil({file_size} / {chunk_size}) = {session.total_chunks}"
            )

        return {
            "sessionId": session.session_id,
            "totalChunks": session.total_chunks,
            "chunkSize": session.chunk_size,
        }

    async def process_chunk(self, session_id: str, chunk_index: int, chunk_data: bytes, total_chunks: Optional[int] = None):
        session = await self.__store.get(session_id)
        if session is None:
            raise UnknownSession(session_id)

        if await self.__store.is_finalizing(session_id):
            raise FinalizeInProgress(session_id)

        if total_chunks is not None and total_chunks != session.total_chunks:
            raise InvalidChunkCount(f"totalChunks {total_chunks} does not match session ({session.total_chunks})")

        if not 0 <= chunk_index < session.total_chunks:
            raise IndexOutOfRange(
                f"Chunk index {chunk_index} out of range [0, {session.total_chunks})",
                payload={"index": chunk_index, "totalChunks": session.total_chunks},
            )

        if len(chunk_data) > session.chunk_size:
            raise ChunkTooLarge(f"Chunk {chunk_index} is {len(chunk_data)} bytes, session chunk size is {session.chunk_size}")

        upload_lock = await self._get_upload_lock(f"{session_id}:{chunk_index}")

        async with upload_lock:
            chunk_path = self.__store.chunk_path(session_id, chunk_index)
            tmp_path = chunk_path.with_name(f"{chunk_path.name}.{uuid.uuid4().hex}.part")

            # a resend replaces the staged file in one step, readers never see half a chunk
            try:
                async with aiofiles.open(tmp_path, "wb") as f:
                    await f.write(chunk_data)
                await aiofiles.os.replace(tmp_path, chunk_path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise WriteFailure(f"Error saving chunk {chunk_index}: {e}") from e

            newly_recorded = await self.__store.record_chunk(session_id, chunk_index)

        received = await self.__store.status(session_id)
        debug_log.debug(f"session {session_id}: {received}/{session.total_chunks} chunks")

        return {
            "accepted": True,
            "index": chunk_index,
            "duplicate": not newly_recorded,
            "receivedChunks": received,
        }

    async def chunked_upload_status(self, session_id: str):
        session = await self.__store.get(session_id)
        if session is None:
            return None

        received = len(session.received_chunks)
        missing = session.missing_chunks
        return {
            "sessionId": session.session_id,
            "existingChunks": received,
            "totalChunks": session.total_chunks,
            "chunkSize": session.chunk_size,
            "missingChunks": missing,
            "progressPercentage": round(received / session.total_chunks * 100, 2),
            "isComplete": not missing,
        }

    async def complete_chunked_upload(self, session_id: str):
        stored = await self.__reassembler.finalize(session_id)
        return {
            "url": stored.url,
            "publicId": stored.public_id,
            "size": stored.size,
        }

    async def upload_stream(self, file: UploadFile, block_size: int = settings.MERGING_BLOCK_SIZE) -> StoredObject:
        """Single-shot upload for smaller files, bypassing the session store."""
        file_name = Path(file.filename or "upload.bin").name
        stream_dir = self.__store.staging_root / "_stream"
        stream_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = stream_dir / f"{uuid.uuid4().hex}_{file_name}"

        try:
            async with aiofiles.open(tmp_path, "wb") as out:
                while True:
                    block = await file.read(block_size)
                    if not block:
                        break
                    await out.write(block)

            info_log.info(f"Streaming upload received: {file_name} ({tmp_path.stat().st_size} bytes)")

            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(
                    None,
                    self.__remote_store.upload,
                    str(tmp_path),
                    file_name,
                    file.content_type or "application/octet-stream",
                )
            except RemoteStoreError:
                raise
            except Exception as e:
                raise RemoteStoreError(f"Remote storage upload failed: {e}") from e
        finally:
            tmp_path.unlink(missing_ok=True)
