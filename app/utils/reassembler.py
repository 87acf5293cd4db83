from contextlib import suppress
from pathlib import Path
import asyncio
import logging

from app.clients.remote_store import RemoteStore
from app.models.uploading import StoredObject, UploadSession
from app.utils.exceptions import (
    FinalizeInProgress,
    IncompleteUpload,
    RemoteStoreError,
    UnknownSession,
    WriteFailure,
)
from app.utils.session_store import UploadSessionStore
from config.config import settings


info_log = logging.getLogger("info_logger")
debug_log = logging.getLogger("debug_logger")


class Reassembler:
    def __init__(self, store: UploadSessionStore, remote_store: RemoteStore, block_size: int = settings.MERGING_BLOCK_SIZE) -> None:
        self.__store = store
        self.__remote_store = remote_store
        self.__block_size = block_size

    def merged_path(self, session: UploadSession) -> Path:
        return self.__store.session_dir(session.session_id) / f"merged_{session.file_name}"

    def _merge_chunks(self, session: UploadSession, merged_path: Path) -> int:
        # index order, never arrival or directory order
        if merged_path.exists():
            merged_path.unlink()

        written = 0
        with open(merged_path, "wb") as merged_file:
            for index in range(session.total_chunks):
                chunk_path = self.__store.chunk_path(session.session_id, index)
                with open(chunk_path, "rb") as f:
                    while True:
                        block = f.read(self.__block_size)
                        if not block:
                            break
                        merged_file.write(block)
                        written += len(block)
                debug_log.debug(f"merged chunk {index + 1}/{session.total_chunks} of {session.session_id}")
        return written

    def _missing_on_disk(self, session: UploadSession) -> list[int]:
        return [
            i for i in range(session.total_chunks)
            if not self.__store.chunk_path(session.session_id, i).exists()
        ]

    async def finalize(self, session_id: str) -> StoredObject:
        """
        Merges every chunk of a complete session and hands the file to remote storage.

        Only one finalize runs per session. An incomplete session is left
        untouched so the client can fill the gaps and call finalize again. When
        remote storage fails the merged file is dropped but the chunks and the
        session are kept, so finalize can be retried without re-uploading.
        """
        if await self.__store.get(session_id) is None:
            raise UnknownSession(session_id)
        token = await self.__store.acquire_finalize(session_id)
        if token is None:
            raise FinalizeInProgress(session_id)

        heartbeat = asyncio.create_task(self._hold_finalize_lock(session_id, token))
        try:
            return await self._finalize_locked(session_id)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            await self.__store.release_finalize(session_id, token)

    async def _hold_finalize_lock(self, session_id: str, token: str):
        # renew well before the TTL runs out, merge plus upload can outlast it
        interval = max(self.__store.finalize_lock_ttl / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            if not await self.__store.refresh_finalize(session_id, token):
                debug_log.debug(f"finalize lock of {session_id} no longer held, renewal stopped")
                return

    async def _finalize_locked(self, session_id: str) -> StoredObject:
        session = await self.__store.get(session_id)
        if session is None:
            raise UnknownSession(session_id)

        missing = session.missing_chunks or self._missing_on_disk(session)
        if missing:
            info_log.info(f"Finalize of {session_id} refused, missing chunks: {missing}")
            raise IncompleteUpload(session_id, missing)

        merged_path = self.merged_path(session)
        loop = asyncio.get_running_loop()

        info_log.info(f"Reassembling {session.file_name} from {session.total_chunks} chunks ({session_id})")
        try:
            written = await loop.run_in_executor(None, self._merge_chunks, session, merged_path)
        except OSError as e:
            merged_path.unlink(missing_ok=True)
            raise WriteFailure(f"Reassembly of {session_id} failed: {e}") from e

        if written != session.declared_size:
            # declared size comes from the client, it is not authoritative
            info_log.warning(
                f"Reassembled size mismatch for {session_id}: expected {session.declared_size}, got {written}"
            )

        try:
            stored = await loop.run_in_executor(
                None, self.__remote_store.upload, str(merged_path), session.file_name, session.content_type
            )
        except RemoteStoreError as e:
            merged_path.unlink(missing_ok=True)
            info_log.error(f"Remote storage failed for {session_id}, session kept for retry: {e}")
            raise
        except Exception as e:
            merged_path.unlink(missing_ok=True)
            info_log.error(f"Remote storage failed for {session_id}, session kept for retry: {e}")
            raise RemoteStoreError(f"Remote storage upload failed: {e}") from e

        for index in range(session.total_chunks):
            self.__store.chunk_path(session_id, index).unlink(missing_ok=True)
        merged_path.unlink(missing_ok=True)
        await self.__store.dispose(session_id)

        info_log.info(f"Finalized {session_id}: {stored.url} ({stored.size} bytes)")
        return stored
