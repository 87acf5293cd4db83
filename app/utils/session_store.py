from pathlib import Path
import asyncio
import logging
import re
import shutil
import time
import uuid

from redis.exceptions import WatchError

from app.models.uploading import UploadSession
from app.utils.exceptions import InvalidSize, UnknownSession, WriteFailure
from config.config import settings


info_log = logging.getLogger("info_logger")
debug_log = logging.getLogger("debug_logger")

SESSION_ID_PATTERN = re.compile(r"^upload_\d+_[0-9a-f]{12}$")


class UploadSessionStore:
    """
    Bookkeeping for in-progress chunked uploads.

    Session metadata lives in redis as a JSON record, the received chunk
    indices in a redis set next to it (SADD keeps concurrent resends from
    double counting). Chunk bytes live on disk, one staging directory per
    session under a shared root. Both redis keys expire after
    SESSION_RETENTION seconds without activity; sweep_expired() reclaims the
    staging directories they leave behind.
    """

    def __init__(
        self,
        redis_client,
        staging_dir: str | Path = settings.STAGING_DIR,
        retention: int = settings.SESSION_RETENTION,
        finalize_lock_ttl: int = settings.FINALIZE_LOCK_TTL,
    ) -> None:
        self.__redis = redis_client
        self.__staging_root = Path(staging_dir)
        self.__retention = retention
        self.__finalize_lock_ttl = finalize_lock_ttl

    @property
    def staging_root(self) -> Path:
        return self.__staging_root

    @property
    def finalize_lock_ttl(self) -> int:
        return self.__finalize_lock_ttl

    @staticmethod
    def new_session_id() -> str:
        return f"upload_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"

    @staticmethod
    def is_valid_id(session_id: str) -> bool:
        return bool(SESSION_ID_PATTERN.match(session_id or ""))

    @staticmethod
    def _meta_key(session_id: str) -> str:
        return f"upload:{session_id}:meta"

    @staticmethod
    def _chunks_key(session_id: str) -> str:
        return f"upload:{session_id}:chunks"

    @staticmethod
    def _finalize_key(session_id: str) -> str:
        return f"upload:{session_id}:finalize"

    def session_dir(self, session_id: str) -> Path:
        # session ids end up in filesystem paths
        if not self.is_valid_id(session_id):
            raise UnknownSession(session_id)
        return self.__staging_root / session_id

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / f"chunk_{index}"

    async def ping(self) -> bool:
        return await self.__redis.ping()

    async def init(self, file_name: str, declared_size: int, chunk_size: int, content_type: str = "application/octet-stream") -> UploadSession:
        if declared_size <= 0:
            raise InvalidSize(f"Declared file size must be positive, got {declared_size}")
        if chunk_size <= 0:
            raise InvalidSize(f"Chunk size must be positive, got {chunk_size}")

        total_chunks = (declared_size + chunk_size - 1) // chunk_size

        while True:
            session = UploadSession(
                session_id=self.new_session_id(),
                file_name=Path(file_name).name or "upload.bin",
                declared_size=declared_size,
                chunk_size=chunk_size,
                total_chunks=total_chunks,
                content_type=content_type,
            )
            created = await self.__redis.set(
                self._meta_key(session.session_id),
                session.model_dump_json(),
                ex=self.__retention,
                nx=True,
            )
            if created:
                break

        try:
            self.session_dir(session.session_id).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            await self.__redis.delete(self._meta_key(session.session_id))
            raise WriteFailure(f"Could not create staging area: {e}") from e

        info_log.info(
            f"Initialized upload session {session.session_id} for {session.file_name} "
            f"({declared_size} bytes, {total_chunks} chunks of {chunk_size})"
        )
        return session

    async def get(self, session_id: str) -> UploadSession | None:
        if not self.is_valid_id(session_id):
            return None
        raw = await self.__redis.get(self._meta_key(session_id))
        if raw is None:
            return None
        session = UploadSession.model_validate_json(raw)
        members = await self.__redis.smembers(self._chunks_key(session_id))
        session.received_chunks = {int(m) for m in members}
        return session

    async def status(self, session_id: str) -> int | None:
        """Number of received chunks, or None when the session does not exist."""
        if not self.is_valid_id(session_id):
            return None
        if not await self.__redis.exists(self._meta_key(session_id)):
            return None
        return await self.__redis.scard(self._chunks_key(session_id))

    async def record_chunk(self, session_id: str, index: int) -> bool:
        """Marks a chunk as received. Returns False if it already was."""
        if not self.is_valid_id(session_id) or not await self.__redis.exists(self._meta_key(session_id)):
            raise UnknownSession(session_id)

        async with self.__redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._chunks_key(session_id), index)
            pipe.expire(self._chunks_key(session_id), self.__retention)
            pipe.expire(self._meta_key(session_id), self.__retention)
            added, _, _ = await pipe.execute()

        debug_log.debug(f"session {session_id}: chunk {index} recorded (new={bool(added)})")
        return bool(added)

    async def all_chunks_present(self, session_id: str) -> tuple[bool, list[int]]:
        session = await self.get(session_id)
        if session is None:
            raise UnknownSession(session_id)
        missing = session.missing_chunks
        return not missing, missing

    async def acquire_finalize(self, session_id: str) -> str | None:
        """Takes the finalize lock. Returns the owner token, or None when someone else holds it."""
        token = uuid.uuid4().hex
        acquired = await self.__redis.set(
            self._finalize_key(session_id), token, ex=self.__finalize_lock_ttl, nx=True
        )
        if not acquired:
            return None
        await self._touch(session_id)
        return token

    async def _touch(self, session_id: str) -> None:
        # a long reassembly must not let the session expire underneath it
        await self.__redis.expire(self._meta_key(session_id), self.__retention)
        await self.__redis.expire(self._chunks_key(session_id), self.__retention)

    async def _if_lock_owner(self, session_id: str, token: str, action) -> bool:
        """Runs action(pipe, key) in a transaction only while token still owns the finalize lock."""
        key = self._finalize_key(session_id)
        async with self.__redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                action(pipe, key)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def refresh_finalize(self, session_id: str, token: str) -> bool:
        """Extends the finalize lock. False when the lock is no longer held by token."""
        renewed = await self._if_lock_owner(
            session_id, token, lambda pipe, key: pipe.expire(key, self.__finalize_lock_ttl)
        )
        if renewed:
            await self._touch(session_id)
        return renewed

    async def release_finalize(self, session_id: str, token: str) -> bool:
        return await self._if_lock_owner(session_id, token, lambda pipe, key: pipe.delete(key))

    async def is_finalizing(self, session_id: str) -> bool:
        return bool(await self.__redis.exists(self._finalize_key(session_id)))

    async def dispose(self, session_id: str) -> None:
        await self.__redis.delete(
            self._meta_key(session_id),
            self._chunks_key(session_id),
            self._finalize_key(session_id),
        )
        session_dir = self.session_dir(session_id)
        if session_dir.exists():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, shutil.rmtree, session_dir)
        info_log.info(f"Disposed upload session {session_id}")

    @staticmethod
    def _last_activity(path: Path) -> float:
        return max([path.stat().st_mtime] + [p.stat().st_mtime for p in path.iterdir()])

    def _session_dirs(self) -> list[Path]:
        if not self.__staging_root.exists():
            return []
        return [e for e in self.__staging_root.iterdir() if e.is_dir() and self.is_valid_id(e.name)]

    def _remove_if_idle(self, path: Path, now: float) -> bool:
        try:
            if now - self._last_activity(path) < self.__retention:
                return False
            shutil.rmtree(path)
        except FileNotFoundError:
            # finalize disposed it while we were looking
            return False
        return True

    async def sweep_expired(self) -> list[str]:
        """Removes staging directories of sessions idle longer than the retention window."""
        loop = asyncio.get_running_loop()
        now = time.time()
        removed = []
        for entry in await loop.run_in_executor(None, self._session_dirs):
            if await self.__redis.exists(self._meta_key(entry.name)):
                continue
            if not await loop.run_in_executor(None, self._remove_if_idle, entry, now):
                continue
            await self.__redis.delete(self._chunks_key(entry.name), self._finalize_key(entry.name))
            removed.append(entry.name)
            info_log.info(f"Reclaimed abandoned upload session {entry.name}")

        return removed
