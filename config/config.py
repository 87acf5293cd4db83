from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    STAGING_DIR: str = "/tmp/filmzone_uploads"
    MAX_FILESIZE: int = 10 * 1024 * 1024 * 1024  # 10GB
    MAX_CHUNK_SIZE: int = 50 * 1024 * 1024
    MAX_CONTENT_LENGTH: int = 51 * 1024 * 1024  # one chunk plus multipart overhead
    MERGING_BLOCK_SIZE: int = 5 * 1024 * 1024

    SESSION_RETENTION: int = 86400  # idle seconds before a session may be reclaimed
    FINALIZE_LOCK_TTL: int = 300  # renewed while a finalize runs
    GC_ENABLED: bool = True
    GC_INTERVAL: int = 3600

    REMOTE_BUCKET: str = "filmzone"
    REMOTE_ENDPOINT: str | None = None
    REMOTE_ACCESS_KEY: str | None = None
    REMOTE_SECRET_KEY: str | None = None
    REMOTE_REGION: str = "us-east-1"
    REMOTE_PREFIX: str = "filmzone/videos"
    REMOTE_PUBLIC_URL: str | None = None

    ALLOW_ORIGINS: List[str] = ["http://localhost:5173"]


settings = Settings()
