"""Durable object storage that finalized uploads are handed to."""
from abc import ABC, abstractmethod
from pathlib import Path
import logging
import os
import uuid

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from app.models.uploading import StoredObject
from app.utils.exceptions import RemoteStoreError
from config.config import settings


info_log = logging.getLogger("info_logger")


class RemoteStore(ABC):
    @abstractmethod
    def upload(self, file_path: str, file_name: str, content_type: str = "application/octet-stream") -> StoredObject:
        """Store a local file durably and return its permanent reference."""


class S3RemoteStore(RemoteStore):
    """S3-compatible storage (AWS S3 or MinIO) reached through boto3."""

    def __init__(
        self,
        bucket: str = settings.REMOTE_BUCKET,
        endpoint_url: str | None = settings.REMOTE_ENDPOINT,
        access_key: str | None = settings.REMOTE_ACCESS_KEY,
        secret_key: str | None = settings.REMOTE_SECRET_KEY,
        region_name: str = settings.REMOTE_REGION,
        key_prefix: str = settings.REMOTE_PREFIX,
        public_url: str | None = settings.REMOTE_PUBLIC_URL,
    ) -> None:
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.key_prefix = key_prefix.strip("/")
        self.public_url = public_url
        self.__client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region_name,
        )

    @property
    def client(self):
        return self.__client

    def _object_key(self, file_name: str) -> str:
        # unique per upload so re-finalizing never overwrites a previous object
        name = f"{uuid.uuid4().hex}_{Path(file_name).name}"
        return f"{self.key_prefix}/{name}" if self.key_prefix else name

    def _object_url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"

    def upload(self, file_path: str, file_name: str, content_type: str = "application/octet-stream") -> StoredObject:
        key = self._object_key(file_name)
        try:
            self.__client.upload_file(
                file_path,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise RemoteStoreError(f"Remote storage upload failed: {e}") from e

        size = os.path.getsize(file_path)
        info_log.info(f"Stored {file_name} as '{self.bucket}/{key}' ({size} bytes)")
        return StoredObject(url=self._object_url(key), public_id=key, size=size)
