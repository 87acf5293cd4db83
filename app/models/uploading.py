from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime, timezone
from typing import Optional


class UploadSession(BaseModel):
    session_id: str
    file_name: str
    declared_size: int
    chunk_size: int
    total_chunks: int
    content_type: str = "application/octet-stream"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # kept in a separate redis set, never serialized into the metadata record
    received_chunks: set[int] = Field(default_factory=set, exclude=True)

    @property
    def missing_chunks(self) -> list[int]:
        return [i for i in range(self.total_chunks) if i not in self.received_chunks]


class StoredObject(BaseModel):
    url: str
    public_id: str
    size: int


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadInitRequest(CamelModel):
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: Optional[int] = None
    content_type: str = "application/octet-stream"

class UploadStatusRequest(CamelModel):
    session_id: str

class UploadFinalizeRequest(CamelModel):
    session_id: str
