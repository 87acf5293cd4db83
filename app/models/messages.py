from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SuccessfulMessage(BaseModel):
    status_code: int = 200
    detail: str
    timestamp: datetime = Field(default_factory=_now)
    payload: Optional[dict] = None

class UnsuccessfulResponse(BaseModel):
    status_code: int
    detail: str
    timestamp: datetime = Field(default_factory=_now)
    payload: Optional[dict] = None
