from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

ErrorKind = Literal["provider_error", "timeout", "upstream", "extraction", "internal"]

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Outcome(BaseModel):
    success: bool
    image_result: Optional[str] = None  # URL or data: URI
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    raw_response: Any = None

    @classmethod
    def succeeded(cls, image_result: str, raw_response: Any = None) -> "Outcome":
        return cls(success=True, image_result=image_result, raw_response=raw_response)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind, raw_response: Any = None) -> "Outcome":
        return cls(success=False, error=error, error_kind=kind, raw_response=raw_response)

class TaskRecord(BaseModel):
    task_id: str
    outcome: Optional[Outcome] = None
    terminal: bool = False  # False while only the pre-extraction snapshot exists
    raw_response: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
