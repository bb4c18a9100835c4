from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from readingsync.config import settings
from readingsync.schemas.reading import ReadingCreate


class SyncReadingItem(ReadingCreate):
    client_id: str = Field(..., min_length=1, max_length=255)


class SyncReadingRequest(BaseModel):
    client_batch_id: str = Field(..., min_length=1, max_length=255)
    items: List[Any] = Field(..., min_length=1, max_length=settings.SYNC_MAX_ITEMS)


class SyncItemResult(BaseModel):
    client_id: Optional[str] = None
    ok: bool
    server_id: Optional[UUID] = None
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    is_duplicate: bool = False


class SyncReadingResponse(BaseModel):
    client_batch_id: str
    success: bool
    total_items: int
    success_count: int
    failure_count: int
    duplicate_count: int
    anomalies_detected: int
    idempotency_key: str
    processed_at: datetime
    results: List[SyncItemResult]


class SyncBatchSummary(BaseModel):
    client_batch_id: str
    status_code: int
    created_at: datetime
    expires_at: datetime
