from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from readingsync.config import settings
from readingsync.schemas.anomaly import TriggeredRuleSchema

ReadingMethod = Literal["manual", "automated", "estimated"]
ReadingSource = Literal["single", "bulk", "sync"]


class ReadingMetadata(BaseModel):
    read_by: Optional[str] = None
    method: ReadingMethod = "manual"
    location: Optional[str] = None
    offline_timestamp: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class ReadingBase(BaseModel):
    customer_id: UUID
    reading_value: float = Field(..., ge=0)
    reading_date: date
    metadata: Optional[ReadingMetadata] = None
    photo_path: Optional[str] = Field(None, max_length=500)
    client_id: Optional[str] = Field(None, max_length=255)


class ReadingCreate(ReadingBase):
    pass


class ReadingResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    customer_id: UUID
    reading_value: float
    reading_date: date
    previous_reading_value: Optional[float] = None
    consumption: Optional[float] = None
    anomaly_flag: bool = False
    anomaly_score: float = 0
    anomaly_details: Optional[List[TriggeredRuleSchema]] = None
    source: ReadingSource
    metadata: Optional[Dict[str, Any]] = Field(
        None, validation_alias=AliasChoices("reading_metadata", "metadata")
    )
    photo_path: Optional[str] = None
    client_id: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BulkReadingRequest(BaseModel):
    # items are validated one by one so a bad row only fails itself
    items: List[Any] = Field(..., min_length=1, max_length=settings.BULK_MAX_ITEMS)


class BulkItemResult(BaseModel):
    index: int
    ok: bool
    id: Optional[UUID] = None
    error: Optional[str] = None
    duplicate: bool = False
    consumption: Optional[float] = None
    anomaly_flag: bool = False


class BulkReadingResponse(BaseModel):
    success: bool
    total_items: int
    success_count: int
    failure_count: int
    anomalies_detected: int
    results: List[BulkItemResult]
