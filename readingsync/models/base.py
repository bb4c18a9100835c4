import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Uuid


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
	"""SQLite hands back naive datetimes; treat them as UTC."""
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value


class BaseModel:
	"""Columns shared by every table: UUID primary key and audit timestamps"""

	id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
	created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
	updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
