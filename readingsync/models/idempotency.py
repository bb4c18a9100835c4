from sqlalchemy import Column, String, Integer, Text, DateTime, UniqueConstraint, Uuid

from readingsync.database import Base
from readingsync.models.base import BaseModel


class IdempotencyRecord(Base, BaseModel):
	__tablename__ = "idempotency_keys"

	tenant_id = Column(Uuid(as_uuid=True), nullable=False)
	key = Column(String(255), nullable=False)
	scope = Column(String(20), nullable=False, default="single", index=True)  # single, bulk, sync
	request_path = Column(String(255), nullable=False)
	request_hash = Column(String(64), nullable=False)
	reference = Column(String(255), nullable=True, index=True)  # client batch id for sync writes
	status_code = Column(Integer, nullable=False)
	response_body = Column(Text, nullable=False)
	expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

	__table_args__ = (
		UniqueConstraint("tenant_id", "key", name="unique_tenant_idempotency_key"),
	)
