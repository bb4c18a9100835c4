from sqlalchemy import Column, Float, Date, String, Boolean, JSON, UniqueConstraint, Index, Uuid

from readingsync.database import Base
from readingsync.models.base import BaseModel


class Reading(Base, BaseModel):
	__tablename__ = "readings"

	tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
	customer_id = Column(Uuid(as_uuid=True), nullable=False)
	reading_value = Column(Float, nullable=False)
	reading_date = Column(Date, nullable=False)
	previous_reading_value = Column(Float, nullable=True)
	consumption = Column(Float, nullable=True)
	anomaly_flag = Column(Boolean, default=False, nullable=False, index=True)
	anomaly_score = Column(Float, default=0, nullable=False)
	anomaly_details = Column(JSON, nullable=True)
	source = Column(String(20), default="single", nullable=False)  # single, bulk, sync
	reading_metadata = Column("metadata", JSON, default=dict)
	photo_path = Column(String(500), nullable=True)
	client_id = Column(String(255), nullable=True, index=True)  # device-side identity of the write
	created_by = Column(Uuid(as_uuid=True), nullable=True)

	__table_args__ = (
		UniqueConstraint("tenant_id", "customer_id", "reading_date", name="unique_customer_reading_date"),
		Index("ix_readings_customer_date", "tenant_id", "customer_id", "reading_date"),
	)
