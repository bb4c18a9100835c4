from sqlalchemy import Column, Float, Integer, Uuid

from readingsync.database import Base
from readingsync.models.base import BaseModel


class AnomalyThresholds(Base, BaseModel):
	"""Per-tenant anomaly thresholds. A NULL threshold disables its rule."""

	__tablename__ = "anomaly_thresholds"

	tenant_id = Column(Uuid(as_uuid=True), nullable=False, unique=True, index=True)
	low_usage_floor = Column(Float, nullable=True)
	high_usage_ceiling = Column(Float, nullable=True)
	high_usage_multiplier = Column(Float, nullable=True)
	history_window = Column(Integer, nullable=False, default=6)
	zero_usage_min_days = Column(Integer, nullable=True)
	max_increase_pct = Column(Float, nullable=True)
	outlier_std_deviations = Column(Float, nullable=True)
	outlier_min_samples = Column(Integer, nullable=False, default=10)
	outlier_history_days = Column(Integer, nullable=False, default=180)
	leak_min_daily_usage = Column(Float, nullable=True)
	leak_consecutive_days = Column(Integer, nullable=False, default=7)
