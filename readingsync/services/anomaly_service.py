import logging
import time
from datetime import date
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.config import settings
from readingsync.models.anomaly import AnomalyThresholds
from readingsync.models.reading import Reading
from readingsync.schemas.anomaly import ThresholdsUpdate
from readingsync.services.anomaly_engine import AnomalyEvaluation, AnomalyRulesEngine, HistoryEntry, Thresholds
from readingsync.services.consumption_calculator import ConsumptionResult

logger = logging.getLogger(__name__)

THRESHOLD_FIELDS = (
	"low_usage_floor",
	"high_usage_ceiling",
	"high_usage_multiplier",
	"history_window",
	"zero_usage_min_days",
	"max_increase_pct",
	"outlier_std_deviations",
	"outlier_min_samples",
	"outlier_history_days",
	"leak_min_daily_usage",
	"leak_consecutive_days",
)


def default_thresholds() -> Thresholds:
	return Thresholds(
		low_usage_floor=settings.ANOMALY_LOW_USAGE_FLOOR,
		high_usage_ceiling=settings.ANOMALY_HIGH_USAGE_CEILING,
		high_usage_multiplier=settings.ANOMALY_HIGH_USAGE_MULTIPLIER,
		history_window=settings.ANOMALY_HISTORY_WINDOW,
		zero_usage_min_days=settings.ANOMALY_ZERO_USAGE_MIN_DAYS,
		max_increase_pct=settings.ANOMALY_MAX_INCREASE_PCT,
		outlier_std_deviations=settings.ANOMALY_OUTLIER_STD_DEVIATIONS,
		outlier_min_samples=settings.ANOMALY_OUTLIER_MIN_SAMPLES,
		outlier_history_days=settings.ANOMALY_OUTLIER_HISTORY_DAYS,
		leak_min_daily_usage=settings.ANOMALY_LEAK_MIN_DAILY_USAGE,
		leak_consecutive_days=settings.ANOMALY_LEAK_CONSECUTIVE_DAYS,
	)


class ThresholdsCache:
	"""Per-tenant thresholds kept for a short TTL"""

	def __init__(self, ttl_seconds: float):
		self.ttl_seconds = ttl_seconds
		self._entries: Dict[UUID, Tuple[float, Thresholds]] = {}

	def get(self, tenant_id: UUID) -> Optional[Thresholds]:
		entry = self._entries.get(tenant_id)
		if entry is None:
			return None
		stored_at, thresholds = entry
		if time.monotonic() - stored_at > self.ttl_seconds:
			del self._entries[tenant_id]
			return None
		return thresholds

	def set(self, tenant_id: UUID, thresholds: Thresholds):
		self._entries[tenant_id] = (time.monotonic(), thresholds)

	def invalidate(self, tenant_id: Optional[UUID] = None):
		if tenant_id is None:
			self._entries.clear()
		else:
			self._entries.pop(tenant_id, None)


thresholds_cache = ThresholdsCache(settings.ANOMALY_RULES_CACHE_SECONDS)


class AnomalyService:
	def __init__(self, session: AsyncSession):
		self.session = session

	async def get_thresholds_row(self, tenant_id: UUID) -> Optional[AnomalyThresholds]:
		result = await self.session.execute(
			select(AnomalyThresholds).where(AnomalyThresholds.tenant_id == tenant_id)
		)
		return result.scalar_one_or_none()

	async def load_thresholds(self, tenant_id: UUID) -> Thresholds:
		"""Tenant thresholds, falling back to the configured defaults"""
		cached = thresholds_cache.get(tenant_id)
		if cached is not None:
			return cached

		row = await self.get_thresholds_row(tenant_id)
		if row is None:
			thresholds = default_thresholds()
		else:
			thresholds = Thresholds(**{name: getattr(row, name) for name in THRESHOLD_FIELDS})

		thresholds_cache.set(tenant_id, thresholds)
		return thresholds

	async def save_thresholds(self, tenant_id: UUID, data: ThresholdsUpdate) -> AnomalyThresholds:
		"""Create or replace a tenant's thresholds"""
		row = await self.get_thresholds_row(tenant_id)
		if row is None:
			row = AnomalyThresholds(tenant_id=tenant_id)
			self.session.add(row)

		for name, value in data.model_dump().items():
			setattr(row, name, value)

		await self.session.commit()
		await self.session.refresh(row)
		thresholds_cache.invalidate(tenant_id)

		logger.info(f"Anomaly thresholds updated for tenant {tenant_id}")
		return row

	async def consumption_history(
			self,
			tenant_id: UUID,
			customer_id: UUID,
			before: date,
			limit: int
	) -> List[HistoryEntry]:
		"""Most recent (reading_date, consumption) pairs before a date, newest first"""
		result = await self.session.execute(
			select(Reading.reading_date, Reading.consumption)
			.where(
				Reading.tenant_id == tenant_id,
				Reading.customer_id == customer_id,
				Reading.reading_date < before,
				Reading.consumption.is_not(None)
			)
			.order_by(Reading.reading_date.desc(), Reading.created_at.desc())
			.limit(limit)
		)
		return [(row.reading_date, row.consumption) for row in result.all()]

	async def evaluate(
			self,
			tenant_id: UUID,
			customer_id: UUID,
			reading_value: float,
			reading_date: date,
			consumption: ConsumptionResult
	) -> AnomalyEvaluation:
		"""Score a reading with the tenant's thresholds and the customer's history"""
		thresholds = await self.load_thresholds(tenant_id)
		history = await self.consumption_history(
			tenant_id, customer_id, reading_date, thresholds.history_limit()
		)

		engine = AnomalyRulesEngine(thresholds)
		evaluation = engine.evaluate(
			tenant_id=tenant_id,
			customer_id=customer_id,
			reading_value=reading_value,
			reading_date=reading_date,
			previous_value=consumption.previous_value,
			previous_date=consumption.previous_date,
			consumption=consumption.consumption,
			history=history,
		)

		if evaluation.anomaly_flag:
			worst = evaluation.most_severe()
			logger.info(
				f"Anomaly for customer {customer_id} on {reading_date}: "
				f"{worst.rule_type} ({worst.severity}), score {evaluation.anomaly_score}"
			)
		return evaluation
