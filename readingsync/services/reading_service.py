import logging
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.models.reading import Reading
from readingsync.monitoring.metrics import readings_ingested, anomalies_detected
from readingsync.schemas.reading import ReadingCreate
from readingsync.services.anomaly_engine import AnomalyEvaluation
from readingsync.services.anomaly_service import AnomalyService
from readingsync.services.consumption_calculator import (
	ConsumptionCalculator,
	ConsumptionLookupError,
	ConsumptionResult,
	compute_consumption,
)
from readingsync.services.realtime import RealtimeEventType, RealtimeFanout

logger = logging.getLogger(__name__)

DUPLICATE_WARNING = "Reading already exists for this customer and date - returning existing record"


@dataclass
class IngestOutcome:
	reading: Reading
	created: bool
	evaluation: Optional[AnomalyEvaluation] = None
	warnings: List[str] = field(default_factory=list)

	@property
	def duplicate(self) -> bool:
		return not self.created


def reading_event_payload(reading: Reading) -> dict:
	reasons = [rule["rule_type"] for rule in (reading.anomaly_details or [])]
	return {
		"reading_id": str(reading.id),
		"customer_id": str(reading.customer_id),
		"reading_value": reading.reading_value,
		"reading_date": reading.reading_date.isoformat(),
		"previous_reading_value": reading.previous_reading_value,
		"consumption": reading.consumption,
		"anomaly_flag": reading.anomaly_flag,
		"anomaly_score": reading.anomaly_score,
		"anomaly_reasons": reasons,
		"source": reading.source,
	}


class ReadingService:
	def __init__(self, session: AsyncSession, fanout: Optional[RealtimeFanout] = None):
		self.session = session
		self.fanout = fanout
		self.calculator = ConsumptionCalculator(session)
		self.anomalies = AnomalyService(session)

	async def get_reading(self, tenant_id: UUID, reading_id: UUID) -> Optional[Reading]:
		result = await self.session.execute(
			select(Reading).where(Reading.tenant_id == tenant_id, Reading.id == reading_id)
		)
		return result.scalar_one_or_none()

	async def find_existing(self, tenant_id: UUID, customer_id: UUID, reading_date) -> Optional[Reading]:
		result = await self.session.execute(
			select(Reading).where(
				Reading.tenant_id == tenant_id,
				Reading.customer_id == customer_id,
				Reading.reading_date == reading_date
			)
		)
		return result.scalar_one_or_none()

	async def list_readings(
			self,
			tenant_id: UUID,
			skip: int = 0,
			limit: int = 100,
			customer_id: Optional[UUID] = None,
			anomalies_only: bool = False
	):
		"""Tenant readings, newest first, with the unpaginated total"""
		query = select(Reading).where(Reading.tenant_id == tenant_id)
		if customer_id:
			query = query.where(Reading.customer_id == customer_id)
		if anomalies_only:
			query = query.where(Reading.anomaly_flag.is_(True))

		total = await self.session.scalar(select(func.count()).select_from(query.subquery()))
		result = await self.session.execute(
			query.order_by(Reading.reading_date.desc(), Reading.created_at.desc())
			.offset(skip)
			.limit(limit)
		)
		return result.scalars().all(), total or 0

	async def ingest(
			self,
			tenant_id: UUID,
			user_id: Optional[UUID],
			data: ReadingCreate,
			source: str = "single"
	) -> IngestOutcome:
		"""
		Persist one reading with its consumption and anomaly evaluation.

		A reading that already exists for the customer and date is returned as-is,
		whether it is found up front or surfaces as a unique-constraint violation.
		"""
		existing = await self.find_existing(tenant_id, data.customer_id, data.reading_date)
		if existing is not None:
			readings_ingested.labels(source=source, outcome="duplicate").inc()
			logger.info(f"Duplicate reading for customer {data.customer_id} on {data.reading_date}, returning {existing.id}")
			return IngestOutcome(reading=existing, created=False, warnings=[DUPLICATE_WARNING])

		consumption = await self.calculator.calculate(
			tenant_id, data.customer_id, data.reading_value, data.reading_date
		)
		evaluation = await self.anomalies.evaluate(
			tenant_id, data.customer_id, data.reading_value, data.reading_date, consumption
		)

		reading = Reading(
			tenant_id=tenant_id,
			customer_id=data.customer_id,
			reading_value=data.reading_value,
			reading_date=data.reading_date,
			previous_reading_value=consumption.previous_value,
			consumption=consumption.consumption,
			anomaly_flag=evaluation.anomaly_flag,
			anomaly_score=evaluation.anomaly_score,
			anomaly_details=evaluation.details(),
			source=source,
			reading_metadata=data.metadata.model_dump(mode="json", exclude_none=True) if data.metadata else {},
			photo_path=data.photo_path,
			client_id=data.client_id,
			created_by=user_id,
		)
		self.session.add(reading)

		try:
			await self.session.commit()
		except IntegrityError:
			await self.session.rollback()
			conflict = await self.find_existing(tenant_id, data.customer_id, data.reading_date)
			if conflict is None:
				raise
			readings_ingested.labels(source=source, outcome="duplicate").inc()
			logger.info(f"Concurrent insert for customer {data.customer_id} on {data.reading_date}, returning {conflict.id}")
			return IngestOutcome(reading=conflict, created=False, warnings=[DUPLICATE_WARNING])

		readings_ingested.labels(source=source, outcome="created").inc()
		if evaluation.anomaly_flag:
			anomalies_detected.labels(severity=evaluation.most_severe().severity).inc()

		logger.info(
			f"Reading {reading.id} stored for customer {reading.customer_id} "
			f"(consumption={reading.consumption}, anomaly={reading.anomaly_flag})"
		)

		await self._publish(reading, evaluation, RealtimeEventType.READING_INSERT, user_id)

		successor = await self._rederive_successor(reading)
		if successor is not None:
			await self._publish(successor, None, RealtimeEventType.READING_UPDATE, user_id)

		return IngestOutcome(reading=reading, created=True, evaluation=evaluation)

	async def _rederive_successor(self, reading: Reading) -> Optional[Reading]:
		"""
		A back-dated reading becomes the predecessor of the next one; refresh its derived fields.

		The new reading is already committed, so a failure here is logged and the
		successor keeps its previous values.
		"""
		try:
			successor = await self.calculator.find_next(reading.tenant_id, reading.customer_id, reading.reading_date)
			if successor is None:
				return None

			consumption = ConsumptionResult(
				previous_value=reading.reading_value,
				previous_date=reading.reading_date,
				consumption=compute_consumption(successor.reading_value, reading.reading_value),
				previous_reading_id=reading.id,
			)
			evaluation = await self.anomalies.evaluate(
				successor.tenant_id, successor.customer_id, successor.reading_value, successor.reading_date, consumption
			)

			successor.previous_reading_value = consumption.previous_value
			successor.consumption = consumption.consumption
			successor.anomaly_flag = evaluation.anomaly_flag
			successor.anomaly_score = evaluation.anomaly_score
			successor.anomaly_details = evaluation.details()
			await self.session.commit()
		except (ConsumptionLookupError, SQLAlchemyError):
			logger.exception(f"Could not re-derive the reading after {reading.id}")
			await self.session.rollback()
			await self.session.refresh(reading)
			return None

		logger.info(f"Re-derived reading {successor.id} after back-dated insert {reading.id}")
		return successor

	async def _publish(
			self,
			reading: Reading,
			evaluation: Optional[AnomalyEvaluation],
			event_type: RealtimeEventType,
			user_id: Optional[UUID]
	):
		if self.fanout is None:
			return

		payload = reading_event_payload(reading)
		message = await self.fanout.publish(reading.tenant_id, "readings", event_type, payload, user_id)

		if evaluation is not None and evaluation.anomaly_flag:
			worst = evaluation.most_severe()
			await self.fanout.publish(
				reading.tenant_id,
				"anomalies",
				RealtimeEventType.ANOMALY_DETECTED,
				{
					**payload,
					"rule_type": worst.rule_type,
					"severity": worst.severity,
					"message": worst.message,
					"triggered_rules": evaluation.details(),
				},
				user_id,
				correlation_id=message["correlation_id"],
			)
