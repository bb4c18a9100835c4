import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.models.reading import Reading

logger = logging.getLogger(__name__)

CONSUMPTION_PRECISION = Decimal("0.001")


class ConsumptionLookupError(Exception):
	"""The prior reading could not be looked up. Never treated as 'no prior reading'."""


@dataclass(frozen=True)
class ConsumptionResult:
	previous_value: Optional[float]
	previous_date: Optional[date]
	consumption: Optional[float]
	previous_reading_id: Optional[UUID] = None


def compute_consumption(new_value: float, previous_value: float) -> float:
	"""Difference rounded to 3 decimals, without binary float drift. Negative values are kept."""
	delta = Decimal(str(new_value)) - Decimal(str(previous_value))
	return float(delta.quantize(CONSUMPTION_PRECISION))


class ConsumptionCalculator:
	def __init__(self, session: AsyncSession):
		self.session = session

	async def find_previous(self, tenant_id: UUID, customer_id: UUID, before: date) -> Optional[Reading]:
		"""Most recent reading strictly before the given date"""
		try:
			result = await self.session.execute(
				select(Reading)
				.where(
					Reading.tenant_id == tenant_id,
					Reading.customer_id == customer_id,
					Reading.reading_date < before
				)
				.order_by(Reading.reading_date.desc(), Reading.created_at.desc())
				.limit(1)
			)
			return result.scalar_one_or_none()
		except SQLAlchemyError as e:
			logger.error(f"Previous reading lookup failed for customer {customer_id}: {e}")
			raise ConsumptionLookupError(f"Failed to look up previous reading: {e}") from e

	async def find_next(self, tenant_id: UUID, customer_id: UUID, after: date) -> Optional[Reading]:
		"""Earliest reading strictly after the given date"""
		try:
			result = await self.session.execute(
				select(Reading)
				.where(
					Reading.tenant_id == tenant_id,
					Reading.customer_id == customer_id,
					Reading.reading_date > after
				)
				.order_by(Reading.reading_date.asc(), Reading.created_at.asc())
				.limit(1)
			)
			return result.scalar_one_or_none()
		except SQLAlchemyError as e:
			logger.error(f"Next reading lookup failed for customer {customer_id}: {e}")
			raise ConsumptionLookupError(f"Failed to look up next reading: {e}") from e

	async def calculate(
			self,
			tenant_id: UUID,
			customer_id: UUID,
			new_value: float,
			new_date: date
	) -> ConsumptionResult:
		"""Consumption of a new reading against the customer's prior reading"""
		previous = await self.find_previous(tenant_id, customer_id, new_date)
		if previous is None:
			return ConsumptionResult(previous_value=None, previous_date=None, consumption=None)

		return ConsumptionResult(
			previous_value=previous.reading_value,
			previous_date=previous.reading_date,
			consumption=compute_consumption(new_value, previous.reading_value),
			previous_reading_id=previous.id
		)
