import uuid
from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from readingsync.models.reading import Reading
from readingsync.services.consumption_calculator import (
	ConsumptionCalculator,
	ConsumptionLookupError,
	compute_consumption,
)


def test_compute_consumption_rounds_to_three_decimals():
	assert compute_consumption(0.3, 0.1) == 0.2
	assert compute_consumption(1234.5678, 1000) == 234.568
	assert compute_consumption(90, 100) == -10


@pytest.fixture
async def history(db_session):
	tenant_id = uuid.uuid4()
	customer_id = uuid.uuid4()
	for day, value in ((date(2024, 1, 1), 100.0), (date(2024, 3, 1), 300.0)):
		db_session.add(Reading(
			tenant_id=tenant_id,
			customer_id=customer_id,
			reading_value=value,
			reading_date=day,
			source="single",
		))
	await db_session.commit()
	return tenant_id, customer_id


@pytest.mark.asyncio
async def test_calculate_against_previous(db_session, history):
	tenant_id, customer_id = history
	result = await ConsumptionCalculator(db_session).calculate(tenant_id, customer_id, 350.5, date(2024, 4, 1))
	assert result.previous_value == 300.0
	assert result.previous_date == date(2024, 3, 1)
	assert result.consumption == 50.5


@pytest.mark.asyncio
async def test_calculate_ignores_later_readings(db_session, history):
	tenant_id, customer_id = history
	result = await ConsumptionCalculator(db_session).calculate(tenant_id, customer_id, 150, date(2024, 2, 1))
	assert result.previous_value == 100.0
	assert result.consumption == 50


@pytest.mark.asyncio
async def test_first_reading_has_no_consumption(db_session, history):
	tenant_id, _ = history
	result = await ConsumptionCalculator(db_session).calculate(tenant_id, uuid.uuid4(), 10, date(2024, 2, 1))
	assert result.previous_value is None
	assert result.consumption is None


@pytest.mark.asyncio
async def test_other_tenant_readings_are_invisible(db_session, history):
	_, customer_id = history
	result = await ConsumptionCalculator(db_session).calculate(uuid.uuid4(), customer_id, 10, date(2024, 5, 1))
	assert result.previous_value is None


@pytest.mark.asyncio
async def test_find_next(db_session, history):
	tenant_id, customer_id = history
	successor = await ConsumptionCalculator(db_session).find_next(tenant_id, customer_id, date(2024, 2, 1))
	assert successor.reading_value == 300.0
	assert await ConsumptionCalculator(db_session).find_next(tenant_id, customer_id, date(2024, 3, 1)) is None


class BrokenSession:
	async def execute(self, *args, **kwargs):
		raise OperationalError("SELECT", {}, Exception("connection reset"))


@pytest.mark.asyncio
async def test_lookup_failure_is_not_a_missing_reading():
	with pytest.raises(ConsumptionLookupError):
		await ConsumptionCalculator(BrokenSession()).calculate(uuid.uuid4(), uuid.uuid4(), 10, date(2024, 1, 1))
