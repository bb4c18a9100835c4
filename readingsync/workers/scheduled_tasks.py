import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any

from celery.schedules import crontab
from sqlalchemy import select, func, case

from readingsync.core.celery_app import celery_app
from readingsync.database import AsyncSessionLocal
from readingsync.models.reading import Reading
from readingsync.services.idempotency_service import IdempotencyService

logger = logging.getLogger(__name__)

# Configure periodic tasks
celery_app.conf.beat_schedule = {
	'purge-expired-idempotency-keys': {
		'task': 'readingsync.workers.scheduled_tasks.purge_expired_idempotency_keys',
		'schedule': 3600.0,  # Every hour
	},
	'daily-anomaly-report': {
		'task': 'readingsync.workers.scheduled_tasks.generate_anomaly_report',
		'schedule': crontab(hour=6, minute=0),  # Daily at 6 AM
	},
}


def _run(coro):
	loop = asyncio.new_event_loop()
	asyncio.set_event_loop(loop)
	try:
		return loop.run_until_complete(coro)
	finally:
		loop.close()


@celery_app.task(name="readingsync.workers.scheduled_tasks.purge_expired_idempotency_keys")
def purge_expired_idempotency_keys():
	"""Drop cached responses whose TTL has passed"""
	return _run(purge_expired_async())


async def purge_expired_async(session_factory=AsyncSessionLocal) -> Dict[str, Any]:
	async with session_factory() as db:
		removed = await IdempotencyService(db).purge_expired()
	logger.info(f"Idempotency purge removed {removed} records")
	return {"removed": removed}


@celery_app.task(name="readingsync.workers.scheduled_tasks.generate_anomaly_report")
def generate_anomaly_report():
	"""Per-tenant counts of readings and anomalies stored yesterday"""
	return _run(anomaly_report_async())


async def anomaly_report_async(session_factory=AsyncSessionLocal, now: datetime = None) -> Dict[str, Any]:
	now = now or datetime.now(timezone.utc)
	start = (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
	end = start + timedelta(days=1)

	async with session_factory() as db:
		result = await db.execute(
			select(
				Reading.tenant_id,
				func.count(Reading.id),
				func.sum(case((Reading.anomaly_flag.is_(True), 1), else_=0)),
			)
			.where(Reading.created_at >= start, Reading.created_at < end)
			.group_by(Reading.tenant_id)
		)
		rows = result.all()

	report = {
		"date": start.date().isoformat(),
		"tenants": {
			str(tenant_id): {"readings": total, "anomalies": int(flagged or 0)}
			for tenant_id, total, flagged in rows
		},
	}
	logger.info(f"Anomaly report for {report['date']}: {len(rows)} tenants with readings")
	return report
