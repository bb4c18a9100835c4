import hashlib
import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.models.base import as_utc, utcnow
from readingsync.models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


class IdempotencyConflictError(Exception):
	"""A key was reused for a different request"""


def is_valid_key(key: str) -> bool:
	return bool(IDEMPOTENCY_KEY_PATTERN.match(key))


class IdempotencyService:
	def __init__(self, session: AsyncSession):
		self.session = session

	@staticmethod
	def hash_request(payload: Any) -> str:
		"""Stable hash of a JSON-compatible request body"""
		canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
		return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

	async def lookup(
			self,
			tenant_id: UUID,
			key: str,
			request_path: str,
			request_hash: str
	) -> Optional[IdempotencyRecord]:
		"""Cached response for a key, or None on a miss. Expired records count as misses."""
		result = await self.session.execute(
			select(IdempotencyRecord).where(
				IdempotencyRecord.tenant_id == tenant_id,
				IdempotencyRecord.key == key
			)
		)
		record = result.scalar_one_or_none()
		if record is None:
			return None

		if as_utc(record.expires_at) <= utcnow():
			logger.info(f"Idempotency key {key} expired, treating as new request")
			await self.session.delete(record)
			await self.session.commit()
			return None

		if record.request_path != request_path:
			raise IdempotencyConflictError(
				f"Idempotency key was used for {record.request_path}, not {request_path}"
			)
		if record.request_hash != request_hash:
			raise IdempotencyConflictError("Idempotency key was used with a different request body")

		logger.info(f"Idempotent replay for key {key} on {request_path}")
		return record

	async def store(
			self,
			tenant_id: UUID,
			key: str,
			*,
			scope: str,
			request_path: str,
			request_hash: str,
			status_code: int,
			response_body: str,
			ttl_seconds: int,
			reference: Optional[str] = None
	) -> IdempotencyRecord:
		"""Cache a response. A concurrent writer that got there first wins."""
		record = IdempotencyRecord(
			tenant_id=tenant_id,
			key=key,
			scope=scope,
			request_path=request_path,
			request_hash=request_hash,
			reference=reference,
			status_code=status_code,
			response_body=response_body,
			expires_at=utcnow() + timedelta(seconds=ttl_seconds),
		)
		self.session.add(record)
		try:
			await self.session.commit()
		except IntegrityError:
			await self.session.rollback()
			logger.warning(f"Idempotency key {key} was stored concurrently, keeping the first response")
			result = await self.session.execute(
				select(IdempotencyRecord).where(
					IdempotencyRecord.tenant_id == tenant_id,
					IdempotencyRecord.key == key
				)
			)
			return result.scalar_one()
		return record

	async def find_batch(self, tenant_id: UUID, client_batch_id: str) -> Optional[IdempotencyRecord]:
		"""Most recent unexpired sync result for a client batch id"""
		result = await self.session.execute(
			select(IdempotencyRecord)
			.where(
				IdempotencyRecord.tenant_id == tenant_id,
				IdempotencyRecord.scope == "sync",
				IdempotencyRecord.reference == client_batch_id,
				IdempotencyRecord.expires_at > utcnow()
			)
			.order_by(IdempotencyRecord.created_at.desc())
			.limit(1)
		)
		return result.scalar_one_or_none()

	async def recent_batches(self, tenant_id: UUID, limit: int = 20) -> List[IdempotencyRecord]:
		result = await self.session.execute(
			select(IdempotencyRecord)
			.where(
				IdempotencyRecord.tenant_id == tenant_id,
				IdempotencyRecord.scope == "sync",
				IdempotencyRecord.expires_at > utcnow()
			)
			.order_by(IdempotencyRecord.created_at.desc())
			.limit(limit)
		)
		return list(result.scalars().all())

	async def purge_expired(self, now: Optional[datetime] = None) -> int:
		"""Delete expired records, returns the number removed"""
		cutoff = now or utcnow()
		result = await self.session.execute(
			delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= cutoff)
		)
		await self.session.commit()
		removed = result.rowcount or 0
		if removed:
			logger.info(f"Purged {removed} expired idempotency keys")
		return removed
