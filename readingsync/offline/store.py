"""
Durable on-device queue of readings waiting to reach the server.

Every entry survives restarts. Replay order follows `sequence`; a retried entry moves to the tail.
"""
import enum
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
	Boolean, Column, Date, DateTime, Float, Integer, JSON, String, Text,
	create_engine, func, select, update, delete,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

QueueBase = declarative_base()


def device_now() -> datetime:
	"""Naive UTC timestamp; SQLite stores datetimes without a zone"""
	return datetime.now(timezone.utc).replace(tzinfo=None)


class QueueStatus(str, enum.Enum):
	PENDING = "pending"
	SYNCING = "syncing"
	SYNCED = "synced"
	FAILED = "failed"


class QueuedReading(QueueBase):
	__tablename__ = "queued_readings"

	id = Column(Integer, primary_key=True, autoincrement=True)
	client_id = Column(String(64), unique=True, nullable=False)
	tenant_id = Column(String(64), nullable=False, index=True)
	customer_id = Column(String(64), nullable=False)
	reading_value = Column(Float, nullable=False)
	reading_date = Column(Date, nullable=False)
	reading_metadata = Column("metadata", JSON, nullable=True)
	photo_blob_ref = Column(String(64), nullable=True)
	status = Column(String(16), nullable=False, default=QueueStatus.PENDING.value, index=True)
	retries = Column(Integer, nullable=False, default=0)
	idempotency_key = Column(String(64), nullable=False)
	sequence = Column(Integer, nullable=False, index=True)
	next_attempt_at = Column(DateTime, nullable=True)
	last_error = Column(Text, nullable=True)
	server_reading_id = Column(String(64), nullable=True)
	created_at = Column(DateTime, nullable=False, default=device_now)
	updated_at = Column(DateTime, nullable=False, default=device_now, onupdate=device_now)
	synced_at = Column(DateTime, nullable=True)

	def to_payload(self) -> Dict[str, Any]:
		"""Body of the single-reading POST"""
		payload = {
			"customer_id": self.customer_id,
			"reading_value": self.reading_value,
			"reading_date": self.reading_date.isoformat(),
			"client_id": self.client_id,
		}
		if self.reading_metadata:
			payload["metadata"] = dict(self.reading_metadata)
		return payload


class AuthStateRecord(QueueBase):
	"""Single row holding the credentials the background context replays with"""
	__tablename__ = "auth_state"

	id = Column(Integer, primary_key=True)
	access_token = Column(Text, nullable=True)
	refresh_token = Column(Text, nullable=True)
	tenant_id = Column(String(64), nullable=True)
	user_id = Column(String(64), nullable=True)
	expires_at = Column(Float, nullable=True)  # epoch seconds
	updated_at = Column(DateTime, nullable=False, default=device_now, onupdate=device_now)


class SyncLogEntry(QueueBase):
	__tablename__ = "sync_logs"

	id = Column(Integer, primary_key=True, autoincrement=True)
	action = Column(String(32), nullable=False)
	success = Column(Boolean, nullable=False)
	error = Column(Text, nullable=True)
	details = Column(JSON, nullable=True)
	created_at = Column(DateTime, nullable=False, default=device_now, index=True)


@dataclass
class QueueStats:
	pending: int = 0
	syncing: int = 0
	synced: int = 0
	failed: int = 0
	pending_photos: int = 0
	oldest_pending_at: Optional[datetime] = None
	last_attempt_at: Optional[datetime] = None
	last_attempt_success: Optional[bool] = None


def derive_idempotency_key(
		client_id: str,
		tenant_id: str,
		customer_id: str,
		reading_value: float,
		reading_date: date
) -> str:
	"""Stable key computed once at enqueue; every replay of the entry sends the same one"""
	material = f"{client_id}|{tenant_id}|{customer_id}|{reading_value!r}|{reading_date.isoformat()}"
	return hashlib.sha256(material.encode("utf-8")).hexdigest()


def create_sqlite_engine(path: str) -> Engine:
	if path == ":memory:":
		return create_engine(
			"sqlite://",
			connect_args={"check_same_thread": False},
			poolclass=StaticPool,
		)
	Path(path).parent.mkdir(parents=True, exist_ok=True)
	return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


class LocalQueueStore:
	def __init__(self, path: str):
		self.path = path
		self.engine = create_sqlite_engine(path)
		QueueBase.metadata.create_all(self.engine)
		self.Session = sessionmaker(self.engine, expire_on_commit=False)
		logger.info(f"Reading queue opened at {path}")

	def close(self):
		self.engine.dispose()

	@staticmethod
	def _next_sequence(session) -> int:
		current = session.scalar(select(func.max(QueuedReading.sequence)))
		return (current or 0) + 1

	# Queue entries

	def enqueue(
			self,
			tenant_id: str,
			customer_id: str,
			reading_value: float,
			reading_date: date,
			metadata: Optional[Dict[str, Any]] = None,
			photo_blob_ref: Optional[str] = None,
			client_id: Optional[str] = None
	) -> QueuedReading:
		"""Durably append a reading to the tail of the queue"""
		client_id = client_id or uuid.uuid4().hex
		with self.Session.begin() as session:
			entry = QueuedReading(
				client_id=client_id,
				tenant_id=str(tenant_id),
				customer_id=str(customer_id),
				reading_value=reading_value,
				reading_date=reading_date,
				reading_metadata=metadata or None,
				photo_blob_ref=photo_blob_ref,
				status=QueueStatus.PENDING.value,
				retries=0,
				idempotency_key=derive_idempotency_key(
					client_id, str(tenant_id), str(customer_id), reading_value, reading_date
				),
				sequence=self._next_sequence(session),
			)
			session.add(entry)

		logger.info(f"Queued reading {client_id} for customer {customer_id} (seq {entry.sequence})")
		return entry

	def get(self, client_id: str) -> Optional[QueuedReading]:
		with self.Session() as session:
			return session.scalar(select(QueuedReading).where(QueuedReading.client_id == client_id))

	def list_pending(self, tenant_id: str, due_before: Optional[datetime] = None) -> List[QueuedReading]:
		"""Pending entries for a tenant in replay order; with due_before, only those whose backoff has elapsed"""
		query = select(QueuedReading).where(
			QueuedReading.tenant_id == str(tenant_id),
			QueuedReading.status == QueueStatus.PENDING.value,
		)
		if due_before is not None:
			query = query.where(
				(QueuedReading.next_attempt_at.is_(None)) | (QueuedReading.next_attempt_at <= due_before)
			)
		with self.Session() as session:
			return list(session.scalars(query.order_by(QueuedReading.sequence, QueuedReading.id)).all())

	def list_failed(self, tenant_id: str) -> List[QueuedReading]:
		with self.Session() as session:
			return list(session.scalars(
				select(QueuedReading)
				.where(QueuedReading.tenant_id == str(tenant_id), QueuedReading.status == QueueStatus.FAILED.value)
				.order_by(QueuedReading.sequence)
			).all())

	def next_due_at(self, tenant_id: str) -> Optional[datetime]:
		"""When the earliest pending entry becomes eligible, None if nothing is pending"""
		with self.Session() as session:
			rows = session.execute(
				select(QueuedReading.next_attempt_at).where(
					QueuedReading.tenant_id == str(tenant_id),
					QueuedReading.status == QueueStatus.PENDING.value,
				)
			).all()
		if not rows:
			return None
		moments = [row[0] for row in rows]
		if any(moment is None for moment in moments):
			return device_now()
		return min(moments)

	def mark_syncing(self, entry_ids: Iterable[int]):
		with self.Session.begin() as session:
			session.execute(
				update(QueuedReading)
				.where(QueuedReading.id.in_(list(entry_ids)))
				.values(status=QueueStatus.SYNCING.value, updated_at=device_now())
			)

	def mark_pending(self, entry_id: int):
		"""Back to pending without counting an attempt"""
		with self.Session.begin() as session:
			session.execute(
				update(QueuedReading)
				.where(QueuedReading.id == entry_id)
				.values(status=QueueStatus.PENDING.value, updated_at=device_now())
			)

	def mark_synced(self, entry_id: int, server_reading_id: Optional[str] = None):
		now = device_now()
		with self.Session.begin() as session:
			session.execute(
				update(QueuedReading)
				.where(QueuedReading.id == entry_id)
				.values(
					status=QueueStatus.SYNCED.value,
					server_reading_id=server_reading_id,
					synced_at=now,
					last_error=None,
					updated_at=now,
				)
			)

	def mark_failed(self, entry_id: int, error: str):
		"""Terminal: the entry stays for manual action and is never replayed automatically"""
		with self.Session.begin() as session:
			session.execute(
				update(QueuedReading)
				.where(QueuedReading.id == entry_id)
				.values(status=QueueStatus.FAILED.value, last_error=error, updated_at=device_now())
			)
		logger.warning(f"Queue entry {entry_id} failed permanently: {error}")

	def requeue(self, entry_id: int, error: str, next_attempt_at: datetime) -> Optional[QueuedReading]:
		"""Count a failed attempt and move the entry to the tail of the queue"""
		with self.Session.begin() as session:
			entry = session.get(QueuedReading, entry_id)
			if entry is None:
				return None
			entry.retries += 1
			entry.status = QueueStatus.PENDING.value
			entry.last_error = error
			entry.next_attempt_at = next_attempt_at
			entry.sequence = self._next_sequence(session)

		logger.info(f"Queue entry {entry_id} requeued (retry #{entry.retries}) until {next_attempt_at.isoformat()}")
		return entry

	def reset_failed(self, client_id: str) -> bool:
		"""Manual retry of a failed entry"""
		with self.Session.begin() as session:
			entry = session.scalar(
				select(QueuedReading).where(
					QueuedReading.client_id == client_id,
					QueuedReading.status == QueueStatus.FAILED.value,
				)
			)
			if entry is None:
				return False
			entry.status = QueueStatus.PENDING.value
			entry.next_attempt_at = None
			entry.sequence = self._next_sequence(session)
		return True

	def recover(self) -> int:
		"""Entries left in syncing by an interrupted pass go back to pending"""
		with self.Session.begin() as session:
			result = session.execute(
				update(QueuedReading)
				.where(QueuedReading.status == QueueStatus.SYNCING.value)
				.values(status=QueueStatus.PENDING.value, updated_at=device_now())
			)
		recovered = result.rowcount or 0
		if recovered:
			logger.info(f"Recovered {recovered} queue entries interrupted mid-sync")
		return recovered

	def purge_synced(self, older_than: datetime) -> int:
		with self.Session.begin() as session:
			result = session.execute(
				delete(QueuedReading).where(
					QueuedReading.status == QueueStatus.SYNCED.value,
					QueuedReading.synced_at < older_than,
				)
			)
		return result.rowcount or 0

	def stats(self, tenant_id: str) -> QueueStats:
		with self.Session() as session:
			counts = dict(session.execute(
				select(QueuedReading.status, func.count(QueuedReading.id))
				.where(QueuedReading.tenant_id == str(tenant_id))
				.group_by(QueuedReading.status)
			).all())
			oldest = session.scalar(
				select(func.min(QueuedReading.created_at)).where(
					QueuedReading.tenant_id == str(tenant_id),
					QueuedReading.status == QueueStatus.PENDING.value,
				)
			)
			pending_photos = session.scalar(
				select(func.count(QueuedReading.id)).where(
					QueuedReading.tenant_id == str(tenant_id),
					QueuedReading.status.in_([QueueStatus.PENDING.value, QueueStatus.SYNCING.value]),
					QueuedReading.photo_blob_ref.is_not(None),
				)
			)
			last_log = session.scalar(
				select(SyncLogEntry).order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(1)
			)

		return QueueStats(
			pending=counts.get(QueueStatus.PENDING.value, 0),
			syncing=counts.get(QueueStatus.SYNCING.value, 0),
			synced=counts.get(QueueStatus.SYNCED.value, 0),
			failed=counts.get(QueueStatus.FAILED.value, 0),
			pending_photos=pending_photos or 0,
			oldest_pending_at=oldest,
			last_attempt_at=last_log.created_at if last_log else None,
			last_attempt_success=last_log.success if last_log else None,
		)

	# Sync log

	def record_attempt(self, action: str, success: bool, error: Optional[str] = None, details: Optional[dict] = None):
		with self.Session.begin() as session:
			session.add(SyncLogEntry(action=action, success=success, error=error, details=details))

	def recent_logs(self, limit: int = 50) -> List[SyncLogEntry]:
		with self.Session() as session:
			return list(session.scalars(
				select(SyncLogEntry).order_by(SyncLogEntry.created_at.desc(), SyncLogEntry.id.desc()).limit(limit)
			).all())

	def purge_logs(self, older_than: datetime) -> int:
		with self.Session.begin() as session:
			result = session.execute(delete(SyncLogEntry).where(SyncLogEntry.created_at < older_than))
		return result.rowcount or 0

	# Auth state

	def load_auth_state(self) -> Optional[AuthStateRecord]:
		with self.Session() as session:
			return session.get(AuthStateRecord, 1)

	def save_auth_state(self, **values) -> AuthStateRecord:
		with self.Session.begin() as session:
			record = session.get(AuthStateRecord, 1)
			if record is None:
				record = AuthStateRecord(id=1)
				session.add(record)
			for name, value in values.items():
				setattr(record, name, value)
		return record

	def clear_auth_state(self):
		with self.Session.begin() as session:
			session.execute(delete(AuthStateRecord))


def retention_cutoff(seconds: int, now: Optional[datetime] = None) -> datetime:
	return (now or device_now()) - timedelta(seconds=seconds)
