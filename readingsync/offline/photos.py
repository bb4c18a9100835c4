import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, LargeBinary, String, func, select, delete
from sqlalchemy.orm import declarative_base, sessionmaker

from readingsync.offline.exceptions import StorageQuotaError
from readingsync.offline.store import create_sqlite_engine, device_now

logger = logging.getLogger(__name__)

PhotoBase = declarative_base()


class StagedPhotoRecord(PhotoBase):
	__tablename__ = "staged_photos"

	blob_ref = Column(String(64), primary_key=True)
	owner_client_id = Column(String(64), nullable=False, index=True)
	tenant_id = Column(String(64), nullable=False)
	mime_type = Column(String(64), nullable=False)
	size = Column(Integer, nullable=False)
	data = Column(LargeBinary, nullable=False)
	created_at = Column(DateTime, nullable=False, default=device_now)


@dataclass(frozen=True)
class StagedPhoto:
	blob_ref: str
	owner_client_id: str
	tenant_id: str
	mime_type: str
	data: bytes


class PhotoStagingStore:
	"""Photo blobs waiting for their reading to replay, kept apart from the queue database"""

	def __init__(self, path: str, quota_bytes: int):
		self.path = path
		self.quota_bytes = quota_bytes
		self.engine = create_sqlite_engine(path)
		PhotoBase.metadata.create_all(self.engine)
		self.Session = sessionmaker(self.engine, expire_on_commit=False)

	def close(self):
		self.engine.dispose()

	def usage_bytes(self) -> int:
		with self.Session() as session:
			return session.scalar(select(func.coalesce(func.sum(StagedPhotoRecord.size), 0))) or 0

	def stage(self, data: bytes, owner_client_id: str, tenant_id: str, mime_type: str = "image/jpeg") -> str:
		"""Store a photo and return its blob reference; raises StorageQuotaError when it does not fit"""
		with self.Session.begin() as session:
			used = session.scalar(select(func.coalesce(func.sum(StagedPhotoRecord.size), 0))) or 0
			if used + len(data) > self.quota_bytes:
				raise StorageQuotaError(
					f"Staging {len(data)} bytes would exceed the photo quota "
					f"({used}/{self.quota_bytes} bytes used)"
				)
			blob_ref = uuid.uuid4().hex
			session.add(StagedPhotoRecord(
				blob_ref=blob_ref,
				owner_client_id=owner_client_id,
				tenant_id=str(tenant_id),
				mime_type=mime_type,
				size=len(data),
				data=data,
			))

		logger.info(f"Staged photo {blob_ref} ({len(data)} bytes) for reading {owner_client_id}")
		return blob_ref

	def get(self, blob_ref: str) -> Optional[StagedPhoto]:
		with self.Session() as session:
			record = session.get(StagedPhotoRecord, blob_ref)
			if record is None:
				return None
			return StagedPhoto(
				blob_ref=record.blob_ref,
				owner_client_id=record.owner_client_id,
				tenant_id=record.tenant_id,
				mime_type=record.mime_type,
				data=record.data,
			)

	def release(self, blob_ref: str) -> bool:
		"""Delete a photo once its reading is stored server-side"""
		with self.Session.begin() as session:
			result = session.execute(delete(StagedPhotoRecord).where(StagedPhotoRecord.blob_ref == blob_ref))
		return bool(result.rowcount)

	def count(self) -> int:
		with self.Session() as session:
			return session.scalar(select(func.count()).select_from(StagedPhotoRecord)) or 0
