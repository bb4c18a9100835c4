import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-secret-key-not-for-production"
os.environ["REALTIME_USE_REDIS"] = "false"

import json
import uuid
from typing import AsyncGenerator, Dict, List

import pytest
from botocore.exceptions import ClientError
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from readingsync import models  # noqa: F401
from readingsync.api.v1.websocket import ConnectionManager
from readingsync.auth.jwt import auth_service
from readingsync.database import Base, get_session
from readingsync.main import app
from readingsync.schemas.auth import UserRole
from readingsync.services.anomaly_service import thresholds_cache
from readingsync.services.realtime import RealtimeFanout, get_fanout
from readingsync.services.storage_service import StorageService, get_storage_service

TEST_DATABASE_URL = "sqlite+aiosqlite://"


class RecordingBroker:
	"""Keeps every published event instead of sending it to Redis"""

	def __init__(self):
		self.published: List[tuple] = []

	async def publish(self, channel: str, data: str):
		self.published.append((channel, json.loads(data)))

	def events(self, event_type: str = None) -> List[Dict]:
		return [message for _, message in self.published if event_type is None or message["type"] == event_type]


class FailingBroker:
	async def publish(self, channel: str, data: str):
		raise ConnectionError("redis is down")


class FakeS3Client:
	def __init__(self, fail_uploads: bool = False):
		self.objects: Dict[str, dict] = {}
		self.buckets = set()
		self.fail_uploads = fail_uploads

	def head_bucket(self, Bucket):
		if Bucket not in self.buckets:
			raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")

	def create_bucket(self, Bucket, **kwargs):
		self.buckets.add(Bucket)

	def put_object(self, Bucket, Key, Body, ContentType, Metadata):
		if self.fail_uploads:
			raise ClientError({"Error": {"Code": "503", "Message": "Slow Down"}}, "PutObject")
		self.objects[Key] = {"body": Body, "content_type": ContentType, "metadata": Metadata}

	def generate_presigned_url(self, operation, Params, ExpiresIn):
		return f"https://s3.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


@pytest.fixture
async def engine():
	"""Create test database engine"""
	engine = create_async_engine(
		TEST_DATABASE_URL,
		connect_args={"check_same_thread": False},
		poolclass=StaticPool,
	)

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)

	yield engine

	await engine.dispose()


@pytest.fixture
def session_factory(engine):
	return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
	"""Create a test database session"""
	async with session_factory() as session:
		yield session


@pytest.fixture(autouse=True)
def clear_thresholds_cache():
	thresholds_cache.invalidate()
	yield
	thresholds_cache.invalidate()


@pytest.fixture
def broker() -> RecordingBroker:
	return RecordingBroker()


@pytest.fixture
def connections() -> ConnectionManager:
	return ConnectionManager()


@pytest.fixture
def fanout(connections, broker) -> RealtimeFanout:
	return RealtimeFanout(connections, broker=broker, origin="test-instance")


@pytest.fixture
def s3_client() -> FakeS3Client:
	return FakeS3Client()


@pytest.fixture
def storage(s3_client) -> StorageService:
	return StorageService(s3_client=s3_client, bucket_name="test-photos")


@pytest.fixture
async def client(session_factory, fanout, storage) -> AsyncGenerator[AsyncClient, None]:
	"""Create a test client"""

	async def override_get_session():
		async with session_factory() as session:
			yield session

	app.dependency_overrides[get_session] = override_get_session
	app.dependency_overrides[get_fanout] = lambda: fanout
	app.dependency_overrides[get_storage_service] = lambda: storage

	async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
		yield client

	app.dependency_overrides.clear()


@pytest.fixture
def tenant_id() -> uuid.UUID:
	return uuid.uuid4()


@pytest.fixture
def other_tenant_id() -> uuid.UUID:
	return uuid.uuid4()


@pytest.fixture
def user_id() -> uuid.UUID:
	return uuid.uuid4()


@pytest.fixture
def customer_id() -> uuid.UUID:
	return uuid.uuid4()


def make_token(user_id, tenant_id, role: UserRole = UserRole.FIELD_READER) -> str:
	claims = {"sub": user_id, "role": role.value}
	if tenant_id is not None:
		claims["tenant_id"] = tenant_id
	return auth_service.create_access_token(claims)


@pytest.fixture
def auth_token(user_id, tenant_id) -> str:
	"""Field reader token bound to the test tenant"""
	return make_token(user_id, tenant_id)


@pytest.fixture
def manager_token(tenant_id) -> str:
	return make_token(uuid.uuid4(), tenant_id, UserRole.MANAGER)


@pytest.fixture
def auth_headers(auth_token) -> Dict[str, str]:
	return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def manager_headers(manager_token) -> Dict[str, str]:
	return {"Authorization": f"Bearer {manager_token}"}
