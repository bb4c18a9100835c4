import asyncio
from datetime import date

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from readingsync.main import app
from readingsync.offline.auth_state import AuthState
from readingsync.offline.channel import MessageType
from readingsync.offline.config import OfflineSettings
from readingsync.offline.context import create_device_runtime
from readingsync.offline.store import QueueStatus


class ToggleTransport(httpx.AsyncBaseTransport):
	"""Routes to the app while online, fails to connect while offline"""

	def __init__(self, inner: httpx.AsyncBaseTransport):
		self.inner = inner
		self.online = True

	async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
		if not self.online:
			raise httpx.ConnectError("network unreachable", request=request)
		return await self.inner.handle_async_request(request)


def device_settings(**overrides) -> OfflineSettings:
	values = dict(
		QUEUE_DB_PATH=":memory:",
		PHOTO_DB_PATH=":memory:",
		RETRY_BASE_SECONDS=0,
		RETRY_JITTER=0,
	)
	values.update(overrides)
	return OfflineSettings(**values)


@pytest.fixture
def transport():
	return ToggleTransport(ASGITransport(app=app))


@pytest.fixture
async def device(client: AsyncClient, transport):
	"""Device runtime talking to the API through the test app; `client` installs the overrides"""
	runtime = create_device_runtime(
		device_settings(),
		client=httpx.AsyncClient(transport=transport, base_url="http://test"),
	)
	yield runtime
	await runtime.close()


@pytest.fixture
def device_auth(auth_token, tenant_id, user_id) -> AuthState:
	return AuthState(access_token=auth_token, tenant_id=str(tenant_id), user_id=str(user_id))


@pytest.mark.asyncio
async def test_offline_reading_reaches_server_once(client: AsyncClient, device, transport, device_auth, auth_headers, broker, tenant_id, customer_id):
	prior = await client.post(
		"/api/v1/readings",
		headers=auth_headers,
		json={"customer_id": str(customer_id), "reading_value": 11900, "reading_date": "2025-01-12"}
	)
	assert prior.status_code == 201

	await device.foreground.set_auth(device_auth)
	transport.online = False
	client_id = await device.foreground.enqueue(str(tenant_id), str(customer_id), 12000, date(2025, 1, 15))

	offline_pass = await device.background.sync_now()
	assert offline_pass.stopped_reason == "offline"
	assert device.store.get(client_id).status == QueueStatus.PENDING.value
	assert device.foreground.stats(str(tenant_id)).pending == 1

	transport.online = True
	online_pass = await device.background.sync_now()
	assert online_pass.synced == 1

	entry = device.store.get(client_id)
	assert entry.status == QueueStatus.SYNCED.value

	reading = await client.get(f"/api/v1/readings/{entry.server_reading_id}", headers=auth_headers)
	assert reading.json()["consumption"] == 100
	assert reading.json()["anomaly_flag"] is False
	assert reading.json()["client_id"] == client_id

	events = [e for e in broker.events("reading.insert") if e["payload"]["reading_value"] == 12000]
	assert len(events) == 1
	assert (f"tenant:{tenant_id}:readings", events[0]) in broker.published

	listing = await client.get("/api/v1/readings", headers=auth_headers)
	assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_lost_acknowledgement_replays_without_duplicate(client: AsyncClient, device, device_auth, auth_headers, tenant_id, customer_id):
	await device.foreground.set_auth(device_auth)
	client_id = await device.foreground.enqueue(str(tenant_id), str(customer_id), 500, date(2025, 2, 1))
	await device.background.sync_now()
	first_server_id = device.store.get(client_id).server_reading_id

	# the response never made it back: the entry is replayed with the same key
	device.store.mark_pending(device.store.get(client_id).id)
	progress = await device.background.sync_now()
	assert progress.synced == 1
	assert device.store.get(client_id).server_reading_id == first_server_id

	listing = await client.get("/api/v1/readings", headers=auth_headers)
	assert listing.json()["total"] == 1


@pytest.mark.asyncio
async def test_background_context_drains_on_trigger(device, device_auth, tenant_id, customer_id):
	completed = asyncio.Event()

	async def on_message(message):
		if message.type == MessageType.SYNC_COMPLETE and message.payload.get("synced"):
			completed.set()

	device.foreground.endpoint.subscribe(on_message)
	await device.foreground.set_auth(device_auth)
	await device.background.start()
	assert await device.foreground.activate(timeout=1.0) is True

	client_id = await device.foreground.enqueue(str(tenant_id), str(customer_id), 42, date(2025, 3, 1))
	await asyncio.wait_for(completed.wait(), timeout=5)

	assert device.store.get(client_id).status == QueueStatus.SYNCED.value
	await device.background.stop()
	assert device.background.running is False


@pytest.mark.asyncio
async def test_activate_without_background_context(device):
	assert await device.foreground.activate(timeout=0.1) is False


@pytest.mark.asyncio
async def test_expired_token_refreshed_through_foreground(client: AsyncClient, transport, device_auth, auth_headers, tenant_id, customer_id):
	async def refresher(current):
		return device_auth

	runtime = create_device_runtime(
		device_settings(),
		client=httpx.AsyncClient(transport=transport, base_url="http://test"),
		token_refresher=refresher,
	)
	try:
		await runtime.foreground.set_auth(AuthState(access_token="expired-token", tenant_id=str(tenant_id)))
		client_id = await runtime.foreground.enqueue(str(tenant_id), str(customer_id), 10, date(2025, 1, 1))

		progress = await runtime.background.sync_now()
		assert progress.synced == 1
		assert runtime.auth.get().access_token == device_auth.access_token
		assert runtime.store.get(client_id).status == QueueStatus.SYNCED.value
	finally:
		await runtime.close()


@pytest.mark.asyncio
async def test_photo_over_quota_is_skipped(client: AsyncClient, transport, device_auth, tenant_id, customer_id):
	runtime = create_device_runtime(
		device_settings(PHOTO_QUOTA_BYTES=10),
		client=httpx.AsyncClient(transport=transport, base_url="http://test"),
	)
	skipped = []

	async def on_message(message):
		if message.type == MessageType.PHOTO_SKIPPED:
			skipped.append(message.payload["client_id"])

	runtime.channel.endpoint("observer").subscribe(on_message)
	try:
		await runtime.foreground.set_auth(device_auth)
		client_id = await runtime.foreground.enqueue(
			str(tenant_id), str(customer_id), 10, date(2025, 1, 1), photo=b"x" * 100
		)
		assert skipped == [client_id]
		assert runtime.store.get(client_id).photo_blob_ref is None

		progress = await runtime.background.sync_now()
		assert progress.synced == 1
	finally:
		await runtime.close()


@pytest.mark.asyncio
async def test_photo_travels_with_reading(client: AsyncClient, device, device_auth, auth_headers, s3_client, tenant_id, customer_id):
	await device.foreground.set_auth(device_auth)
	client_id = await device.foreground.enqueue(
		str(tenant_id), str(customer_id), 10, date(2025, 1, 1), photo=b"\xff\xd8" + b"1" * 64
	)
	assert device.photos.count() == 1

	await device.background.sync_now()

	entry = device.store.get(client_id)
	reading = await client.get(f"/api/v1/readings/{entry.server_reading_id}", headers=auth_headers)
	assert reading.json()["photo_path"] == f"readings/{tenant_id}/{client_id}/photo.jpg"
	assert reading.json()["photo_path"] in s3_client.objects
	assert device.photos.count() == 0


@pytest.mark.asyncio
async def test_rejected_reading_kept_for_manual_retry(client: AsyncClient, device, device_auth, tenant_id):
	await device.foreground.set_auth(device_auth)
	client_id = await device.foreground.enqueue(str(tenant_id), "not-a-customer-uuid", 10, date(2025, 1, 1))

	progress = await device.background.sync_now()
	assert progress.failed == 1
	assert [e.client_id for e in device.foreground.failed(str(tenant_id))] == [client_id]
	assert "400" in device.store.get(client_id).last_error

	assert await device.foreground.retry_failed(client_id) is True
	assert device.foreground.stats(str(tenant_id)).pending == 1
	assert await device.foreground.retry_failed(client_id) is False
