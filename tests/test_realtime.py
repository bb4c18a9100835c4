import asyncio
import json
import uuid

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import RedisError
from starlette.websockets import WebSocketDisconnect

from conftest import FailingBroker, make_token
from readingsync.api.v1.websocket import ConnectionManager, tenant_channel
from readingsync.main import app
from readingsync.monitoring.metrics import realtime_publish_failures
from readingsync.services import realtime
from readingsync.services.realtime import RealtimeEventType, RealtimeFanout


class FakeWebSocket:
	def __init__(self, dead: bool = False):
		self.sent = []
		self.dead = dead

	async def send_json(self, message):
		if self.dead:
			raise RuntimeError("socket closed")
		self.sent.append(message)


def test_tenant_channel_names():
	tenant_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
	assert tenant_channel(tenant_id, "readings") == "tenant:00000000-0000-0000-0000-000000000001:readings"
	assert tenant_channel(tenant_id, "anomalies").endswith(":anomalies")


@pytest.mark.asyncio
async def test_broadcast_only_reaches_channel_subscribers():
	connections = ConnectionManager()
	subscriber = FakeWebSocket()
	bystander = FakeWebSocket()
	connections.subscribe(subscriber, "tenant:a:readings")
	connections.subscribe(bystander, "tenant:b:readings")

	delivered = await connections.broadcast("tenant:a:readings", {"type": "reading.insert"})
	assert delivered == 1
	assert subscriber.sent == [{"type": "reading.insert"}]
	assert bystander.sent == []


@pytest.mark.asyncio
async def test_broadcast_drops_dead_sockets():
	connections = ConnectionManager()
	connections.subscribe(FakeWebSocket(dead=True), "tenant:a:readings")
	live = FakeWebSocket()
	connections.subscribe(live, "tenant:a:readings")

	assert await connections.broadcast("tenant:a:readings", {"n": 1}) == 1
	assert connections.subscriber_count("tenant:a:readings") == 1


@pytest.mark.asyncio
async def test_publish_builds_event_envelope(broker):
	connections = ConnectionManager()
	socket = FakeWebSocket()
	tenant_id = uuid.uuid4()
	user_id = uuid.uuid4()
	connections.subscribe(socket, tenant_channel(tenant_id, "readings"))
	fanout = RealtimeFanout(connections, broker=broker, origin="api-1")

	message = await fanout.publish(tenant_id, "readings", RealtimeEventType.READING_INSERT, {"reading_id": "r-1"}, user_id)

	assert socket.sent == [message]
	assert message["type"] == "reading.insert"
	assert message["tenant_id"] == str(tenant_id)
	assert message["user_id"] == str(user_id)
	assert message["origin"] == "api-1"
	assert message["correlation_id"]
	assert broker.published == [(tenant_channel(tenant_id, "readings"), message)]


@pytest.mark.asyncio
async def test_publish_swallows_broker_failure():
	connections = ConnectionManager()
	socket = FakeWebSocket()
	connections.subscribe(socket, "tenant:t:readings")
	fanout = RealtimeFanout(connections, broker=FailingBroker())
	before = realtime_publish_failures.labels(target="broker")._value.get()

	await fanout.publish("t", "readings", RealtimeEventType.READING_INSERT, {})

	assert len(socket.sent) == 1
	assert realtime_publish_failures.labels(target="broker")._value.get() == before + 1


@pytest.mark.asyncio
async def test_relay_skips_own_messages():
	connections = ConnectionManager()
	socket = FakeWebSocket()
	connections.subscribe(socket, "tenant:t:readings")
	fanout = RealtimeFanout(connections, origin="api-1")

	own = json.dumps({"type": "reading.insert", "origin": "api-1"})
	foreign = json.dumps({"type": "reading.insert", "origin": "api-2"})

	assert await fanout.relay("tenant:t:readings", own) is False
	assert await fanout.relay("tenant:t:readings", foreign) is True
	assert await fanout.relay("tenant:t:readings", "not json") is False
	assert socket.sent == [{"type": "reading.insert", "origin": "api-2"}]


class FakePubSub:
	def __init__(self, messages):
		self.messages = messages
		self.closed = False

	async def psubscribe(self, pattern):
		self.pattern = pattern

	async def punsubscribe(self, pattern):
		pass

	async def aclose(self):
		self.closed = True

	async def listen(self):
		for message in self.messages:
			yield message
		await asyncio.Event().wait()


class FakeRedis:
	def __init__(self, pubsub):
		self._pubsub = pubsub

	def pubsub(self):
		return self._pubsub


@pytest.mark.asyncio
async def test_relay_reconnects_after_broker_failure(monkeypatch):
	connections = ConnectionManager()
	socket = FakeWebSocket()
	connections.subscribe(socket, "tenant:t:readings")
	fanout = RealtimeFanout(connections, origin="api-1")

	pubsub = FakePubSub([
		{"type": "psubscribe", "channel": "tenant:*", "data": 1},
		{"type": "pmessage", "channel": "tenant:t:readings", "data": json.dumps({"origin": "api-2"})},
	])
	attempts = []

	async def flaky_get_redis():
		attempts.append(1)
		if len(attempts) == 1:
			raise RedisError("Connection refused")
		return FakeRedis(pubsub)

	monkeypatch.setattr(realtime, "get_redis", flaky_get_redis)

	task = asyncio.create_task(fanout.listen(retry_base=0.0))
	for _ in range(50):
		if socket.sent:
			break
		await asyncio.sleep(0)
	task.cancel()
	with pytest.raises(asyncio.CancelledError):
		await task

	assert len(attempts) == 2
	assert socket.sent == [{"origin": "api-2"}]
	assert fanout.relayed == 1
	assert pubsub.closed


def test_websocket_rejects_invalid_token():
	client = TestClient(app)
	with pytest.raises(WebSocketDisconnect) as exc_info:
		with client.websocket_connect("/api/v1/ws/readings?token=garbage") as websocket:
			websocket.receive_json()
	assert exc_info.value.code == 1008


def test_websocket_ping_pong():
	token = make_token(uuid.uuid4(), uuid.uuid4())
	client = TestClient(app)
	with client.websocket_connect(f"/api/v1/ws/readings?token={token}") as websocket:
		websocket.send_json({"type": "ping"})
		assert websocket.receive_json() == {"type": "pong"}
