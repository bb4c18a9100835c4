import asyncio
import contextlib
import enum
import json
import logging
import uuid
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from readingsync.api.v1.websocket import ConnectionManager, manager, tenant_channel
from readingsync.config import settings
from readingsync.core.redis import get_redis
from readingsync.models.base import utcnow
from readingsync.monitoring.metrics import realtime_publish_failures
from readingsync.offline.backoff import compute_retry_delay

logger = logging.getLogger(__name__)

CHANNEL_PATTERN = "tenant:*"


class RealtimeEventType(str, enum.Enum):
	READING_INSERT = "reading.insert"
	READING_UPDATE = "reading.update"
	ANOMALY_DETECTED = "anomaly.detected"


class RedisBroker:
	"""Publishes realtime events to Redis so every API instance can relay them"""

	async def publish(self, channel: str, data: str):
		client = await get_redis()
		await client.publish(channel, data)


class RealtimeFanout:
	"""
	Best-effort event delivery. A failed publish is logged and counted,
	never raised back into the write that produced it.
	"""

	def __init__(self, connections: ConnectionManager, broker=None, origin: Optional[str] = None):
		self.connections = connections
		self.broker = broker
		self.origin = origin or uuid.uuid4().hex
		self.relayed = 0

	def build_message(
			self,
			tenant_id,
			event_type: RealtimeEventType,
			payload: Dict[str, Any],
			user_id=None,
			correlation_id: Optional[str] = None
	) -> Dict[str, Any]:
		return {
			"type": event_type.value,
			"tenant_id": str(tenant_id),
			"timestamp": utcnow().isoformat(),
			"payload": payload,
			"user_id": str(user_id) if user_id else None,
			"correlation_id": correlation_id or uuid.uuid4().hex,
			"origin": self.origin,
		}

	async def publish(
			self,
			tenant_id,
			topic: str,
			event_type: RealtimeEventType,
			payload: Dict[str, Any],
			user_id=None,
			correlation_id: Optional[str] = None
	) -> Dict[str, Any]:
		channel = tenant_channel(tenant_id, topic)
		message = self.build_message(tenant_id, event_type, payload, user_id, correlation_id)

		try:
			await self.connections.broadcast(channel, message)
		except Exception as e:
			realtime_publish_failures.labels(target="local").inc()
			logger.warning(f"Local broadcast of {event_type.value} on {channel} failed: {e}")

		if self.broker is not None:
			try:
				await self.broker.publish(channel, json.dumps(message, default=str))
			except Exception as e:
				realtime_publish_failures.labels(target="broker").inc()
				logger.warning(f"Broker publish of {event_type.value} on {channel} failed: {e}")

		return message

	async def relay(self, channel: str, data) -> bool:
		"""Deliver a message received from the broker to local subscribers"""
		try:
			message = json.loads(data)
		except (TypeError, ValueError) as e:
			logger.warning(f"Ignoring malformed realtime message on {channel}: {e}")
			return False

		if message.get("origin") == self.origin:
			return False
		await self.connections.broadcast(channel, message)
		return True

	async def listen(self, retry_base: float = 1.0, retry_cap: float = 30.0):
		"""Relay broker messages until cancelled, resubscribing whenever the stream drops"""
		failures = 0
		while True:
			relayed = self.relayed
			try:
				await self._listen_once()
				logger.warning("Realtime relay stream ended, resubscribing")
			except (RedisError, OSError) as e:
				logger.error(f"Realtime relay lost the broker: {e!r}")
			except Exception:
				logger.exception("Realtime relay failed")
			if self.relayed > relayed:
				failures = 0
			delay = compute_retry_delay(failures, retry_base, 2.0, retry_cap)
			failures += 1
			logger.info(f"Realtime relay reconnecting in {delay:.1f}s")
			await asyncio.sleep(delay)

	async def _listen_once(self):
		client = await get_redis()
		pubsub = client.pubsub()
		try:
			await pubsub.psubscribe(CHANNEL_PATTERN)
			logger.info(f"Realtime relay listening on {CHANNEL_PATTERN}")
			async for message in pubsub.listen():
				if message.get("type") != "pmessage":
					continue
				self.relayed += 1
				await self.relay(message["channel"], message["data"])
		finally:
			with contextlib.suppress(RedisError, OSError):
				await pubsub.punsubscribe(CHANNEL_PATTERN)
				await pubsub.aclose()


_fanout: Optional[RealtimeFanout] = None


def get_fanout() -> RealtimeFanout:
	"""Process-wide fanout, used as a FastAPI dependency"""
	global _fanout
	if _fanout is None:
		broker = RedisBroker() if settings.REALTIME_USE_REDIS else None
		_fanout = RealtimeFanout(manager, broker=broker)
	return _fanout
