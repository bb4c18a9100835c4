from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from typing import Dict, Set
import logging

from readingsync.auth.dependencies import principal_from_token
from readingsync.monitoring.metrics import websocket_connections

router = APIRouter()
logger = logging.getLogger(__name__)

TENANT_TOPICS = ("readings", "anomalies")


def tenant_channel(tenant_id, topic: str) -> str:
	"""Realtime channel name for a tenant topic"""
	return f"tenant:{tenant_id}:{topic}"


class ConnectionManager:
	"""Manage WebSocket connections subscribed to realtime channels"""

	def __init__(self):
		self.active_connections: Dict[str, Set[WebSocket]] = {}

	async def connect(self, websocket: WebSocket, channels):
		await websocket.accept()
		for channel in channels:
			self.subscribe(websocket, channel)
		websocket_connections.inc()

	def subscribe(self, websocket: WebSocket, channel: str):
		if channel not in self.active_connections:
			self.active_connections[channel] = set()
		self.active_connections[channel].add(websocket)

	def disconnect(self, websocket: WebSocket):
		for channel in list(self.active_connections.keys()):
			self.active_connections[channel].discard(websocket)
			if not self.active_connections[channel]:
				del self.active_connections[channel]
		websocket_connections.dec()

	def subscriber_count(self, channel: str) -> int:
		return len(self.active_connections.get(channel, ()))

	async def broadcast(self, channel: str, message: dict) -> int:
		"""Send a message to every subscriber of a channel, returns deliveries"""
		delivered = 0
		disconnected = set()
		for connection in list(self.active_connections.get(channel, ())):
			try:
				await connection.send_json(message)
				delivered += 1
			except (WebSocketDisconnect, RuntimeError) as e:
				logger.debug(f"Dropping dead websocket on {channel}: {e}")
				disconnected.add(connection)

		# Clean up disconnected
		for conn in disconnected:
			self.active_connections.get(channel, set()).discard(conn)
		return delivered


manager = ConnectionManager()


@router.websocket("/readings")
async def readings_stream(
		websocket: WebSocket,
		token: str = Query(...)
):
	"""Live reading and anomaly events for the caller's tenant"""
	user = principal_from_token(token)
	if user is None:
		await websocket.close(code=1008, reason="Invalid token")
		return

	channels = [tenant_channel(user.tenant_id, topic) for topic in TENANT_TOPICS]
	await manager.connect(websocket, channels)
	logger.info(f"User {user.id} subscribed to {channels}")

	try:
		while True:
			data = await websocket.receive_json()
			if data.get("type") == "ping":
				await websocket.send_json({"type": "pong"})
	except WebSocketDisconnect:
		manager.disconnect(websocket)
		logger.info(f"User {user.id} disconnected from realtime stream")
