"""
Message bus between foreground pages and the background replay context.

Messages are delivered to every other endpoint on the channel. A request
waits for the reply carrying its correlation id, or gives up after a timeout.
"""
import asyncio
import enum
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MessageType(str, enum.Enum):
	AUTH_STATE_UPDATE = "auth_state_update"
	AUTH_STATE_CLEAR = "auth_state_clear"
	TOKEN_REFRESH_REQUEST = "token_refresh_request"
	TOKEN_REFRESH_RESPONSE = "token_refresh_response"
	TRIGGER_SYNC = "trigger_sync"
	ACTIVATE = "activate"
	ACTIVATED = "activated"
	PHOTO_SKIPPED = "photo_skipped"
	SYNC_COMPLETE = "sync_complete"


class ChannelMessage(BaseModel):
	type: MessageType
	payload: Dict[str, Any] = Field(default_factory=dict)
	correlation_id: Optional[str] = None
	sender: Optional[str] = None


Handler = Callable[[ChannelMessage], Awaitable[None]]


class CrossContextChannel:
	def __init__(self):
		self._endpoints: List["ChannelEndpoint"] = []
		self._pending: Dict[str, asyncio.Future] = {}
		self._tasks: Set[asyncio.Task] = set()

	def endpoint(self, role: str) -> "ChannelEndpoint":
		"""Attach a new participant; role is 'foreground' or 'background'"""
		endpoint = ChannelEndpoint(self, role)
		self._endpoints.append(endpoint)
		return endpoint

	def _spawn(self, coro):
		task = asyncio.create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	def detach(self, endpoint: "ChannelEndpoint"):
		if endpoint in self._endpoints:
			self._endpoints.remove(endpoint)

	async def _deliver(self, sender: "ChannelEndpoint", message: ChannelMessage):
		if message.correlation_id and message.correlation_id in self._pending:
			future = self._pending[message.correlation_id]
			if not future.done():
				future.set_result(message)
			return

		for endpoint in list(self._endpoints):
			if endpoint is sender:
				continue
			await endpoint._dispatch(message)


class ChannelEndpoint:
	def __init__(self, channel: CrossContextChannel, role: str):
		self.channel = channel
		self.role = role
		self.name = f"{role}-{uuid.uuid4().hex[:8]}"
		self._handlers: List[Handler] = []

	def subscribe(self, handler: Handler) -> Callable[[], None]:
		self._handlers.append(handler)

		def unsubscribe():
			if handler in self._handlers:
				self._handlers.remove(handler)
		return unsubscribe

	async def post(self, message_type: MessageType, payload: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
		message = ChannelMessage(
			type=message_type,
			payload=payload or {},
			correlation_id=correlation_id,
			sender=self.name,
		)
		await self.channel._deliver(self, message)

	async def request(
			self,
			message_type: MessageType,
			payload: Optional[Dict[str, Any]] = None,
			timeout: float = 5.0
	) -> Optional[ChannelMessage]:
		"""Post a message and wait for the reply; None on timeout"""
		correlation_id = uuid.uuid4().hex
		future = asyncio.get_running_loop().create_future()
		self.channel._pending[correlation_id] = future
		message = ChannelMessage(
			type=message_type,
			payload=payload or {},
			correlation_id=correlation_id,
			sender=self.name,
		)
		# handlers run as tasks, bounded by the timeout
		for endpoint in list(self.channel._endpoints):
			if endpoint is not self:
				self.channel._spawn(endpoint._dispatch(message))
		try:
			return await asyncio.wait_for(future, timeout)
		except asyncio.TimeoutError:
			logger.warning(f"{message_type.value} from {self.name} got no reply within {timeout}s")
			return None
		finally:
			self.channel._pending.pop(correlation_id, None)

	async def reply(self, request: ChannelMessage, message_type: MessageType, payload: Optional[Dict[str, Any]] = None):
		await self.post(message_type, payload, correlation_id=request.correlation_id)

	async def _dispatch(self, message: ChannelMessage):
		for handler in list(self._handlers):
			try:
				await handler(message)
			except Exception:
				logger.exception(f"{self.name} failed to handle {message.type.value}")

	def close(self):
		self._handlers.clear()
		self.channel.detach(self)
