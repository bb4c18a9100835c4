"""
Device runtime: the background context that owns replay and the foreground
API pages use to capture readings.
"""
import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from readingsync.offline.auth_state import AuthState, AuthStateProvider
from readingsync.offline.backoff import RetryPolicy
from readingsync.offline.channel import ChannelEndpoint, ChannelMessage, CrossContextChannel, MessageType
from readingsync.offline.config import OfflineSettings, get_offline_settings
from readingsync.offline.exceptions import StorageQuotaError
from readingsync.offline.photos import PhotoStagingStore
from readingsync.offline.plugins import (
	AuthHeaderPlugin,
	IdempotencyPlugin,
	PhotoUploadPlugin,
	SyncPlugin,
	TelemetryPlugin,
)
from readingsync.offline.store import LocalQueueStore, QueuedReading, QueueStats, device_now
from readingsync.offline.sync_manager import SyncProgress, SyncQueueManager

logger = logging.getLogger(__name__)

TokenRefresher = Callable[[Optional[AuthState]], Awaitable[Optional[AuthState]]]


class BackgroundContext:
	"""Runs replay passes when triggered, when connectivity returns and when backoff expires"""

	def __init__(
			self,
			manager: SyncQueueManager,
			endpoint: ChannelEndpoint,
			idle_poll_seconds: float = 60.0
	):
		self.manager = manager
		self.endpoint = endpoint
		self.idle_poll_seconds = idle_poll_seconds
		self._wake = asyncio.Event()
		self._task: Optional[asyncio.Task] = None
		self._unsubscribe = None
		self.last_progress: Optional[SyncProgress] = None

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	async def start(self):
		recovered = self.manager.store.recover()
		if recovered:
			self._wake.set()
		self._unsubscribe = self.endpoint.subscribe(self._on_message)
		self._task = asyncio.create_task(self._run())
		logger.info("Background sync context started")

	async def stop(self):
		if self._unsubscribe:
			self._unsubscribe()
			self._unsubscribe = None
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		logger.info("Background sync context stopped")

	def notify_online(self):
		"""Connectivity came back"""
		self._wake.set()

	async def sync_now(self) -> SyncProgress:
		progress = await self.manager.drain()
		self.last_progress = progress
		await self.endpoint.post(MessageType.SYNC_COMPLETE, asdict(progress))
		return progress

	async def _on_message(self, message: ChannelMessage):
		if message.type == MessageType.ACTIVATE:
			await self.endpoint.reply(message, MessageType.ACTIVATED, {"running": self.running})
		elif message.type in (MessageType.TRIGGER_SYNC, MessageType.AUTH_STATE_UPDATE):
			self._wake.set()
		elif message.type == MessageType.AUTH_STATE_CLEAR:
			logger.info("Credentials cleared, replay paused")

	def _seconds_until_due(self) -> float:
		state = self.manager.auth.get()
		if state is None or not state.tenant_id:
			return self.idle_poll_seconds
		due = self.manager.store.next_due_at(state.tenant_id)
		if due is None:
			return self.idle_poll_seconds
		return max(0.0, min((due - device_now()).total_seconds(), self.idle_poll_seconds))

	async def _run(self):
		while True:
			try:
				await asyncio.wait_for(self._wake.wait(), timeout=self._seconds_until_due())
			except asyncio.TimeoutError:
				pass
			self._wake.clear()
			try:
				await self.sync_now()
			except Exception as e:
				logger.error(f"Background sync pass error: {e}")


class OfflineReadings:
	"""
	What a page may do: capture readings, read queue stats, ask for a sync and
	hand over credentials. Replay itself only ever happens in the background context.
	"""

	def __init__(
			self,
			store: LocalQueueStore,
			photos: PhotoStagingStore,
			endpoint: ChannelEndpoint,
			plugins: Sequence[SyncPlugin] = (),
			token_refresher: Optional[TokenRefresher] = None
	):
		self.store = store
		self.photos = photos
		self.endpoint = endpoint
		self.plugins = list(plugins)
		self.token_refresher = token_refresher
		self._unsubscribe = endpoint.subscribe(self._on_message)

	async def enqueue(
			self,
			tenant_id: str,
			customer_id: str,
			reading_value: float,
			reading_date: date,
			metadata: Optional[Dict[str, Any]] = None,
			photo: Optional[bytes] = None,
			photo_mime_type: str = "image/jpeg"
	) -> str:
		"""Durably queue a reading and return its client id"""
		client_id = uuid.uuid4().hex
		blob_ref = None
		if photo:
			try:
				blob_ref = self.photos.stage(photo, client_id, tenant_id, photo_mime_type)
			except StorageQuotaError as e:
				logger.warning(f"Photo for {client_id} not staged: {e}")
				await self.endpoint.post(MessageType.PHOTO_SKIPPED, {"client_id": client_id, "reason": str(e)})

		entry = self.store.enqueue(
			tenant_id, customer_id, reading_value, reading_date,
			metadata=metadata, photo_blob_ref=blob_ref, client_id=client_id,
		)
		for plugin in self.plugins:
			await plugin.before_enqueue(entry)

		await self.endpoint.post(MessageType.TRIGGER_SYNC)
		return client_id

	def stats(self, tenant_id: str) -> QueueStats:
		return self.store.stats(tenant_id)

	def failed(self, tenant_id: str) -> List[QueuedReading]:
		return self.store.list_failed(tenant_id)

	async def retry_failed(self, client_id: str) -> bool:
		"""Put a failed entry back in the queue after the user fixed or confirmed it"""
		if not self.store.reset_failed(client_id):
			return False
		await self.endpoint.post(MessageType.TRIGGER_SYNC)
		return True

	async def request_sync(self):
		await self.endpoint.post(MessageType.TRIGGER_SYNC)

	async def set_auth(self, state: AuthState):
		self.store.save_auth_state(**state.model_dump())
		await self.endpoint.post(MessageType.AUTH_STATE_UPDATE, {"tenant_id": state.tenant_id})

	async def clear_auth(self):
		self.store.clear_auth_state()
		await self.endpoint.post(MessageType.AUTH_STATE_CLEAR)

	async def activate(self, timeout: float = 5.0) -> bool:
		"""Handshake with the background context; False if none is running"""
		reply = await self.endpoint.request(MessageType.ACTIVATE, timeout=timeout)
		return reply is not None and reply.type == MessageType.ACTIVATED

	async def _on_message(self, message: ChannelMessage):
		if message.type != MessageType.TOKEN_REFRESH_REQUEST or self.token_refresher is None:
			return

		current = AuthStateProvider(self.store).get()
		refreshed = await self.token_refresher(current)
		if refreshed is None:
			await self.endpoint.reply(message, MessageType.TOKEN_REFRESH_RESPONSE, {})
			return
		await self.endpoint.reply(message, MessageType.TOKEN_REFRESH_RESPONSE, refreshed.model_dump())

	def close(self):
		self._unsubscribe()


@dataclass
class DeviceRuntime:
	store: LocalQueueStore
	photos: PhotoStagingStore
	channel: CrossContextChannel
	auth: AuthStateProvider
	telemetry: TelemetryPlugin
	manager: SyncQueueManager
	background: BackgroundContext
	foreground: OfflineReadings

	async def close(self):
		await self.background.stop()
		self.foreground.close()
		await self.manager.client.aclose()
		self.store.close()
		self.photos.close()


def create_device_runtime(
		settings: Optional[OfflineSettings] = None,
		client: Optional[httpx.AsyncClient] = None,
		token_refresher: Optional[TokenRefresher] = None
) -> DeviceRuntime:
	"""Wire stores, channel, plugins and both contexts for one device profile"""
	settings = settings or get_offline_settings()
	store = LocalQueueStore(settings.QUEUE_DB_PATH)
	photos = PhotoStagingStore(settings.PHOTO_DB_PATH, settings.PHOTO_QUOTA_BYTES)
	channel = CrossContextChannel()
	background_endpoint = channel.endpoint("background")
	foreground_endpoint = channel.endpoint("foreground")

	client = client or httpx.AsyncClient(
		base_url=settings.API_BASE_URL,
		timeout=settings.REQUEST_TIMEOUT_SECONDS,
	)
	auth = AuthStateProvider(store, background_endpoint, settings.TOKEN_REFRESH_TIMEOUT_SECONDS)
	telemetry = TelemetryPlugin()
	plugins = [
		telemetry,
		IdempotencyPlugin(),
		AuthHeaderPlugin(auth),
		PhotoUploadPlugin(photos, client, f"{settings.API_V1_PREFIX}/photos", background_endpoint),
	]
	manager = SyncQueueManager(
		store,
		photos,
		auth,
		client,
		plugins=plugins,
		policy=RetryPolicy.from_settings(settings),
		readings_path=f"{settings.API_V1_PREFIX}/readings",
		synced_retention_seconds=settings.SYNCED_RETENTION_SECONDS,
	)
	background = BackgroundContext(manager, background_endpoint, settings.IDLE_POLL_SECONDS)
	foreground = OfflineReadings(
		store, photos, foreground_endpoint,
		plugins=[telemetry],
		token_refresher=token_refresher,
	)
	return DeviceRuntime(
		store=store,
		photos=photos,
		channel=channel,
		auth=auth,
		telemetry=telemetry,
		manager=manager,
		background=background,
		foreground=foreground,
	)
