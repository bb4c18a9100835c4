import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Optional, Sequence

import httpx

from readingsync.offline.auth_state import AuthStateProvider
from readingsync.offline.backoff import RetryPolicy
from readingsync.offline.exceptions import (
	AuthError,
	OfflineError,
	TransientError,
	ValidationError,
)
from readingsync.offline.photos import PhotoStagingStore
from readingsync.offline.plugins import ReplayRequest, SyncPlugin
from readingsync.offline.store import LocalQueueStore, QueuedReading, device_now, retention_cutoff

logger = logging.getLogger(__name__)

CONTINUE = "continue"
STOP = "stop"


@dataclass
class SyncProgress:
	total: int = 0
	synced: int = 0
	failed: int = 0
	requeued: int = 0
	stopped_reason: Optional[str] = None

	@property
	def remaining(self) -> int:
		return self.total - self.synced - self.failed - self.requeued


class SyncQueueManager:
	"""
	Replays queued readings against the API, oldest first.

	Only one pass runs at a time; a trigger that arrives mid-pass joins it.
	"""

	def __init__(
			self,
			store: LocalQueueStore,
			photos: PhotoStagingStore,
			auth: AuthStateProvider,
			client: httpx.AsyncClient,
			plugins: Sequence[SyncPlugin] = (),
			policy: RetryPolicy = RetryPolicy(),
			readings_path: str = "/api/v1/readings",
			synced_retention_seconds: int = 3600
	):
		self.store = store
		self.photos = photos
		self.auth = auth
		self.client = client
		self.plugins = list(plugins)
		self.policy = policy
		self.readings_path = readings_path
		self.synced_retention_seconds = synced_retention_seconds
		self._current: Optional[asyncio.Future] = None

	@property
	def is_syncing(self) -> bool:
		return self._current is not None and not self._current.done()

	async def drain(self) -> SyncProgress:
		if not self.is_syncing:
			self._current = asyncio.ensure_future(self._run_pass())
		return await asyncio.shield(self._current)

	async def _run_pass(self) -> SyncProgress:
		progress = SyncProgress()
		state = self.auth.get()
		if state is not None and state.usable and state.is_expired():
			state = await self.auth.refresh() or state
		if state is None or not state.usable:
			progress.stopped_reason = "no_credentials"
			logger.info("Sync skipped: no credentials stored")
			return progress

		# a pass that died mid-entry leaves it in syncing
		self.store.recover()

		entries = self.store.list_pending(state.tenant_id, due_before=device_now())
		progress.total = len(entries)
		if entries:
			logger.info(f"Sync pass started with {len(entries)} queued readings")

		for entry in entries:
			if await self._replay(entry, progress) == STOP:
				break

		if progress.total:
			self.store.record_attempt(
				"sync_pass",
				success=progress.failed == 0 and progress.stopped_reason is None,
				error=progress.stopped_reason,
				details=asdict(progress),
			)
			logger.info(
				f"Sync pass finished: {progress.synced} synced, {progress.failed} failed, "
				f"{progress.requeued} requeued, {progress.remaining} untouched"
			)

		purged = self.store.purge_synced(retention_cutoff(self.synced_retention_seconds))
		if purged:
			logger.debug(f"Purged {purged} synced queue entries")
		self.store.purge_logs(retention_cutoff(self.policy.max_retention_seconds))
		return progress

	def _build_request(self, entry: QueuedReading) -> ReplayRequest:
		return ReplayRequest(method="POST", url=self.readings_path, json=entry.to_payload())

	async def _replay(self, entry: QueuedReading, progress: SyncProgress, refreshed: bool = False) -> str:
		now = device_now()
		if self.policy.expired(entry.created_at, now):
			error = ValidationError("Retention window exceeded before the reading could be delivered")
			self.store.mark_failed(entry.id, str(error))
			await self._after_failure(entry, error)
			progress.failed += 1
			return CONTINUE

		self.store.mark_syncing([entry.id])
		try:
			request = self._build_request(entry)
			for plugin in self.plugins:
				request = await plugin.before_replay(entry, request)
			response = await self.client.request(
				request.method, request.url, headers=request.headers, json=request.json
			)
		except AuthError as e:
			return await self._handle_auth_failure(entry, progress, refreshed, e)
		except (httpx.ConnectError, OfflineError) as e:
			error = e if isinstance(e, OfflineError) else OfflineError(f"Backend unreachable: {e}")
			self._requeue(entry, error, progress)
			await self._after_failure(entry, error)
			progress.stopped_reason = "offline"
			return STOP
		except httpx.HTTPError as e:
			error = TransientError(f"Request failed: {e}")
			self._requeue(entry, error, progress)
			await self._after_failure(entry, error)
			return CONTINUE
		except TransientError as e:
			self._requeue(entry, e, progress)
			await self._after_failure(entry, e)
			return CONTINUE
		except Exception as e:
			logger.exception(f"Unexpected error replaying {entry.client_id}")
			error = TransientError(f"Replay error: {e!r}")
			self._requeue(entry, error, progress)
			await self._after_failure(entry, error)
			return CONTINUE

		if response.is_success:
			self.store.mark_synced(entry.id, self._server_id(entry, response))
			if entry.photo_blob_ref:
				self.photos.release(entry.photo_blob_ref)
			for plugin in self.plugins:
				try:
					await plugin.after_success(entry, response)
				except Exception:
					logger.exception(f"Plugin {plugin.name} failed after syncing {entry.client_id}")
			progress.synced += 1
			return CONTINUE

		if response.status_code == 401:
			return await self._handle_auth_failure(
				entry, progress, refreshed, AuthError("Server rejected the access token")
			)

		if 400 <= response.status_code < 500:
			error = ValidationError(
				f"HTTP {response.status_code}: {response.text[:500]}", response.status_code
			)
			self.store.mark_failed(entry.id, str(error))
			await self._after_failure(entry, error)
			progress.failed += 1
			return CONTINUE

		error = TransientError(f"HTTP {response.status_code} from server", response.status_code)
		self._requeue(entry, error, progress)
		await self._after_failure(entry, error)
		return CONTINUE

	async def _handle_auth_failure(self, entry: QueuedReading, progress: SyncProgress, refreshed: bool, error: AuthError) -> str:
		"""Refresh once and retry the same entry; otherwise pause the pass"""
		if not refreshed:
			state = await self.auth.refresh()
			if state is not None and state.usable:
				return await self._replay(entry, progress, refreshed=True)

		self.store.mark_pending(entry.id)
		await self._after_failure(entry, error)
		progress.stopped_reason = "auth"
		logger.warning(f"Sync paused on {entry.client_id}: {error}")
		return STOP

	def _server_id(self, entry: QueuedReading, response: httpx.Response) -> Optional[str]:
		try:
			body = response.json()
		except ValueError:
			body = None
		if not isinstance(body, dict):
			logger.warning(f"Reading {entry.client_id} accepted without a JSON object body")
			return None
		server_id = body.get("id")
		return str(server_id) if server_id is not None else None

	def _requeue(self, entry: QueuedReading, error: Exception, progress: SyncProgress):
		next_attempt = self.policy.next_attempt_at(entry.retries, device_now())
		self.store.requeue(entry.id, str(error), next_attempt)
		progress.requeued += 1

	async def _after_failure(self, entry: QueuedReading, error: Exception):
		for plugin in self.plugins:
			await plugin.after_failure(entry, error)
