"""
Replay plugins. Each one hooks into the queue at fixed points and they run in
the order they were registered.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from readingsync.offline.auth_state import AuthStateProvider
from readingsync.offline.channel import ChannelEndpoint, MessageType
from readingsync.offline.exceptions import (
	AuthError,
	OfflineError,
	PhotoUploadError,
	TransientError,
	ValidationError,
)
from readingsync.offline.photos import PhotoStagingStore
from readingsync.offline.store import QueuedReading

logger = logging.getLogger(__name__)

# 4xx answers from the photo endpoint that are still worth retrying
RETRYABLE_CLIENT_ERRORS = (408, 429)


@dataclass
class ReplayRequest:
	method: str
	url: str
	headers: Dict[str, str] = field(default_factory=dict)
	json: Dict[str, Any] = field(default_factory=dict)


class SyncPlugin:
	name = "plugin"

	async def before_enqueue(self, entry: QueuedReading) -> None:
		return None

	async def before_replay(self, entry: QueuedReading, request: ReplayRequest) -> ReplayRequest:
		return request

	async def after_success(self, entry: QueuedReading, response: httpx.Response) -> None:
		return None

	async def after_failure(self, entry: QueuedReading, error: Exception) -> None:
		return None


class IdempotencyPlugin(SyncPlugin):
	name = "idempotency"

	async def before_replay(self, entry, request):
		request.headers["Idempotency-Key"] = entry.idempotency_key
		return request


class AuthHeaderPlugin(SyncPlugin):
	name = "auth"

	def __init__(self, auth: AuthStateProvider):
		self.auth = auth

	async def before_replay(self, entry, request):
		state = self.auth.get()
		if state is None or not state.access_token:
			raise AuthError("No access token available for replay")
		request.headers["Authorization"] = f"Bearer {state.access_token}"
		request.headers["X-Tenant-Id"] = entry.tenant_id
		return request


class PhotoUploadPlugin(SyncPlugin):
	"""Uploads the staged photo first and points the reading at the stored object"""
	name = "photo_upload"

	def __init__(
			self,
			photos: PhotoStagingStore,
			client: httpx.AsyncClient,
			upload_path: str,
			endpoint: Optional[ChannelEndpoint] = None
	):
		self.photos = photos
		self.client = client
		self.upload_path = upload_path
		self.endpoint = endpoint
		self.uploaded = 0
		self.rejected = 0

	async def before_replay(self, entry, request):
		if not entry.photo_blob_ref:
			return request

		photo = self.photos.get(entry.photo_blob_ref)
		if photo is None:
			logger.warning(f"Staged photo {entry.photo_blob_ref} for {entry.client_id} is gone, sending reading without it")
			return request

		headers = {k: v for k, v in request.headers.items() if k in ("Authorization", "X-Tenant-Id")}
		try:
			response = await self.client.post(
				self.upload_path,
				headers=headers,
				data={"client_id": entry.client_id},
				files={"file": (f"{entry.client_id}.jpg", photo.data, photo.mime_type)},
			)
		except httpx.ConnectError as e:
			raise OfflineError(f"Photo upload could not connect: {e}") from e
		except httpx.HTTPError as e:
			raise PhotoUploadError(f"Photo upload failed: {e}") from e

		if response.status_code == 401:
			raise AuthError("Photo upload rejected credentials")
		if 400 <= response.status_code < 500 and response.status_code not in RETRYABLE_CLIENT_ERRORS:
			await self._reject(entry, f"Photo refused with HTTP {response.status_code}: {response.text[:200]}")
			return request
		if response.status_code >= 300:
			raise PhotoUploadError(f"Photo upload returned HTTP {response.status_code}", response.status_code)

		try:
			path = response.json()["path"]
		except (ValueError, KeyError, TypeError) as e:
			raise PhotoUploadError(f"Photo upload returned an unreadable body: {e!r}", response.status_code) from e

		request.json["photo_path"] = path
		self.uploaded += 1
		return request

	async def _reject(self, entry: QueuedReading, reason: str):
		"""The server will never take this photo; the reading goes without it"""
		logger.warning(f"Dropping photo for {entry.client_id}: {reason}")
		self.photos.release(entry.photo_blob_ref)
		self.rejected += 1
		if self.endpoint is not None:
			await self.endpoint.post(MessageType.PHOTO_SKIPPED, {"client_id": entry.client_id, "reason": reason})


def error_category(error: Exception) -> str:
	if isinstance(error, OfflineError):
		return "network"
	if isinstance(error, PhotoUploadError):
		return "photo"
	if isinstance(error, AuthError):
		return "auth"
	if isinstance(error, ValidationError):
		return "validation"
	if isinstance(error, TransientError):
		return "server"
	return "other"


@dataclass
class SyncTelemetry:
	enqueued: int = 0
	attempts: int = 0
	successes: int = 0
	failures: int = 0
	errors: Counter = field(default_factory=Counter)

	def as_dict(self) -> Dict[str, Any]:
		return {
			"enqueued": self.enqueued,
			"attempts": self.attempts,
			"successes": self.successes,
			"failures": self.failures,
			"errors": dict(self.errors),
		}


class TelemetryPlugin(SyncPlugin):
	name = "telemetry"

	def __init__(self):
		self.telemetry = SyncTelemetry()

	async def before_enqueue(self, entry):
		self.telemetry.enqueued += 1

	async def before_replay(self, entry, request):
		self.telemetry.attempts += 1
		return request

	async def after_success(self, entry, response):
		self.telemetry.successes += 1
		logger.debug(f"Replayed {entry.client_id} -> HTTP {response.status_code}")

	async def after_failure(self, entry, error):
		self.telemetry.failures += 1
		category = error_category(error)
		self.telemetry.errors[category] += 1
		logger.info(f"Replay of {entry.client_id} failed ({category}): {error}")

	def snapshot(self) -> Optional[Dict[str, Any]]:
		return self.telemetry.as_dict()
