import logging
import time
from typing import Optional

from pydantic import BaseModel

from readingsync.offline.channel import ChannelEndpoint, MessageType
from readingsync.offline.store import LocalQueueStore

logger = logging.getLogger(__name__)


class AuthState(BaseModel):
	access_token: Optional[str] = None
	refresh_token: Optional[str] = None
	tenant_id: Optional[str] = None
	user_id: Optional[str] = None
	expires_at: Optional[float] = None  # epoch seconds

	def is_expired(self, now: Optional[float] = None, leeway: float = 30.0) -> bool:
		if self.expires_at is None:
			return False
		return (now or time.time()) + leeway >= self.expires_at

	@property
	def usable(self) -> bool:
		return bool(self.access_token and self.tenant_id)


class AuthStateProvider:
	"""
	Credentials for the replay loop, read from the durable store on every call
	so a restarted background context picks up whatever the foreground last saved.
	"""

	def __init__(self, store: LocalQueueStore, endpoint: Optional[ChannelEndpoint] = None, refresh_timeout: float = 5.0):
		self.store = store
		self.endpoint = endpoint
		self.refresh_timeout = refresh_timeout

	def get(self) -> Optional[AuthState]:
		record = self.store.load_auth_state()
		if record is None:
			return None
		return AuthState(
			access_token=record.access_token,
			refresh_token=record.refresh_token,
			tenant_id=record.tenant_id,
			user_id=record.user_id,
			expires_at=record.expires_at,
		)

	def save(self, state: AuthState):
		self.store.save_auth_state(**state.model_dump())

	def clear(self):
		self.store.clear_auth_state()

	async def refresh(self) -> Optional[AuthState]:
		"""Ask a foreground context for new credentials; None when nobody answers in time"""
		if self.endpoint is None:
			return None

		current = self.get()
		reply = await self.endpoint.request(
			MessageType.TOKEN_REFRESH_REQUEST,
			{"tenant_id": current.tenant_id if current else None},
			timeout=self.refresh_timeout,
		)
		if reply is None or not reply.payload.get("access_token"):
			logger.warning("Token refresh failed, replay paused until credentials arrive")
			return None

		state = AuthState.model_validate(reply.payload)
		self.save(state)
		logger.info("Access token refreshed for background sync")
		return state
