from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class OfflineSettings(BaseSettings):
	"""Settings for the device-side queue and replay loop."""

	API_BASE_URL: str = "http://localhost:8000"
	API_V1_PREFIX: str = "/api/v1"
	QUEUE_DB_PATH: str = "./data/readings-queue.db"
	PHOTO_DB_PATH: str = "./data/staged-photos.db"
	PHOTO_QUOTA_BYTES: int = 200 * 1024 * 1024
	REQUEST_TIMEOUT_SECONDS: float = 30.0

	# Backoff: delay = min(base * multiplier ** retries, cap) + jitter
	RETRY_BASE_SECONDS: float = 5.0
	RETRY_MULTIPLIER: float = 2.0
	RETRY_CAP_SECONDS: float = 60 * 60
	RETRY_JITTER: float = 0.3
	MAX_RETENTION_SECONDS: int = 7 * 24 * 60 * 60

	SYNCED_RETENTION_SECONDS: int = 60 * 60
	TOKEN_REFRESH_TIMEOUT_SECONDS: float = 5.0
	IDLE_POLL_SECONDS: float = 60.0

	model_config = SettingsConfigDict(
		env_prefix="READINGSYNC_DEVICE_",
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)


@lru_cache()
def get_offline_settings() -> OfflineSettings:
	return OfflineSettings()
