from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from dotenv import load_dotenv
load_dotenv()


class Settings(BaseSettings):
	# App
	APP_NAME: str = "ReadingSync API"
	APP_VERSION: str = "1.0.0"
	API_V1_PREFIX: str = "/api/v1"
	DEBUG: bool = False
	LOG_LEVEL: str = "INFO"
	ENVIRONMENT: str = "development" # development, staging, production

	# Database
	DATABASE_URL: str
	DB_POOL_SIZE: int = 20
	DB_MAX_OVERFLOW: int = 40
	DB_POOL_PRE_PING: bool = True
	DB_ECHO: bool = False
	AUTO_CREATE_TABLES: bool = False

	# Redis
	REDIS_URL: str = "redis://localhost:6379/0"
	REDIS_POOL_SIZE: int = 10
	REALTIME_USE_REDIS: bool = True

	# JWT (tokens are issued elsewhere, only verified here)
	JWT_SECRET: str
	JWT_ALGORITHM: str = "HS256"
	JWT_EXPIRATION_HOURS: int = 24

	# S3 Storage
	S3_ENDPOINT_URL: Optional[str] = None
	AWS_ACCESS_KEY_ID: Optional[str] = None
	AWS_SECRET_ACCESS_KEY: Optional[str] = None
	S3_BUCKET_NAME: str = "reading-photos"
	S3_REGION: str = "us-east-1"
	MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
	ALLOWED_PHOTO_TYPES: List[str] = ["image/jpeg", "image/png", "image/webp", "image/heic"]

	# CORS
	CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8080"]

	# Monitoring
	EXPOSE_METRICS: bool = True

	# Idempotency
	IDEMPOTENCY_TTL_SECONDS: int = 24 * 60 * 60
	IDEMPOTENCY_BATCH_TTL_SECONDS: int = 7 * 24 * 60 * 60

	# Ingestion limits
	BULK_MAX_ITEMS: int = 1000
	SYNC_MAX_ITEMS: int = 100

	# Anomaly defaults (used when a tenant has no thresholds row)
	ANOMALY_LOW_USAGE_FLOOR: Optional[float] = None
	ANOMALY_HIGH_USAGE_CEILING: Optional[float] = 1000.0
	ANOMALY_HIGH_USAGE_MULTIPLIER: Optional[float] = 3.0
	ANOMALY_HISTORY_WINDOW: int = 6
	ANOMALY_ZERO_USAGE_MIN_DAYS: Optional[int] = 30
	ANOMALY_MAX_INCREASE_PCT: Optional[float] = 200.0
	ANOMALY_OUTLIER_STD_DEVIATIONS: Optional[float] = 3.0
	ANOMALY_OUTLIER_MIN_SAMPLES: int = 10
	ANOMALY_OUTLIER_HISTORY_DAYS: int = 180
	ANOMALY_LEAK_MIN_DAILY_USAGE: Optional[float] = 500.0
	ANOMALY_LEAK_CONSECUTIVE_DAYS: int = 7
	ANOMALY_RULES_CACHE_SECONDS: int = 300

	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		case_sensitive=True,
		extra="ignore",
	)


@lru_cache()
def get_settings() -> Settings:
	return Settings()


settings = get_settings()
