import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from readingsync.offline.config import OfflineSettings


def compute_retry_delay(
		retries: int,
		base: float = 5.0,
		multiplier: float = 2.0,
		cap: float = 3600.0,
		jitter: float = 0.3,
		rng: Callable[[], float] = random.random
) -> float:
	"""Seconds to wait before attempt number `retries + 1`"""
	if retries < 0:
		raise ValueError("retries must be >= 0")
	try:
		delay = min(base * multiplier ** retries, cap)
	except OverflowError:
		delay = cap
	return delay + delay * jitter * rng()


@dataclass(frozen=True)
class RetryPolicy:
	base: float = 5.0
	multiplier: float = 2.0
	cap: float = 3600.0
	jitter: float = 0.3
	max_retention_seconds: int = 7 * 24 * 60 * 60

	@classmethod
	def from_settings(cls, settings: OfflineSettings) -> "RetryPolicy":
		return cls(
			base=settings.RETRY_BASE_SECONDS,
			multiplier=settings.RETRY_MULTIPLIER,
			cap=settings.RETRY_CAP_SECONDS,
			jitter=settings.RETRY_JITTER,
			max_retention_seconds=settings.MAX_RETENTION_SECONDS,
		)

	def delay(self, retries: int, rng: Callable[[], float] = random.random) -> float:
		return compute_retry_delay(retries, self.base, self.multiplier, self.cap, self.jitter, rng)

	def next_attempt_at(self, retries: int, now: datetime, rng: Callable[[], float] = random.random) -> datetime:
		return now + timedelta(seconds=self.delay(retries, rng))

	def expired(self, created_at: datetime, now: datetime) -> bool:
		"""Entry has been queued longer than the retention window"""
		return now - created_at > timedelta(seconds=self.max_retention_seconds)
