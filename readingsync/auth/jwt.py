import logging
from datetime import timedelta, datetime, timezone
from typing import Dict, Any, Optional
from jose import JWTError, jwt

from readingsync.config import settings

logger = logging.getLogger(__name__)


class AuthService:
	"""Verifies bearer tokens issued by the identity provider"""

	@staticmethod
	def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
		"""Create JWT access token (development tooling and tests)"""
		to_encode = data.copy()
		for claim in ("sub", "tenant_id"):
			if claim in to_encode and to_encode[claim] is not None:
				to_encode[claim] = str(to_encode[claim])
		expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=settings.JWT_EXPIRATION_HOURS))
		to_encode.update({"exp": expire, "type": "access"})
		return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

	@staticmethod
	def decode_token(token: str) -> Optional[Dict[str, Any]]:
		"""Decode and validate JWT token"""
		try:
			payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
			return payload
		except JWTError as e:
			logger.warning(f"JWT decode error: {e}")
			return None


auth_service = AuthService()
