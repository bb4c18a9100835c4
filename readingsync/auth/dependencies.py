import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError

from readingsync.auth.jwt import auth_service
from readingsync.schemas.auth import CurrentUser, TokenPayload, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def principal_from_token(token: str) -> Optional[CurrentUser]:
	"""Resolve a bearer token into the calling user, or None when it is unusable"""
	payload = auth_service.decode_token(token)
	if not payload:
		return None
	try:
		claims = TokenPayload.model_validate(payload)
	except ValidationError as e:
		logger.warning(f"Rejected token with malformed claims: {e.error_count()} errors")
		return None
	if claims.type != "access" or claims.tenant_id is None:
		return None
	try:
		return CurrentUser(id=claims.sub, tenant_id=claims.tenant_id, role=claims.role)
	except ValidationError:
		return None


async def get_current_user(
		credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
		x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> CurrentUser:
	"""Get current authenticated user"""
	if credentials is None:
		raise HTTPException(
			status_code=status.HTTP_401_UNAUTHORIZED,
			detail="Not authenticated",
			headers={"WWW-Authenticate": "Bearer"}
		)

	payload = auth_service.decode_token(credentials.credentials)
	if not payload:
		raise HTTPException(
			status_code=status.HTTP_401_UNAUTHORIZED,
			detail="Invalid authentication credentials",
			headers={"WWW-Authenticate": "Bearer"}
		)
	if not payload.get("tenant_id"):
		raise HTTPException(
			status_code=status.HTTP_403_FORBIDDEN,
			detail="Token is not bound to a tenant"
		)

	user = principal_from_token(credentials.credentials)
	if user is None:
		raise HTTPException(
			status_code=status.HTTP_401_UNAUTHORIZED,
			detail="Invalid token payload",
			headers={"WWW-Authenticate": "Bearer"}
		)

	if x_tenant_id and x_tenant_id != str(user.tenant_id):
		raise HTTPException(
			status_code=status.HTTP_403_FORBIDDEN,
			detail="Tenant header does not match token"
		)
	return user


def require_role(roles: list[UserRole]):
	"""Role-based access control dependency"""
	async def role_checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
		if current_user.role not in roles:
			raise HTTPException(
				status_code=status.HTTP_403_FORBIDDEN,
				detail=f"Insufficient permissions. Required roles: {[role.value for role in roles]}"
			)
		return current_user
	return role_checker
