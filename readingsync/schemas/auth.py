import enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    OFFICE_CLERK = "office_clerk"
    FIELD_READER = "field_reader"


class TokenPayload(BaseModel):
    sub: str
    tenant_id: Optional[UUID] = None
    role: UserRole = UserRole.FIELD_READER
    type: str = "access"
    exp: Optional[int] = None


class CurrentUser(BaseModel):
    id: UUID
    tenant_id: UUID
    role: UserRole
