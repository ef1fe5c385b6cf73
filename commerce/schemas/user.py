"""
schemas/user.py
---------------
Pydantic models for User registration, login, and responses.

Security note:
  - hashed_password is NEVER included in any response schema.
  - Passwords require min 8 chars; enforce stronger rules in production.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from commerce.models.user import UserRole


class UserRegister(BaseModel):
    """
    Self-registration.
    Admins must claim a tenant_code (their own database); customers must not.
    """
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole = UserRole.customer
    tenant_code: Optional[str] = Field(
        default=None,
        max_length=50,
        pattern=r"^[A-Za-z0-9_]+$",
        description="Tenant identifier owned by an admin, e.g. 'ACME'",
    )

    @field_validator("tenant_code")
    @classmethod
    def normalise_tenant_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().lower() if v else None


class UserRead(BaseModel):
    id: str
    email: str
    username: str
    role: str
    tenant_code: Optional[str]
    is_database_created: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserRead
