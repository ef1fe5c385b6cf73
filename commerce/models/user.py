"""
models/user.py
--------------
User ORM model with roles and tenant ownership. Lives in the default
database only.

Role design:
  - 'admin':    Owns exactly one tenant (tenant_code) and its database.
  - 'customer': Never owns a tenant; routed to the default database.

tenant_code carries a unique constraint: two admins racing to claim the
same code produce exactly one winner at the database level.

The hashed_password column stores bcrypt hashes only; plain text is
never stored and never logged.
"""

from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from commerce.db.base import Base, TimestampMixin, generate_uuid

TENANT_CODE_CONSTRAINT = "uq_users_tenant_code"


class UserRole(str, PyEnum):
    admin = "admin"
    customer = "customer"


class User(Base, TimestampMixin):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("tenant_code", name=TENANT_CODE_CONSTRAINT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    email: Mapped[str] = mapped_column(
        String(320), unique=True, nullable=False, index=True
    )
    username: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False, index=True
    )
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserRole.customer.value
    )
    tenant_code: Mapped[Optional[str]] = mapped_column(String(63), nullable=True)
    is_database_created: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin.value

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} role={self.role}>"
