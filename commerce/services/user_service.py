"""
services/user_service.py
------------------------
Business logic for user registration and authentication.

Users always live in the default database. Registering an admin claims a
tenant code and queues the creation of that tenant's database; the admin
can log in immediately, but tenant routes answer "tenant not set up"
until is_database_created flips to true.
"""

from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.exceptions import (
    BrokerUnavailable,
    DuplicateUserError,
    TenantConflict,
    ValidationError,
)
from commerce.core.logging import get_logger
from commerce.core.security import hash_password, verify_password
from commerce.models.user import User, UserRole
from commerce.queue.broker import JobQueue, Topic
from commerce.schemas.user import UserRegister

logger = get_logger(__name__)


class UserService:

    @staticmethod
    def validate_tenant_assignment(role: UserRole, tenant_code: Optional[str]) -> None:
        if role == UserRole.admin and not tenant_code:
            raise ValidationError("Admin users must have a tenant code")
        if role == UserRole.customer and tenant_code:
            raise ValidationError("Customer users cannot have a tenant code")

    @staticmethod
    async def register(db: AsyncSession, data: UserRegister, queue: JobQueue) -> User:
        """
        Create a user. For admins, the row is committed and then the tenant
        provisioning job is published. If the broker is unreachable the
        committed row is deleted again, so a broker outage fails the
        registration instead of leaving an admin without a database.

        Raises ValidationError, DuplicateUserError, TenantConflict or
        BrokerUnavailable.
        """
        UserService.validate_tenant_assignment(data.role, data.tenant_code)

        email = data.email.lower()
        result = await db.execute(
            select(User).where(or_(User.email == email, User.username == data.username))
        )
        if result.scalars().first() is not None:
            raise DuplicateUserError("User with this email or username already exists")

        if data.tenant_code:
            result = await db.execute(select(User.id).where(User.tenant_code == data.tenant_code))
            if result.first() is not None:
                raise TenantConflict(data.tenant_code)

        user = User(
            email=email,
            username=data.username,
            hashed_password=hash_password(data.password),
            role=data.role.value,
            tenant_code=data.tenant_code,
            is_database_created=False,
        )
        db.add(user)
        try:
            # The unique constraint settles concurrent claims of one tenant code
            await db.flush()
        except IntegrityError as exc:
            await db.rollback()
            if "tenant_code" in str(exc.orig):
                raise TenantConflict(data.tenant_code)
            raise DuplicateUserError("User with this email or username already exists")

        if user.role == UserRole.admin.value:
            # Commit first, so the worker always finds the owner row
            await db.commit()
            try:
                await queue.publish(
                    Topic.DATABASE_CREATION,
                    {"user_id": user.id, "tenant_code": user.tenant_code},
                )
            except BrokerUnavailable:
                logger.error(
                    "Provisioning job not published, registration withdrawn",
                    user_id=user.id,
                    tenant_code=user.tenant_code,
                )
                await db.delete(user)
                await db.commit()
                raise
        logger.info(
            "User registered",
            user_id=user.id,
            role=user.role,
            tenant_code=user.tenant_code,
        )
        return user

    @staticmethod
    async def authenticate(
        db: AsyncSession, email: str, password: str
    ) -> User | None:
        """
        Verify credentials and return the User if valid, else None.
        Email lookup is case-insensitive.
        """
        result = await db.execute(
            select(User).where(User.email == email.lower())
        )
        user = result.scalar_one_or_none()
        if user is None or not verify_password(password, user.hashed_password):
            return None
        return user

    @staticmethod
    async def list_tenant_owners(db: AsyncSession, ready_only: bool = True) -> list[User]:
        """Admins that own a tenant, optionally only those whose database is ready."""
        stmt = select(User).where(User.tenant_code.is_not(None))
        if ready_only:
            stmt = stmt.where(User.is_database_created.is_(True))
        result = await db.execute(stmt.order_by(User.tenant_code))
        return list(result.scalars().all())
