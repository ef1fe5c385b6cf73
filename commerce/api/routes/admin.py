"""
api/routes/admin.py
-------------------
Admin-only maintenance endpoints.

POST /admin/tenants/migrate  — Replay pending tenant migrations on every
                               provisioned tenant database.
"""

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.config import settings
from commerce.db.registry import ConnectionRegistry
from commerce.db.session import get_db, get_registry
from commerce.dependencies import get_current_admin
from commerce.migrations.runner import MigrationRunner
from commerce.models.user import User
from commerce.services.tenant_service import TenantService

router = APIRouter(prefix="/admin", tags=["Admin"])


def get_migration_runner() -> MigrationRunner:
    return MigrationRunner.from_settings(settings)


@router.post(
    "/tenants/migrate",
    summary="Admin: apply pending migrations to all tenant databases",
)
async def migrate_all_tenants(
    admin: Annotated[User, Depends(get_current_admin)],
    db: Annotated[AsyncSession, Depends(get_db)],
    registry: Annotated[ConnectionRegistry, Depends(get_registry)],
    runner: Annotated[MigrationRunner, Depends(get_migration_runner)],
) -> Dict[str, Any]:
    """
    Each tenant stops at its first failing migration; the other tenants
    are still migrated. Failures are reported per tenant in the results.
    """
    return await TenantService.migrate_all_tenants(db, registry, runner)
