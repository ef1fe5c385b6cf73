"""
services/tenant_service.py
--------------------------
Tenant-wide maintenance operations.

Service layer is responsible for:
  - Constructing queries
  - Enforcing business rules
  - Returning plain data / domain objects to the route layer
  - Never returning HTTP responses (that's the route's job)
"""

from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.logging import get_logger
from commerce.db.registry import ConnectionRegistry
from commerce.migrations.runner import MigrationRunner, MigrationStatus
from commerce.services.user_service import UserService

logger = get_logger(__name__)


class TenantService:

    @staticmethod
    async def migrate_all_tenants(
        db: AsyncSession,
        registry: ConnectionRegistry,
        runner: MigrationRunner,
    ) -> Dict[str, Any]:
        """
        Replay pending tenant migrations on every tenant whose database is
        ready. A failure stops that tenant's replay (later scripts may build
        on the failed one) but not the other tenants'.

        Returns:
            {"status": "completed", "results": [
                {"tenant_code": ..., "migration": ..., "status": ..., "error"?: ...},
            ]}
        """
        owners = await UserService.list_tenant_owners(db, ready_only=True)
        results: List[Dict[str, Any]] = []

        for owner in owners:
            engine = registry.get_client(owner.tenant_code)
            try:
                report = await runner.run(engine, owner.tenant_code)
            except SQLAlchemyError as exc:
                logger.error(
                    "Tenant database unreachable for migration",
                    tenant_code=owner.tenant_code,
                    error=str(exc),
                )
                results.append(
                    {
                        "tenant_code": owner.tenant_code,
                        "migration": None,
                        "status": MigrationStatus.FAILED.value,
                        "error": str(exc),
                    }
                )
                continue
            for outcome in report.outcomes:
                results.append({"tenant_code": owner.tenant_code, **outcome.as_dict()})
            if report.failure is not None:
                logger.error(
                    "Tenant migration failed",
                    tenant_code=owner.tenant_code,
                    migration=report.failure.migration_name,
                    error=report.failure.reason,
                )

        logger.info("Migrated all tenants", tenants=len(owners), results=len(results))
        return {"status": "completed", "results": results}
