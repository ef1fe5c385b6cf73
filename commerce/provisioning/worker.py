"""
provisioning/worker.py
----------------------
Creates and migrates one tenant database per provisioning job.

State machine:

    RECEIVED → DATABASE_CREATING → DATABASE_CREATED → MIGRATIONS_RUNNING
             → MIGRATIONS_DONE → COMPLETE

    any failure after DATABASE_CREATED → FAILED_ROLLED_BACK

"Database already exists" short-circuits to COMPLETE without re-running
migrations: jobs are delivered at least once, and a redelivered job for a
tenant that was fully provisioned must be a no-op.

On failure after creation the half-migrated database is dropped before the
error propagates, so the redelivered job starts from a clean slate. A
failure of the drop itself is logged and does not replace the original
error.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from commerce.core.config import Settings
from commerce.core.exceptions import DatabaseAlreadyExists
from commerce.core.logging import get_logger
from commerce.db.registry import ConnectionRegistry
from commerce.migrations.runner import MigrationRunner, MigrationStatus
from commerce.provisioning.admin import DatabaseAdmin, build_database_admin
from commerce.tenancy.context import normalize_tenant_code

logger = get_logger(__name__)


class ProvisioningState(str, Enum):
    RECEIVED = "RECEIVED"
    DATABASE_CREATING = "DATABASE_CREATING"
    DATABASE_CREATED = "DATABASE_CREATED"
    MIGRATIONS_RUNNING = "MIGRATIONS_RUNNING"
    MIGRATIONS_DONE = "MIGRATIONS_DONE"
    COMPLETE = "COMPLETE"
    FAILED_ROLLED_BACK = "FAILED_ROLLED_BACK"


@dataclass
class ProvisioningRun:
    tenant_code: str
    database_name: str
    state: ProvisioningState = ProvisioningState.RECEIVED
    history: List[ProvisioningState] = field(
        default_factory=lambda: [ProvisioningState.RECEIVED]
    )
    applied: List[str] = field(default_factory=list)
    already_existed: bool = False
    error: Optional[str] = None

    def advance(self, state: ProvisioningState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(
            "Provisioning state changed",
            tenant_code=self.tenant_code,
            state=state.value,
        )


class ProvisioningWorker:

    def __init__(
        self,
        registry: ConnectionRegistry,
        admin: DatabaseAdmin,
        runner: MigrationRunner,
    ) -> None:
        self._registry = registry
        self._admin = admin
        self._runner = runner

    @classmethod
    def from_settings(cls, registry: ConnectionRegistry, settings: Settings) -> "ProvisioningWorker":
        return cls(
            registry=registry,
            admin=build_database_admin(registry, settings.MAINTENANCE_DATABASE),
            runner=MigrationRunner.from_settings(settings),
        )

    @property
    def runner(self) -> MigrationRunner:
        return self._runner

    async def provision(self, tenant_code: str) -> ProvisioningRun:
        """
        Create and migrate the database for tenant_code.

        Returns the completed run. Raises (after rolling back) if any step
        fails; the caller's queue will redeliver the job.
        """
        code = normalize_tenant_code(tenant_code)
        if code is None:
            raise ValueError("tenant_code is required")

        run = ProvisioningRun(tenant_code=code, database_name=self._registry.database_name(code))
        logger.info("Provisioning tenant database", tenant_code=code, database=run.database_name)

        run.advance(ProvisioningState.DATABASE_CREATING)
        try:
            await self._admin.create_database(run.database_name)
        except DatabaseAlreadyExists:
            run.already_existed = True
            run.advance(ProvisioningState.COMPLETE)
            logger.info(
                "Tenant database already exists; nothing to do",
                tenant_code=code,
                database=run.database_name,
            )
            return run
        run.advance(ProvisioningState.DATABASE_CREATED)

        try:
            run.advance(ProvisioningState.MIGRATIONS_RUNNING)
            # A dedicated engine, so no pooled connection outlives the job
            engine = self._registry.engine_factory(self._registry.url_for(code))
            try:
                outcomes = await self._runner.apply(engine, code)
            finally:
                await engine.dispose()
            run.applied = [o.migration for o in outcomes if o.status is MigrationStatus.APPLIED]
            run.advance(ProvisioningState.MIGRATIONS_DONE)
        except (Exception, asyncio.CancelledError) as exc:
            run.error = str(exc) or type(exc).__name__
            await self._rollback(run)
            run.advance(ProvisioningState.FAILED_ROLLED_BACK)
            logger.error(
                "Tenant provisioning failed; database rolled back",
                tenant_code=code,
                database=run.database_name,
                error=run.error,
            )
            raise

        run.advance(ProvisioningState.COMPLETE)
        logger.info(
            "Tenant provisioned",
            tenant_code=code,
            database=run.database_name,
            migrations=len(run.applied),
        )
        return run

    async def _rollback(self, run: ProvisioningRun) -> None:
        try:
            await self._registry.disconnect(run.tenant_code)
            await self._admin.drop_database(run.database_name)
        except Exception as exc:
            logger.error(
                "Could not drop tenant database after failed provisioning",
                tenant_code=run.tenant_code,
                database=run.database_name,
                error=str(exc),
            )
