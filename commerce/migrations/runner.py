"""
migrations/runner.py
--------------------
Replays the tenant SQL migrations against one tenant database.

Layout on disk (TENANT_MIGRATIONS_DIR):

    migrations/tenant/
        20240101000000_create_products/migration.sql
        20240102000000_create_orders/migration.sql
        ...

Directory names sort lexicographically into execution order. Each applied
script is recorded in the `_tenant_migrations` bookkeeping table of the
tenant database:

  - started_at set, finished_at NULL   → in progress (or crashed)
  - finished_at set                    → applied, never re-run
  - rolled_back_at set                 → failed; retried on the next run

A failed script is retried by reusing its row, so migration_name stays
unique. Replay stops at the first failure: later scripts may depend on
the schema of earlier ones.

This is the only replay implementation. Provisioning and the
"migrate all tenants" admin operation both go through MigrationRunner.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine

from commerce.core.config import Settings
from commerce.core.exceptions import MigrationFailure
from commerce.core.logging import get_logger
from commerce.migrations.splitter import split_sql_statements

logger = get_logger(__name__)

MIGRATION_FILENAME = "migration.sql"

bookkeeping_metadata = MetaData()

migrations_table = Table(
    "_tenant_migrations",
    bookkeeping_metadata,
    Column("id", String(36), primary_key=True),
    Column("checksum", String(64), nullable=False),
    Column("migration_name", String(255), nullable=False, unique=True),
    Column("logs", Text, nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True), nullable=True),
    Column("rolled_back_at", DateTime(timezone=True), nullable=True),
    Column("applied_steps_count", Integer, nullable=False, default=0),
)

_DDL_KEYWORDS = ("CREATE", "ALTER", "REFERENCES", "CONSTRAINT")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationScript:
    name: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


@dataclass
class MigrationOutcome:
    migration: str
    status: MigrationStatus
    statements: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"migration": self.migration, "status": self.status.value}
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class MigrationReport:
    outcomes: List[MigrationOutcome] = field(default_factory=list)
    failure: Optional[MigrationFailure] = None

    @property
    def applied(self) -> List[str]:
        return [o.migration for o in self.outcomes if o.status is MigrationStatus.APPLIED]

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise self.failure


def discover_migrations(directory: Path) -> List[MigrationScript]:
    """
    Load every migration script under directory, in execution order.

    Each subdirectory must contain exactly one .sql file (migration.sql is
    preferred when several exist alongside other files). Directories
    without any .sql file are skipped with a warning.
    """
    if not directory.is_dir():
        raise FileNotFoundError(f"Migrations directory not found: {directory}")

    scripts: List[MigrationScript] = []
    for entry in sorted(p for p in directory.iterdir() if p.is_dir()):
        preferred = entry / MIGRATION_FILENAME
        if preferred.is_file():
            path = preferred
        else:
            candidates = sorted(entry.glob("*.sql"))
            if not candidates:
                logger.warning("Migration directory has no SQL script", migration=entry.name)
                continue
            if len(candidates) > 1:
                raise ValueError(
                    f"Migration '{entry.name}' has {len(candidates)} SQL files; expected one"
                )
            path = candidates[0]
        scripts.append(
            MigrationScript(name=entry.name, path=path, sql=path.read_text(encoding="utf-8"))
        )
    return scripts


class MigrationRunner:

    def __init__(
        self,
        migrations_dir: Path,
        excluded_tables: Iterable[str] = (),
    ) -> None:
        self.migrations_dir = Path(migrations_dir)
        self._excluded = [
            re.compile(
                rf'(?<![A-Za-z0-9_])"?{re.escape(table)}"?(?![A-Za-z0-9_])',
                re.IGNORECASE,
            )
            for table in excluded_tables
        ]

    @classmethod
    def from_settings(cls, settings: Settings) -> "MigrationRunner":
        return cls(
            migrations_dir=Path(settings.TENANT_MIGRATIONS_DIR),
            excluded_tables=settings.TENANT_MIGRATION_EXCLUDED_TABLES,
        )

    # ── Script handling ───────────────────────────────────────────────────────

    def load(self) -> List[MigrationScript]:
        return discover_migrations(self.migrations_dir)

    def is_excluded(self, statement: str) -> bool:
        """DDL statements touching a table from the exclusion list are skipped."""
        if not self._excluded:
            return False
        upper = statement.upper()
        if not any(keyword in upper for keyword in _DDL_KEYWORDS):
            return False
        return any(pattern.search(statement) for pattern in self._excluded)

    def statements_for(self, script: MigrationScript) -> List[str]:
        statements = []
        for statement in split_sql_statements(script.sql):
            if self.is_excluded(statement):
                logger.info(
                    "Skipping excluded migration statement",
                    migration=script.name,
                    statement=statement[:120],
                )
                continue
            statements.append(statement)
        return statements

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    async def ensure_bookkeeping(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(bookkeeping_metadata.create_all)

    async def records(self, engine: AsyncEngine) -> Dict[str, Dict[str, Any]]:
        async with engine.connect() as conn:
            result = await conn.execute(select(migrations_table))
            return {row["migration_name"]: dict(row) for row in result.mappings()}

    @staticmethod
    def is_applied(record: Optional[Dict[str, Any]]) -> bool:
        return (
            record is not None
            and record["finished_at"] is not None
            and record["rolled_back_at"] is None
        )

    # ── Replay ────────────────────────────────────────────────────────────────

    async def run(self, engine: AsyncEngine, tenant_code: Optional[str] = None) -> MigrationReport:
        """
        Apply all pending scripts in order. Stops at the first failure, which
        is reported in the returned MigrationReport rather than raised.
        """
        scripts = self.load()
        await self.ensure_bookkeeping(engine)
        records = await self.records(engine)
        report = MigrationReport()

        for script in scripts:
            record = records.get(script.name)
            if self.is_applied(record):
                if record["checksum"] != script.checksum:
                    logger.warning(
                        "Applied migration changed on disk",
                        tenant_code=tenant_code,
                        migration=script.name,
                    )
                report.outcomes.append(
                    MigrationOutcome(script.name, MigrationStatus.ALREADY_APPLIED)
                )
                continue

            outcome, failure = await self._apply_script(engine, script, record, tenant_code)
            report.outcomes.append(outcome)
            if failure is not None:
                report.failure = failure
                break

        logger.info(
            "Tenant migrations replayed",
            tenant_code=tenant_code,
            applied=len(report.applied),
            total=len(scripts),
            failed=report.failure is not None,
        )
        return report

    async def apply(self, engine: AsyncEngine, tenant_code: Optional[str] = None) -> List[MigrationOutcome]:
        """Like run(), but raises MigrationFailure if any script failed."""
        report = await self.run(engine, tenant_code)
        report.raise_for_failure()
        return report.outcomes

    async def _apply_script(
        self,
        engine: AsyncEngine,
        script: MigrationScript,
        record: Optional[Dict[str, Any]],
        tenant_code: Optional[str],
    ) -> Tuple[MigrationOutcome, Optional[MigrationFailure]]:
        record_id = record["id"] if record is not None else str(uuid.uuid4())
        started = {
            "checksum": script.checksum,
            "started_at": _utcnow(),
            "finished_at": None,
            "rolled_back_at": None,
            "logs": None,
            "applied_steps_count": 0,
        }
        async with engine.begin() as conn:
            if record is None:
                await conn.execute(
                    insert(migrations_table).values(
                        id=record_id, migration_name=script.name, **started
                    )
                )
            else:
                await conn.execute(
                    update(migrations_table)
                    .where(migrations_table.c.id == record_id)
                    .values(**started)
                )

        statements = self.statements_for(script)
        executed = 0
        current = ""
        try:
            async with engine.begin() as conn:
                for statement in statements:
                    current = statement
                    await conn.exec_driver_sql(statement)
                    executed += 1
        except Exception as exc:
            reason = str(exc)
            logger.error(
                "Migration failed",
                tenant_code=tenant_code,
                migration=script.name,
                statement=current[:200],
                error=reason,
            )
            await self._mark_rolled_back(engine, record_id, reason)
            failure = MigrationFailure(script.name, current, reason)
            failure.__cause__ = exc
            outcome = MigrationOutcome(
                script.name, MigrationStatus.FAILED, statements=executed, error=reason
            )
            return outcome, failure

        async with engine.begin() as conn:
            await conn.execute(
                update(migrations_table)
                .where(migrations_table.c.id == record_id)
                .values(finished_at=_utcnow(), applied_steps_count=executed)
            )
        logger.info(
            "Migration applied",
            tenant_code=tenant_code,
            migration=script.name,
            statements=executed,
        )
        return MigrationOutcome(script.name, MigrationStatus.APPLIED, statements=executed), None

    async def _mark_rolled_back(self, engine: AsyncEngine, record_id: str, reason: str) -> None:
        async with engine.begin() as conn:
            await conn.execute(
                update(migrations_table)
                .where(migrations_table.c.id == record_id)
                .values(rolled_back_at=_utcnow(), logs=reason)
            )
