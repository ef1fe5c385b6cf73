"""
core/exceptions.py
------------------
Domain exceptions shared by services, workers and the API layer.

Services raise these; routes translate them into HTTP responses. Nothing
in this module knows about HTTP.
"""

from typing import Optional


class CommerceError(Exception):
    """Base class for all application errors."""


# ── Tenancy ───────────────────────────────────────────────────────────────────

class TenantNotProvisioned(CommerceError):
    """The resolved tenant has no backing database yet."""

    def __init__(self, tenant_code: Optional[str]) -> None:
        self.tenant_code = tenant_code
        super().__init__(
            f"Tenant '{tenant_code}' is not set up yet; its database is "
            "still being provisioned or provisioning failed"
        )


class TenantConflict(CommerceError):
    """The tenant code is already owned by another admin."""

    def __init__(self, tenant_code: str) -> None:
        self.tenant_code = tenant_code
        super().__init__(f"Tenant code '{tenant_code}' is already in use")


class DatabaseAlreadyExists(CommerceError):
    def __init__(self, database_name: str) -> None:
        self.database_name = database_name
        super().__init__(f"Database '{database_name}' already exists")


class MigrationFailure(CommerceError):
    """A migration script failed part-way through replay."""

    def __init__(self, migration_name: str, statement: str, reason: str) -> None:
        self.migration_name = migration_name
        self.statement = statement
        self.reason = reason
        super().__init__(f"Migration '{migration_name}' failed: {reason}")


# ── Infrastructure ────────────────────────────────────────────────────────────

class BrokerUnavailable(CommerceError):
    """The job queue broker could not be reached within the retry budget."""


class CacheUnavailable(CommerceError):
    """The cache store is unreachable. Only surfaced by health checks."""


# ── Business rules ────────────────────────────────────────────────────────────

class NotFoundError(CommerceError):
    pass


class PermissionDeniedError(CommerceError):
    pass


class ValidationError(CommerceError):
    pass


class DuplicateUserError(CommerceError):
    pass
