"""
db/urls.py
----------
Tenant database naming and URL derivation.

The connection registry and the provisioning worker both go through these
two functions, so a tenant code always maps to the same database name and
the same URL on both the request path and the provisioning path.

    tenant_database_name("ACME", "tenant_")  ->  "tenant_acme"

    derive_database_url(
        "postgresql+asyncpg://app:secret@db:5432/commerce?ssl=disable",
        "tenant_acme",
    )
    ->  "postgresql+asyncpg://app:secret@db:5432/tenant_acme?ssl=disable"

For SQLite the "database name" becomes a file next to the base file:
    sqlite+aiosqlite:////data/commerce.db  ->  sqlite+aiosqlite:////data/tenant_acme.db
"""

import os
import re

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from commerce.core.logging import get_logger

logger = get_logger(__name__)

# scheme://[credentials@]host[:port][/database][?query]
_MANUAL_URL_RE = re.compile(
    r"^(?P<base>[A-Za-z][A-Za-z0-9+.\-]*://[^/?#]+)(?:/[^?#]*)?(?P<query>\?[^#]*)?$"
)

SQLITE_SUFFIX = ".db"


def tenant_database_name(tenant_code: str, prefix: str) -> str:
    return f"{prefix}{tenant_code.strip().lower()}"


def is_sqlite_url(url: str) -> bool:
    return url.split(":", 1)[0].split("+", 1)[0].lower() == "sqlite"


def derive_database_url(base_url: str, database_name: str) -> str:
    """
    Swap the database in base_url for database_name.

    Scheme, credentials, host, port and query string are preserved. If the
    URL cannot be parsed, a regex extraction is attempted; if that fails too
    the base URL is returned unchanged (the connection attempt will then
    surface the problem).
    """
    try:
        url = make_url(base_url)
    except ArgumentError:
        return _derive_manually(base_url, database_name)

    if url.get_backend_name() == "sqlite":
        directory = os.path.dirname(url.database or "")
        database = os.path.join(directory, f"{database_name}{SQLITE_SUFFIX}")
        return url.set(database=database).render_as_string(hide_password=False)

    return url.set(database=database_name).render_as_string(hide_password=False)


def _derive_manually(base_url: str, database_name: str) -> str:
    match = _MANUAL_URL_RE.match(base_url)
    if match is None:
        logger.warning("Could not derive tenant database URL; using base URL")
        return base_url
    return f"{match.group('base')}/{database_name}{match.group('query') or ''}"


def quote_identifier(identifier: str) -> str:
    """Quote an SQL identifier (PostgreSQL / SQLite double-quote rules)."""
    return '"' + identifier.replace('"', '""') + '"'
