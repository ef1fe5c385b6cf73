"""
Shared test fixtures.

Settings are read at import time, so the environment is prepared before
anything from commerce is imported. Every test gets its own SQLite
directory: the default database and each tenant database are files in it.
"""

import os
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
MIGRATIONS_DIR = ROOT / "migrations" / "tenant"

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.mkdtemp(prefix='commerce-tests-')}/commerce.db",
)
os.environ["TENANT_MIGRATIONS_DIR"] = str(MIGRATIONS_DIR)

import fakeredis.aioredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from commerce.cache.pipeline import CachePipeline  # noqa: E402
from commerce.cache.service import CacheService  # noqa: E402
from commerce.core.config import settings  # noqa: E402
from commerce.core.rate_limit import get_rate_limiter  # noqa: E402
from commerce.core.redis import inject_redis_for_test  # noqa: E402
from commerce.db.registry import ConnectionRegistry, make_engine_factory  # noqa: E402
from commerce.db.session import inject_registry_for_test  # noqa: E402
from commerce.migrations.runner import MigrationRunner  # noqa: E402
from commerce.models import Base  # noqa: E402
from commerce.provisioning.admin import build_database_admin  # noqa: E402
from commerce.provisioning.worker import ProvisioningWorker  # noqa: E402
from commerce.queue.broker import JobQueue, Topic  # noqa: E402
from commerce.queue.handlers import JobHandlers  # noqa: E402


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def mock_redis():
    """Provide a FakeRedis async instance shared by cache, queue and app."""
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    inject_redis_for_test(r)
    yield r
    inject_redis_for_test(None)


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Connection registry over a per-test SQLite directory."""
    reg = ConnectionRegistry(
        base_url=f"sqlite+aiosqlite:///{tmp_path}/commerce.db",
        database_prefix="tenant_",
        engine_factory=make_engine_factory(settings),
    )
    yield reg
    await reg.disconnect_all()


@pytest_asyncio.fixture
async def default_db(registry):
    """Registry whose default database has the full ORM schema."""
    async with registry.get_client(None).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return registry


@pytest.fixture
def runner() -> MigrationRunner:
    return MigrationRunner(MIGRATIONS_DIR)


@pytest.fixture
def worker(registry, runner) -> ProvisioningWorker:
    return ProvisioningWorker(registry, build_database_admin(registry), runner)


@pytest_asyncio.fixture
async def job_queue(mock_redis):
    queue = JobQueue(mock_redis, block_ms=None, max_deliveries=3, sleep=_no_sleep)
    for topic in Topic:
        await queue.ensure_group(topic)
    return queue


@pytest.fixture
def handlers(default_db, worker, mock_redis) -> JobHandlers:
    return JobHandlers(default_db, worker, CachePipeline(CacheService(mock_redis)))


@pytest_asyncio.fixture
async def client(default_db, mock_redis):
    """HTTP client against the app, wired to the per-test registry and FakeRedis."""
    from main import app

    inject_registry_for_test(default_db)
    get_rate_limiter().reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    inject_registry_for_test(None)
    get_rate_limiter().reset()
