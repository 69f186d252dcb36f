"""Integration fixtures: PostgreSQL and Redis via testcontainers."""

import os
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio
from alembic import command
from alembic.config import Config
from sqlalchemy import text
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from statcrawl.database.database import sessionmanager
from statcrawl.main.config import Settings, reset_settings, set_settings
from statcrawl.redis.connection import create_redis_client

# Ryuk has connection issues in nested Docker setups
os.environ.setdefault("TESTCONTAINERS_RYUK_DISABLED", "true")

if not os.getenv("DOCKER_HOST") and os.path.exists("/var/run/docker.sock"):
    os.environ["DOCKER_HOST"] = "unix:///var/run/docker.sock"

ROOT_DIR = Path(__file__).parent.parent.parent


def _docker_available() -> bool:
    import docker
    from docker.errors import DockerException

    try:
        return bool(docker.from_env().ping())
    except DockerException:
        return False


def pytest_collection_modifyitems(config, items):
    integration = [item for item in items if "integration" in str(item.fspath)]
    for item in integration:
        item.add_marker(pytest.mark.integration)
    if integration and not _docker_available():
        skip = pytest.mark.skip(reason="docker is not available")
        for item in integration:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    postgres = PostgresContainer(
        image="postgres:16-alpine",
        username="integration_test_user",
        password="integration_test_password",
        dbname="integration_test_db",
    )
    with postgres:
        yield postgres


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    with RedisContainer(image="redis:7-alpine") as redis:
        yield redis


@pytest.fixture(scope="session")
def test_settings(postgres_container: PostgresContainer) -> Settings:
    return Settings(
        postgres_user="integration_test_user",
        postgres_host=postgres_container.get_container_host_ip(),
        postgres_password="integration_test_password",
        postgres_port=int(postgres_container.get_exposed_port(5432)),
        postgres_db="integration_test_db",
        lock_backend="postgres",
        instance_id="itest001",
        fetch_retry_attempts=1,
        fetch_retry_delay_seconds=0,
    )


@pytest.fixture(scope="session")
def migrated_database(test_settings: Settings) -> Settings:
    """Run the alembic migrations once per session."""
    alembic_cfg = Config(str(ROOT_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", test_settings.database_url)
    command.upgrade(alembic_cfg, "head")
    return test_settings


@pytest.fixture(autouse=True)
def override_settings(test_settings: Settings):
    set_settings(test_settings)
    yield
    reset_settings()


@pytest_asyncio.fixture
async def database(migrated_database: Settings):
    """Initialise the session manager on this test's loop; truncate afterwards."""
    sessionmanager.init(migrated_database.database_url, pool_size=5, max_overflow=5)

    yield sessionmanager

    async with sessionmanager.transaction() as session:
        await session.execute(
            text(
                "TRUNCATE TABLE scheduler_locks, failed_parsing_jobs, tournaments "
                "RESTART IDENTITY CASCADE"
            )
        )
    await sessionmanager.close()


@pytest_asyncio.fixture
async def redis_client(redis_container: RedisContainer, test_settings: Settings):
    settings = test_settings.model_copy(
        update={
            "redis_host": redis_container.get_container_host_ip(),
            "redis_port": int(redis_container.get_exposed_port(6379)),
            "redis_db": 1,
        }
    )
    client = create_redis_client(settings)

    yield client

    await client.flushdb()
    await client.aclose()
