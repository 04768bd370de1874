"""
Tests for database settings, the retry decorator and the session provider.
"""

import pytest
import pytest_asyncio

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from database.connection import (
    DatabaseSettings,
    create_retry_decorator,
    create_test_provider,
    get_pool_settings,
)
from database.models import ControlledSubstance


class TestDatabaseSettings:
    def test_url_from_parts(self):
        settings = DatabaseSettings(host="db", port=5433, database="cs", user="u", password="p")
        assert settings.get_url() == "postgresql+psycopg2://u:p@db:5433/cs"
        assert settings.get_url(async_mode=True) == "postgresql+asyncpg://u:p@db:5433/cs"

    def test_full_url_wins(self):
        settings = DatabaseSettings(host="ignored", url="postgresql://u:p@prod/cs")
        assert settings.get_url() == "postgresql://u:p@prod/cs"
        assert settings.get_url(async_mode=True) == "postgresql+asyncpg://u:p@prod/cs"

    def test_sqlite_url(self):
        settings = DatabaseSettings(url="sqlite:///compliance.db")
        assert settings.is_sqlite()
        assert settings.get_url(async_mode=True) == "sqlite+aiosqlite:///compliance.db"
        assert get_pool_settings(settings) == {}

    def test_pool_settings_for_postgres(self):
        pool = get_pool_settings(DatabaseSettings(pool_size=7))
        assert pool["pool_size"] == 7
        assert pool["pool_pre_ping"] is True

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db.internal")
        monkeypatch.setenv("DB_PORT", "6543")
        monkeypatch.setenv("DB_ECHO", "TRUE")
        monkeypatch.delenv("DATABASE_URL", raising=False)

        settings = DatabaseSettings.from_env()
        assert settings.host == "db.internal"
        assert settings.port == 6543
        assert settings.echo is True
        assert settings.url is None


class TestRetry:
    def test_retries_operational_error(self):
        calls = []

        @create_retry_decorator(max_attempts=3, min_wait=0, max_wait=0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_attempts(self):
        calls = []

        @create_retry_decorator(max_attempts=2, min_wait=0, max_wait=0)
        def down():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        with pytest.raises(OperationalError):
            down()
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        calls = []

        @create_retry_decorator(max_attempts=3, min_wait=0, max_wait=0)
        def broken():
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("duplicate"))

        with pytest.raises(IntegrityError):
            broken()
        assert len(calls) == 1


@pytest_asyncio.fixture
async def provider():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    provider = create_test_provider(async_engine=engine)
    await provider.create_tables()
    yield provider
    await provider.close()


async def substance_codes(provider):
    async with provider.async_session_scope() as session:
        result = await session.execute(select(ControlledSubstance.substance_code))
        return sorted(result.scalars().all())


class TestSessionProvider:
    @pytest.mark.asyncio
    async def test_scope_commits(self, provider):
        async with provider.async_session_scope() as session:
            session.add(ControlledSubstance(substance_code="MORPH", substance_name="Morphine"))

        assert await substance_codes(provider) == ["MORPH"]

    @pytest.mark.asyncio
    async def test_scope_rolls_back_on_error(self, provider):
        with pytest.raises(RuntimeError):
            async with provider.async_session_scope() as session:
                session.add(ControlledSubstance(substance_code="MORPH", substance_name="Morphine"))
                await session.flush()
                raise RuntimeError("handler failed")

        assert await substance_codes(provider) == []

    @pytest.mark.asyncio
    async def test_unit_of_work_requires_commit(self, provider):
        async with await provider.get_async_unit_of_work() as uow:
            uow.session.add(ControlledSubstance(substance_code="DIAZ", substance_name="Diazepam"))
            await uow.session.flush()
        assert await substance_codes(provider) == []

        async with await provider.get_async_unit_of_work() as uow:
            uow.session.add(ControlledSubstance(substance_code="DIAZ", substance_name="Diazepam"))
            await uow.commit()
        assert await substance_codes(provider) == ["DIAZ"]

    @pytest.mark.asyncio
    async def test_health_check(self, provider):
        assert await provider.health_check() is True

    @pytest.mark.asyncio
    async def test_sync_engine_requires_init(self, provider):
        with pytest.raises(RuntimeError):
            provider.engine
