from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from hookrelay.core.config import Settings
from hookrelay.domain.models import Base
from hookrelay.persistence.db import build_session_factory
from hookrelay.tests.utils.fakes import FakeClock


@pytest.fixture
async def engine(tmp_path):
    # One sqlite file per test keeps delivery rows isolated without cleanup passes.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hookrelay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        webhook_execution_mode="inline",
        webhook_max_concurrency=4,
        webhook_sweep_interval_s=3600,
        webhook_sweep_grace_s=5,
        webhook_max_payload_bytes=4096,
    )
