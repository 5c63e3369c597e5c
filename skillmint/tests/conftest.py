from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path

# Point the engine at a throwaway SQLite file before any skillmint module builds it.
_DB_DIR = Path(tempfile.mkdtemp(prefix="skillmint-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'skillmint.db'}")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("KEK", "7f" * 32)
os.environ.pop("REASONER_CREDENTIAL", None)

import pytest  # noqa: E402

from skillmint.core.config import get_settings  # noqa: E402
from skillmint.domain.models import Base  # noqa: E402
from skillmint.persistence.db import engine  # noqa: E402
from skillmint.services.crypto.kms import reset_kms_provider  # noqa: E402


async def _create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build the schema once; every test seeds its own uniquely named rows.
    asyncio.run(_create_schema())
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_cached_settings() -> None:
    # Tests may monkeypatch env; rebuild settings and the KEK provider around each one.
    get_settings.cache_clear()
    reset_kms_provider()
    yield
    get_settings.cache_clear()
    reset_kms_provider()
