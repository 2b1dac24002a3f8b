from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before statewatch.persistence.db is imported.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="statewatch-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "STATEWATCH_TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(_TEST_DB_DIR, 'statewatch.db')}",
)
os.environ.setdefault("DETECTOR_RETRY_BACKOFF_MS", "10")
os.environ.setdefault("CURSOR_SECRET", "test-cursor-secret")

import pytest  # noqa: E402

from statewatch.core.config import get_settings  # noqa: E402
from statewatch.persistence.db import create_schema, drop_schema, engine  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema():
    # Every test starts from empty tables; the append-only triggers come with create_all.
    get_settings.cache_clear()
    await create_schema()
    yield
    await drop_schema()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
    get_settings.cache_clear()
