from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

# Settings and the engine are read at import time, so the test environment must exist first.
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="tokenvault-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT / 'tokenvault.db'}")
os.environ.setdefault("AUDIT_EXECUTION_MODE", "inline")
os.environ.setdefault("COMPLIANCE_EXECUTION_MODE", "inline")
os.environ.setdefault("COMPLIANCE_REPORT_DIR", str(_TEST_ROOT / "reports"))
os.environ.setdefault("CRYPTO_LOCAL_MASTER_KEY", "11" * 32)
# Equal bounds disable the off-hours rule so alert counts do not depend on the wall clock.
os.environ.setdefault("DETECTOR_OFF_HOURS_START", "0")
os.environ.setdefault("DETECTOR_OFF_HOURS_END", "0")

from tokenvault.core.config import get_settings  # noqa: E402
from tokenvault.domain.models import Base  # noqa: E402
from tokenvault.persistence.db import engine  # noqa: E402
from tokenvault.services.audit import set_audit_queue  # noqa: E402
from tokenvault.services.compliance.storage import LocalFileStore, set_file_store  # noqa: E402
from tokenvault.services.crypto.encryption import reset_encryption_service  # noqa: E402
from tokenvault.services.notifications import set_dispatcher  # noqa: E402
from tokenvault.services.telemetry import reset_counters  # noqa: E402
from tokenvault.tests.utils.recorders import RecordingDispatcher  # noqa: E402


@pytest.fixture(autouse=True)
async def database_schema() -> None:
    # Fresh schema per test keeps vault counts and alert merges isolated.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_singletons(tmp_path: Path) -> None:
    get_settings.cache_clear()
    set_audit_queue(None)
    set_dispatcher(None)
    set_file_store(LocalFileStore(tmp_path / "reports"))
    reset_encryption_service()
    reset_counters()
    yield
    get_settings.cache_clear()
    set_audit_queue(None)
    set_dispatcher(None)
    set_file_store(None)
    reset_encryption_service()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    recorder = RecordingDispatcher()
    set_dispatcher(recorder)
    return recorder
