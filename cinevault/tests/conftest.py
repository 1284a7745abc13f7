from __future__ import annotations

import os
from pathlib import Path
import tempfile

# Point settings at a throwaway SQLite file and fake gateways before cinevault is imported.
_DB_PATH = Path(tempfile.gettempdir()) / f"cinevault-test-{os.getpid()}.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-entropy-for-hs256")
os.environ.setdefault("BILLING_PROVIDER", "fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("NOTIFY_PROVIDER", "fake")
os.environ.setdefault("WHATSAPP_PROVIDER", "fake")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")

import pytest  # noqa: E402

from cinevault.core.config import get_settings  # noqa: E402
from cinevault.domain.models import Base  # noqa: E402
from cinevault.persistence.db import engine  # noqa: E402
from cinevault.providers.billing.factory import reset_billing_gateway  # noqa: E402
from cinevault.providers.notify.factory import reset_notify_gateways  # noqa: E402
from cinevault.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    yield
    get_settings.cache_clear()
    reset_billing_gateway()
    reset_notify_gateways()
    reset_telemetry()


def pytest_sessionfinish(session, exitstatus) -> None:
    _DB_PATH.unlink(missing_ok=True)
