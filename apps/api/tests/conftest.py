import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from database import Base, build_session_maker, configure_sqlite_locking
from main import app
from routers import rate_limit
from services.credits import CreditService, get_credit_service


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = configure_sqlite_locking(create_async_engine(f"sqlite+aiosqlite:///{db_path}"))

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_maker(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def ledger(session_maker):
    return CreditService(session_maker)


@pytest_asyncio.fixture
async def funded_account(ledger):
    """Account holding 10 purchased credits."""
    await ledger.ensure_account("funded-user")
    await ledger.add_credits("funded-user", 10, transaction_type="purchase", reference_id="seed")
    return "funded-user"


@pytest_asyncio.fixture
async def api_client(ledger):
    app.dependency_overrides[get_credit_service] = lambda: ledger
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_credit_service, None)


@pytest_asyncio.fixture
async def remote_api_client(ledger):
    """Client whose socket peer is a public address rather than loopback."""
    app.dependency_overrides[get_credit_service] = lambda: ledger
    transport = ASGITransport(app=app, client=("203.0.113.200", 51234))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_credit_service, None)
