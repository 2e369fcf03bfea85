import os

os.environ["JWT_SECRET_KEY"] = "test-secret"
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DEFAULT_DATABASE_URI"] = TEST_DATABASE_URL
os.environ["ENVIRONMENT"] = "development"
os.environ["WEBAUTHN_RP_ID"] = "localhost"
os.environ["WEBAUTHN_ORIGINS"] = '["http://localhost:3000"]'

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

from passkeyrp.core.database import Base, User, db_manager, engine
from passkeyrp.core.encryption import encryption_utils
from passkeyrp.manager.asynchronous import PasskeyService
from authenticator import SoftwareAuthenticator


def pytest_collection_modifyitems(items):
    """Run every async test on the session loop the engine's connections live on."""
    session_scope_marker = pytest.mark.asyncio(loop_scope="session")
    for item in items:
        if pytest_asyncio.is_async_test(item):
            item.add_marker(session_scope_marker, append=False)


@pytest.fixture(scope="session", autouse=True)
async def tables():
    """Create all tables in the test database for the session."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
async def clean_tables(tables):
    """Every test starts from empty tables (rate limits count audit rows)."""
    yield
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())


@pytest.fixture
def service():
    return PasskeyService(db_manager)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
async def user():
    """A bare user row, for tests that do not need a registered credential."""
    async with db_manager.get_db() as db:
        user = User(username="plain_user", display_name="Plain", webauthn_user_id=encryption_utils.gen_random_bytes(32))
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def registered(service, authenticator):
    """Registers 'alice' through the real ceremony and returns the CeremonyResult."""
    options = await service.registration.begin(user_handle="alice", display_name="Alice")
    return await service.registration.complete(authenticator.create(options), ip_address="127.0.0.1")


@pytest.fixture(scope="session")
def app():
    """Define a minimal FastAPI app for testing."""
    from passkeyrp import init_app
    app = FastAPI()
    init_app(app)
    return app


@pytest.fixture
async def fastapi_client(app):
    """Provide an AsyncClient for testing the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
