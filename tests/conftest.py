import os
import tempfile

# Must be set before ticketdesk is imported: config is read at import time
_DB_DIR = tempfile.mkdtemp(prefix="ticketdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["TICKET_SIGNING_SECRET"] = "test_secret"

import httpx
import pytest
import pytest_asyncio
from fakeredis import aioredis

from ticketdesk.db import Base, SessionLocal, engine
from ticketdesk.deps import get_redis
from ticketdesk.main import app


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest_asyncio.fixture(scope="function")
async def redis():
    r = aioredis.FakeRedis(decode_responses=True)
    await r.flushall()
    try:
        yield r
    finally:
        await r.flushall()
        await r.aclose()


@pytest_asyncio.fixture(scope="function")
async def client(redis):
    app.dependency_overrides[get_redis] = lambda: redis
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
