import os

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///./test_fulfillment.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("RZPAY_KEY", "rzp_test_key")
os.environ.setdefault("RZPAY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("SHIPPING_TOKEN_CACHE", "local")
os.environ.setdefault("SHIPROCKET_ENABLED", "false")
os.environ.setdefault("ENV", "test")

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlmodel import SQLModel
from fulfillment.db.connection import async_engine, async_session
from fulfillment.main import app
from fulfillment.shipping import vendor


@pytest.fixture(autouse=True)
async def fresh_db():
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    vendor.set_vendor_client(None)
    # pooled connections belong to this test's event loop
    await async_engine.dispose()


@pytest.fixture
async def db_session():

    async with async_session() as session:
        yield session


@pytest.fixture
async def ac_client():
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac

