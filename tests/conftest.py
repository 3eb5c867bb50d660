import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import database
from app.config import EcpayConfig
from app.core.rate_limit import RateLimiter, get_rate_limiter
from app.database import Base
from app.main import app
from app.models.api_key import ApiKey
from tests.factories import HASH_IV, HASH_KEY, TEST_API_KEY


@pytest.fixture
def ecpay_config() -> EcpayConfig:
    """Конфигурация тестового стенда ECPay."""
    return EcpayConfig(
        merchant_id="3002607",
        hash_key=SecretStr(HASH_KEY),
        hash_iv=SecretStr(HASH_IV),
        action_url="https://payment-stage.ecpay.com.tw/Cashier/AioCheckOut/V5",
        return_url="https://shop.example/api/v1/third-party/ecpay/callback",
        payment_info_url="https://shop.example/api/v1/third-party/ecpay/payment-info",
        qrcode_url="https://payment-stage.ecpay.com.tw/SP/CreateQRCode?qdata=",
    )


@pytest_asyncio.fixture
async def session_factory(monkeypatch):
    """In-memory SQLite, общая для запроса, middleware и фоновых задач."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path, monkeypatch):
    """
    SQLite в файле с отдельным соединением на сессию.

    Параллельные запросы пишут через разные соединения, как в production,
    и сериализуются блокировкой базы.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(database, "AsyncSessionLocal", factory)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def limiter() -> RateLimiter:
    """Rate limiter без Redis."""
    return RateLimiter(None, window_seconds=60)


@pytest_asyncio.fixture
async def client(session_factory, ecpay_config, limiter):
    """HTTP-клиент к приложению без lifespan (без Redis и планировщика)."""
    app.state.ecpay_config = ecpay_config
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    transport = ASGITransport(app=app, client=("203.0.113.10", 51000))
    async with AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_key(db) -> ApiKey:
    """Активный API-ключ клиентской системы shop."""
    key = ApiKey(
        key_name="shop-frontend",
        api_key=TEST_API_KEY,
        client_system="shop",
        rate_limit=100,
        is_active=True,
    )
    db.add(key)
    await db.commit()
    return key
