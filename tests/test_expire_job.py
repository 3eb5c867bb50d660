from datetime import datetime, timedelta

import pytest

from app.main import expire_stale_orders
from app.models.third_party_order import ORDER_STATUS_EXPIRED, ORDER_STATUS_PENDING
from tests.factories import create_order_with_transaction


@pytest.mark.asyncio
async def test_scheduled_sweep_expires_stale_orders(db, session_factory, ecpay_config):
    stale, _ = await create_order_with_transaction(db, ecpay_config, "OLD", now=datetime.utcnow() - timedelta(days=8))
    fresh, _ = await create_order_with_transaction(db, ecpay_config, "NEW")

    await expire_stale_orders()

    await db.refresh(stale)
    await db.refresh(fresh)
    assert stale.status == ORDER_STATUS_EXPIRED
    assert fresh.status == ORDER_STATUS_PENDING


@pytest.mark.asyncio
async def test_scheduled_sweep_swallows_errors(monkeypatch):
    """Ошибка задачи логируется и не останавливает планировщик."""
    from app import database

    def broken_factory():
        raise RuntimeError("database is down")

    monkeypatch.setattr(database, "AsyncSessionLocal", broken_factory)

    await expire_stale_orders()
