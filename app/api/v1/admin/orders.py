"""Админ: заказы сторонних систем."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from datetime import datetime
import uuid

from app.database import get_db
from app.core.auth import get_current_admin
from app.models.third_party_order import ThirdPartyOrder
from app.services.third_party_order_service import ThirdPartyOrderService

router = APIRouter()


class AdminOrderResponse(BaseModel):
    """Заказ сторонней системы."""

    id: uuid.UUID
    external_order_id: str
    client_system: str
    amount: int
    product_info: str
    status: str
    barcode_status: str
    payment_code: str | None
    expire_at: datetime | None
    paid_at: datetime | None
    created_at: datetime
    updated_at: datetime


class AdminOrderListResponse(BaseModel):
    items: list[AdminOrderResponse]
    total: int
    page: int
    limit: int


def to_response(order: ThirdPartyOrder) -> AdminOrderResponse:
    return AdminOrderResponse.model_validate(order, from_attributes=True)


@router.get("/third-party-orders", response_model=AdminOrderListResponse)
async def list_third_party_orders(
    client_system: str | None = None,
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Все заказы сторонних систем с фильтрами."""
    service = ThirdPartyOrderService(db)
    orders, total = await service.list_orders(
        client_system=client_system,
        status=status,
        page=page,
        limit=limit,
    )
    return AdminOrderListResponse(
        items=[to_response(order) for order in orders],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/third-party-orders/{order_id}/cancel", response_model=AdminOrderResponse)
async def cancel_third_party_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Отменить заказ в статусе pending. Для остальных статусов 409."""
    service = ThirdPartyOrderService(db)
    order = await service.cancel_order(order_id)
    return to_response(order)
