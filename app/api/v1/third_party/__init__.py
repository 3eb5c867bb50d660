"""Gateway API для сторонних систем: штрихкоды для оплаты в магазинах у дома."""
import logging
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import AliasChoices, BaseModel, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EcpayConfig
from app.core.dependencies import get_ecpay_config, require_api_key
from app.core.exceptions import NotFoundError
from app.database import get_db
from app.models.api_key import ApiKey
from app.models.third_party_order import ThirdPartyOrder
from app.services.ecpay_service import EcpayService, format_ecpay_date
from app.services.third_party_order_service import ThirdPartyOrderService

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateBarcodeRequest(BaseModel):
    """Запрос на создание платежа по штрихкоду."""

    client_order_id: str = Field(
        min_length=1,
        max_length=100,
        validation_alias=AliasChoices("client_order_id", "external_ref"),
    )
    amount: StrictInt  # NTD
    description: str = Field(min_length=1)
    callback_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("callback_url", "notify_url"),
    )


class PaymentFormResponse(BaseModel):
    """Форма для отправки покупателя в ECPay."""

    action: str
    method: str
    params: dict[str, str]


class CreateBarcodeResponse(BaseModel):
    """Ответ на создание платежа."""

    success: bool = True
    order_id: uuid.UUID
    client_order_id: str
    merchant_trade_no: str
    amount: int
    status: str
    payment_url: str
    payment_form: PaymentFormResponse
    expire_date: str


class BarcodeInfoResponse(BaseModel):
    """Данные штрихкода."""

    barcode_1: str
    barcode_2: str
    barcode_3: str
    full_barcode: str
    compact: str
    segments: list[str]
    segments_count: int
    payment_no: str | None = None
    expire_date: str | None = None
    barcode_url: str | None = None


class OrderStatusResponse(BaseModel):
    """Статус заказа."""

    success: bool = True
    order_id: uuid.UUID
    client_order_id: str
    amount: int
    status: str
    barcode_status: str
    barcode_available: bool
    barcode: BarcodeInfoResponse | None = None
    expire_at: datetime | None = None
    paid_at: datetime | None = None
    created_at: datetime


class OrderListResponse(BaseModel):
    """Страница заказов клиента."""

    success: bool = True
    items: list[OrderStatusResponse]
    total: int
    page: int
    limit: int


def order_to_status(order: ThirdPartyOrder) -> OrderStatusResponse:
    """Преобразовать заказ в ответ API."""
    barcode = None
    if order.barcode_available:
        barcode = BarcodeInfoResponse(**order.barcode_data)

    return OrderStatusResponse(
        order_id=order.id,
        client_order_id=order.external_order_id,
        amount=order.amount,
        status=order.status,
        barcode_status=order.barcode_status,
        barcode_available=order.barcode_available,
        barcode=barcode,
        expire_at=order.expire_at,
        paid_at=order.paid_at,
        created_at=order.created_at,
    )


@router.post("/barcode/create", response_model=CreateBarcodeResponse, status_code=status.HTTP_201_CREATED)
async def create_barcode(
    request: CreateBarcodeRequest,
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
    config: EcpayConfig = Depends(get_ecpay_config),
):
    """
    Создать заказ и подписанный запрос BARCODE в ECPay.

    Повторный client_order_id от той же системы возвращает 409.
    """
    order_service = ThirdPartyOrderService(db)
    order = await order_service.create_order(
        external_order_id=request.client_order_id,
        client_system=api_key.client_system,
        amount=request.amount,
        product_info=request.description,
        callback_url=request.callback_url,
        api_key_id=api_key.id,
        min_amount=config.min_amount,
        max_amount=config.max_amount,
    )

    ecpay_service = EcpayService(db, config)
    barcode_request = await ecpay_service.build_barcode_request(order)

    order_id = order.id
    external_order_id = order.external_order_id
    amount = order.amount
    order_status = order.status
    await db.commit()

    logger.info(
        f"Barcode order {order_id} created for {api_key.client_system}: "
        f"client_order_id={external_order_id}, amount={amount}, {barcode_request.merchant_trade_no}"
    )

    if config.submit_on_create:
        await ecpay_service.submit(barcode_request)

    return CreateBarcodeResponse(
        order_id=order_id,
        client_order_id=external_order_id,
        merchant_trade_no=barcode_request.merchant_trade_no,
        amount=amount,
        status=order_status,
        payment_url=barcode_request.action_url,
        payment_form=PaymentFormResponse(**barcode_request.payment_form),
        expire_date=format_ecpay_date(barcode_request.expire_at, config.timezone),
    )


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    """Список заказов клиентской системы."""
    service = ThirdPartyOrderService(db)
    orders, total = await service.list_orders(
        client_system=api_key.client_system,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return OrderListResponse(
        items=[order_to_status(order) for order in orders],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/orders/{order_id}/status", response_model=OrderStatusResponse)
async def get_order_status(
    order_id: uuid.UUID,
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    """Статус заказа. Просроченный pending заказ переводится в expired при запросе."""
    service = ThirdPartyOrderService(db)
    order = await service.get_order_for_client(order_id, api_key.client_system)

    expired = await service.expire_stale_orders(order_id=order.id)
    if expired:
        await db.refresh(order)
    return order_to_status(order)


@router.get("/orders/{order_id}/barcode", response_model=BarcodeInfoResponse)
async def get_order_barcode(
    order_id: uuid.UUID,
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    """Штрихкод заказа, если он уже создан."""
    service = ThirdPartyOrderService(db)
    order = await service.get_order_for_client(order_id, api_key.client_system)

    if not order.barcode_available:
        raise NotFoundError("Штрихкод еще не создан")

    return BarcodeInfoResponse(**order.barcode_data)
