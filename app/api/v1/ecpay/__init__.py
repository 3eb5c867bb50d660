"""Callback'и ECPay (серверные уведомления процессора)."""
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EcpayConfig
from app.core.dependencies import get_ecpay_config
from app.database import get_db
from app.services.notification_service import notify_payment_completed
from app.services.webhook_service import EcpayWebhookService, ack_error

logger = logging.getLogger(__name__)

router = APIRouter()


async def read_callback_payload(request: Request) -> dict | None:
    """Поля callback'а: form-urlencoded или JSON-объект."""
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/callback", response_class=PlainTextResponse)
async def ecpay_return_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    config: EcpayConfig = Depends(get_ecpay_config),
):
    """
    Уведомление об оплате (ReturnURL).

    Всегда 200 text/plain: 1|OK или 0|<причина>.
    """
    payload = await read_callback_payload(request)
    if not payload:
        logger.error("ECPay return callback with empty or unreadable body")
        return PlainTextResponse(ack_error("Invalid payload"))

    logger.info(f"ECPay return callback: MerchantTradeNo={payload.get('MerchantTradeNo')}, RtnCode={payload.get('RtnCode')}")

    service = EcpayWebhookService(db, config)
    outcome = await service.handle_return(payload)

    if outcome.paid_order_id:
        background_tasks.add_task(notify_payment_completed, outcome.paid_order_id)

    return PlainTextResponse(outcome.ack)


@router.post("/payment-info", response_class=PlainTextResponse)
async def ecpay_payment_info_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    config: EcpayConfig = Depends(get_ecpay_config),
):
    """Уведомление о созданном штрихкоде (PaymentInfoURL)."""
    payload = await read_callback_payload(request)
    if not payload:
        logger.error("ECPay payment-info callback with empty or unreadable body")
        return PlainTextResponse(ack_error("Invalid payload"))

    logger.info(f"ECPay payment-info callback: MerchantTradeNo={payload.get('MerchantTradeNo')}, RtnCode={payload.get('RtnCode')}")

    service = EcpayWebhookService(db, config)
    outcome = await service.handle_payment_info(payload)
    return PlainTextResponse(outcome.ack)
