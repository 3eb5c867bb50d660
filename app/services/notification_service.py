"""Уведомление сторонних систем об оплате заказа."""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime

import httpx
from sqlalchemy import select

from app import database
from app.config import settings
from app.models.api_key import ApiKey
from app.models.third_party_order import ThirdPartyOrder

logger = logging.getLogger(__name__)

EVENT_PAYMENT_COMPLETED = "payment.completed"
SIGNATURE_HEADER = "X-Signature"


def build_payment_event(order: ThirdPartyOrder) -> dict:
    """Тело события payment.completed."""
    return {
        "event": EVENT_PAYMENT_COMPLETED,
        "order_id": str(order.id),
        "client_order_id": order.external_order_id,
        "amount": order.amount,
        "status": order.status,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "timestamp": datetime.utcnow().isoformat(),
    }


def sign_payload(body: bytes, secret: str) -> str:
    """HMAC-SHA256 тела запроса ключом клиента."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


async def notify_payment_completed(
    order_id: uuid.UUID,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """
    Отправить событие об оплате на callback_url клиента.

    Выполняется как фоновая задача после ответа ECPay, поэтому открывает
    собственную сессию. Ошибки только логируются.
    """
    try:
        async with database.AsyncSessionLocal() as db:
            order = (await db.execute(
                select(ThirdPartyOrder).where(ThirdPartyOrder.id == order_id)
            )).scalar_one_or_none()

            if not order or not order.callback_url:
                return False

            stmt = select(ApiKey).where(ApiKey.is_active.is_(True))
            if order.api_key_id:
                stmt = stmt.where(ApiKey.id == order.api_key_id)
            else:
                stmt = stmt.where(ApiKey.client_system == order.client_system)
            api_key = (await db.execute(stmt.limit(1))).scalar_one_or_none()

            if not api_key:
                logger.warning(f"No active API key for {order.client_system}, notification for order {order.id} skipped")
                return False

            callback_url = order.callback_url
            event = build_payment_event(order)
            secret = api_key.api_key
    except Exception as e:
        logger.error(f"Failed to load order {order_id} for notification: {e}", exc_info=True)
        return False

    body = json.dumps(event, ensure_ascii=False).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(body, secret),
    }

    try:
        async with httpx.AsyncClient(timeout=settings.client_notify_timeout, transport=transport) as client:
            response = await client.post(callback_url, content=body, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Client notification for order {order_id} failed: {e!r}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Client callback for order {order_id} responded {response.status_code}")
        return False

    logger.info(f"Client notified about payment of order {order_id}")
    return True
