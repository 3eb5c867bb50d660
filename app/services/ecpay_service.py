"""Сервис для работы с ECPay (綠界): создание платежей по штрихкоду."""
import html
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EcpayConfig
from app.core import checkmac
from app.core.exceptions import PaymentServiceError, UpstreamError, UpstreamTimeoutError
from app.models.ecpay_transaction import RAW_REQUEST, EcpayTransaction
from app.models.third_party_order import ThirdPartyOrder

logger = logging.getLogger(__name__)

ECPAY_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"
MERCHANT_TRADE_NO_PREFIX = "TP"
MERCHANT_TRADE_NO_LENGTH = 20  # Ограничение ECPay
MERCHANT_TRADE_NO_ATTEMPTS = 5
ITEM_NAME_MAX_LENGTH = 400

_TRADE_NO_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class BarcodeRequest:
    """Подписанный запрос на создание платежа по штрихкоду."""

    merchant_trade_no: str
    action_url: str
    form_params: dict[str, str]
    expire_at: datetime

    @property
    def payment_form(self) -> dict:
        """Данные для POST-формы, которую магазин показывает покупателю."""
        return {
            "action": self.action_url,
            "method": "POST",
            "params": self.form_params,
        }


def format_ecpay_date(moment: datetime, tz_name: str) -> str:
    """Наивное UTC-время -> строка ECPay yyyy/MM/dd HH:mm:ss в часовом поясе процессора."""
    aware = moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment
    return aware.astimezone(ZoneInfo(tz_name)).strftime(ECPAY_DATE_FORMAT)


def parse_ecpay_date(value: str | None, tz_name: str) -> datetime | None:
    """Строка даты ECPay -> наивное UTC-время. None, если разобрать не удалось."""
    if not value:
        return None
    value = value.strip()
    for fmt in (ECPAY_DATE_FORMAT, "%Y-%m-%d %H:%M:%S", "%Y/%m/%d %H:%M"):
        try:
            local = datetime.strptime(value, fmt)
        except ValueError:
            continue
        aware = local.replace(tzinfo=ZoneInfo(tz_name))
        return aware.astimezone(timezone.utc).replace(tzinfo=None)
    logger.warning(f"Unparseable ECPay date: {value!r}")
    return None


class EcpayService:
    """Сервис для построения и отправки запросов в ECPay."""

    def __init__(
        self,
        db: AsyncSession,
        config: EcpayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.db = db
        self.config = config
        self._transport = transport

    def generate_merchant_trade_no(self, now: datetime | None = None) -> str:
        """TP + yymmddHHMMSS + 6 случайных символов = 20 символов."""
        now = now or datetime.utcnow()
        random_len = MERCHANT_TRADE_NO_LENGTH - len(MERCHANT_TRADE_NO_PREFIX) - 12
        suffix = "".join(secrets.choice(_TRADE_NO_ALPHABET) for _ in range(random_len))
        return f"{MERCHANT_TRADE_NO_PREFIX}{now.strftime('%y%m%d%H%M%S')}{suffix}"

    async def _allocate_merchant_trade_no(self, now: datetime) -> str:
        """Сгенерировать номер, которого еще нет в ecpay_transactions."""
        for _ in range(MERCHANT_TRADE_NO_ATTEMPTS):
            candidate = self.generate_merchant_trade_no(now)
            stmt = select(EcpayTransaction.id).where(EcpayTransaction.merchant_trade_no == candidate)
            result = await self.db.execute(stmt)
            if result.scalar_one_or_none() is None:
                return candidate
            logger.warning(f"MerchantTradeNo collision on {candidate}, regenerating")

        raise PaymentServiceError("Не удалось создать платеж, повторите запрос")

    def build_params(self, order: ThirdPartyOrder, merchant_trade_no: str, now: datetime) -> dict:
        """Параметры BARCODE-платежа без CheckMacValue."""
        item_name = order.product_info
        if len(item_name) > ITEM_NAME_MAX_LENGTH:
            item_name = item_name[:ITEM_NAME_MAX_LENGTH - 3] + "..."

        return {
            "MerchantID": self.config.merchant_id,
            "MerchantTradeNo": merchant_trade_no,
            "MerchantTradeDate": format_ecpay_date(now, self.config.timezone),
            "PaymentType": "aio",
            "TotalAmount": order.amount,
            "TradeDesc": self.config.trade_desc,
            "ItemName": item_name,
            "ReturnURL": self.config.return_url,
            "PaymentInfoURL": self.config.payment_info_url,
            "ChoosePayment": "BARCODE",
            "EncryptType": 1,
            "StoreExpireDate": self.config.store_expire_days,
        }

    async def build_barcode_request(
        self,
        order: ThirdPartyOrder,
        now: datetime | None = None,
    ) -> BarcodeRequest:
        """
        Собрать и подписать запрос на оплату штрихкодом.

        Транзакция ECPay сохраняется (flush) до возврата, чтобы callback,
        пришедший раньше ответа клиенту, нашел заказ. Commit выполняет
        вызывающий код.
        """
        now = now or datetime.utcnow()
        merchant_trade_no = await self._allocate_merchant_trade_no(now)

        params = self.build_params(order, merchant_trade_no, now)
        params[checkmac.CHECK_MAC_FIELD] = checkmac.sign(
            params,
            self.config.hash_key.get_secret_value(),
            self.config.hash_iv.get_secret_value(),
        )
        form_params = {key: checkmac.stringify_value(value) for key, value in params.items()}

        expire_at = now + timedelta(days=self.config.store_expire_days)

        transaction = EcpayTransaction(
            third_party_order_id=order.id,
            merchant_trade_no=merchant_trade_no,
            amount=order.amount,
            payment_type="BARCODE",
            raw_response={RAW_REQUEST: form_params},
        )
        self.db.add(transaction)

        order.payment_url = self.config.action_url
        order.expire_at = expire_at
        order.updated_at = now

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.error(f"MerchantTradeNo {merchant_trade_no} taken concurrently")
            raise PaymentServiceError("Не удалось создать платеж, повторите запрос")

        logger.info(f"ECPay BARCODE request built for order {order.id}: {merchant_trade_no}, amount={order.amount}")

        return BarcodeRequest(
            merchant_trade_no=merchant_trade_no,
            action_url=self.config.action_url,
            form_params=form_params,
            expire_at=expire_at,
        )

    def render_form(self, request: BarcodeRequest) -> str:
        """HTML-форма с автоматической отправкой в ECPay."""
        inputs = "\n".join(
            f'    <input type="hidden" name="{html.escape(key)}" value="{html.escape(value)}">'
            for key, value in request.form_params.items()
        )
        return (
            f'<form id="ecpay-form" method="post" action="{html.escape(request.action_url)}">\n'
            f"{inputs}\n"
            "</form>\n"
            '<script>document.getElementById("ecpay-form").submit();</script>'
        )

    async def submit(self, request: BarcodeRequest) -> str:
        """
        Отправить форму в ECPay с сервера.

        Повторов внутри нет: таймаут возвращается клиенту как UpstreamTimeoutError,
        повтор безопасен благодаря ключу идемпотентности заказа.
        """
        async with httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    request.action_url,
                    data=request.form_params,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.TimeoutException as e:
                logger.error(f"ECPay timeout for {request.merchant_trade_no}: {e!r}")
                raise UpstreamTimeoutError("ECPay не ответил вовремя, повторите запрос позже")
            except httpx.HTTPError as e:
                logger.error(f"ECPay request failed for {request.merchant_trade_no}: {e!r}")
                raise UpstreamError("Ошибка соединения с ECPay")

        if response.status_code >= 400:
            logger.error(f"ECPay responded {response.status_code} for {request.merchant_trade_no}")
            raise UpstreamError(f"ECPay вернул ошибку {response.status_code}")

        logger.info(f"ECPay accepted {request.merchant_trade_no}: HTTP {response.status_code}")
        return response.text
