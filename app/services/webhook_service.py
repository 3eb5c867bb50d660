"""Обработка callback'ов ECPay (ReturnURL и PaymentInfoURL)."""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EcpayConfig
from app.core import checkmac
from app.core.exceptions import (
    AmountMismatchError,
    NotFoundError,
    OrderStateError,
    PaymentServiceError,
    SignatureError,
)
from app.services.barcode_service import format_barcode
from app.services.ecpay_service import parse_ecpay_date
from app.services.third_party_order_service import ThirdPartyOrderService

logger = logging.getLogger(__name__)

ACK_OK = "1|OK"
RTN_CODE_PAID = "1"
# PaymentInfoURL: 10100073 - штрихкод/код для оплаты создан
RTN_CODE_BARCODE_ISSUED = "10100073"


def ack_error(reason: str) -> str:
    """Отрицательное подтверждение для ECPay."""
    return f"0|{reason}"


class _CallbackBase(BaseModel):
    """Общие поля callback'ов ECPay."""

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    merchant_id: str | None = Field(default=None, alias="MerchantID")
    merchant_trade_no: str = Field(alias="MerchantTradeNo")
    rtn_code: str = Field(alias="RtnCode")
    rtn_msg: str | None = Field(default=None, alias="RtnMsg")
    trade_no: str | None = Field(default=None, alias="TradeNo")
    trade_amt: int = Field(alias="TradeAmt")
    payment_type: str | None = Field(default=None, alias="PaymentType")
    check_mac_value: str | None = Field(default=None, alias="CheckMacValue")


class ReturnCallbackPayload(_CallbackBase):
    """Уведомление об оплате (ReturnURL)."""

    kind: Literal["return"] = "return"
    payment_date: str | None = Field(default=None, alias="PaymentDate")


class PaymentInfoCallbackPayload(_CallbackBase):
    """Уведомление о созданном штрихкоде (PaymentInfoURL)."""

    kind: Literal["payment_info"] = "payment_info"
    barcode_1: str | None = Field(default=None, validation_alias=AliasChoices("Barcode1", "Barcode_1"))
    barcode_2: str | None = Field(default=None, validation_alias=AliasChoices("Barcode2", "Barcode_2"))
    barcode_3: str | None = Field(default=None, validation_alias=AliasChoices("Barcode3", "Barcode_3"))
    payment_no: str | None = Field(default=None, alias="PaymentNo")
    expire_date: str | None = Field(default=None, alias="ExpireDate")


@dataclass
class CallbackOutcome:
    """Результат обработки callback'а."""

    ack: str
    paid_order_id: uuid.UUID | None = None

    @property
    def ok(self) -> bool:
        return self.ack == ACK_OK


class EcpayWebhookService:
    """
    Обработчик callback'ов ECPay.

    Подпись проверяется до любого разбора полей. Метод handle_* никогда
    не выбрасывает исключение: ECPay получает 1|OK или 0|<причина>.
    """

    def __init__(self, db: AsyncSession, config: EcpayConfig):
        self.db = db
        self.config = config
        self.orders = ThirdPartyOrderService(db)

    def verify_signature(self, payload: dict[str, Any]) -> bool:
        """Проверить CheckMacValue по исходному набору полей."""
        return checkmac.verify(
            payload,
            payload.get(checkmac.CHECK_MAC_FIELD),
            self.config.hash_key.get_secret_value(),
            self.config.hash_iv.get_secret_value(),
        )

    def require_valid_signature(self, payload: dict[str, Any]) -> None:
        """
        Raises:
            SignatureError: CheckMacValue отсутствует или не совпадает
        """
        if not self.verify_signature(payload):
            raise SignatureError(f"Неверный CheckMacValue для {payload.get('MerchantTradeNo')}")

    def _parse(
        self,
        payload: dict[str, Any],
        model: type[_CallbackBase],
        name: str,
    ) -> _CallbackBase | CallbackOutcome:
        """Проверить подпись и разобрать payload. Ошибка превращается в отрицательный ответ."""
        try:
            self.require_valid_signature(payload)
            data = model.model_validate(payload)
        except SignatureError as e:
            logger.error(f"ECPay {name} callback rejected: {e.message}")
            return CallbackOutcome(ack_error("CheckMacValue Error"))
        except PydanticValidationError as e:
            logger.error(f"Malformed ECPay {name} callback {payload.get('MerchantTradeNo')}: {e.errors()}")
            return CallbackOutcome(ack_error("Invalid payload"))
        except Exception as e:
            logger.error(f"Unexpected error reading ECPay {name} callback: {e}", exc_info=True)
            return CallbackOutcome(ack_error("Processing error"))

        if data.merchant_id and data.merchant_id != self.config.merchant_id:
            logger.error(f"ECPay callback for foreign MerchantID {data.merchant_id} ({data.merchant_trade_no})")
            return CallbackOutcome(ack_error("MerchantID mismatch"))
        return data

    async def handle_return(self, payload: dict[str, Any]) -> CallbackOutcome:
        """Обработать уведомление об оплате."""
        data = self._parse(payload, ReturnCallbackPayload, "return")
        if isinstance(data, CallbackOutcome):
            return data

        tz = self.config.timezone
        try:
            if data.rtn_code != RTN_CODE_PAID:
                # Неуспешная оплата: сохраняем ответ, статус заказа не меняется
                await self.orders.record_processor_response(
                    data.merchant_trade_no,
                    trade_no=data.trade_no,
                    payment_type=data.payment_type,
                    payment_date=parse_ecpay_date(data.payment_date, tz),
                    rtn_code=data.rtn_code,
                    rtn_msg=data.rtn_msg,
                    raw_payload=payload,
                )
                logger.info(
                    f"ECPay reported RtnCode={data.rtn_code} ({data.rtn_msg}) for {data.merchant_trade_no}"
                )
                return CallbackOutcome(ACK_OK)

            paid_at = parse_ecpay_date(data.payment_date, tz)
            if paid_at is None:
                logger.error(f"ECPay paid callback without valid PaymentDate: {data.merchant_trade_no}")
                return CallbackOutcome(ack_error("Invalid PaymentDate"))

            order, transitioned = await self.orders.mark_paid(
                data.merchant_trade_no,
                paid_at=paid_at,
                amount=data.trade_amt,
                trade_no=data.trade_no,
                payment_type=data.payment_type,
                rtn_code=data.rtn_code,
                rtn_msg=data.rtn_msg,
                raw_payload=payload,
            )
        except NotFoundError:
            logger.warning(f"ECPay callback for unknown MerchantTradeNo {data.merchant_trade_no}")
            return CallbackOutcome(ack_error("Order not found"))
        except AmountMismatchError as e:
            logger.critical(f"ECPay amount mismatch: {e.message}")
            return CallbackOutcome(ack_error("Amount mismatch"))
        except OrderStateError as e:
            logger.error(f"ECPay payment for closed order: {e.message}")
            return CallbackOutcome(ack_error("Order closed"))
        except PaymentServiceError as e:
            logger.error(f"ECPay return callback failed for {data.merchant_trade_no}: {e.message}")
            return CallbackOutcome(ack_error("Processing error"))
        except Exception as e:
            logger.error(f"Unexpected error processing ECPay return callback {data.merchant_trade_no}: {e}", exc_info=True)
            return CallbackOutcome(ack_error("Processing error"))

        if not transitioned:
            logger.info(f"Duplicate ECPay payment notification for order {order.id}, ignored")
            return CallbackOutcome(ACK_OK)

        return CallbackOutcome(ACK_OK, paid_order_id=order.id)

    async def handle_payment_info(self, payload: dict[str, Any]) -> CallbackOutcome:
        """Обработать уведомление о штрихкоде."""
        data = self._parse(payload, PaymentInfoCallbackPayload, "payment-info")
        if isinstance(data, CallbackOutcome):
            return data

        if data.rtn_code != RTN_CODE_BARCODE_ISSUED:
            logger.warning(
                f"ECPay payment-info RtnCode={data.rtn_code} ({data.rtn_msg}) for {data.merchant_trade_no}"
            )

        try:
            record = format_barcode(
                data.barcode_1,
                data.barcode_2,
                data.barcode_3,
                data.payment_no,
                data.expire_date,
                self.config.qrcode_url,
            )
            await self.orders.attach_barcode(
                data.merchant_trade_no,
                record,
                expire_at=parse_ecpay_date(data.expire_date, self.config.timezone),
                trade_no=data.trade_no,
                raw_payload=payload,
            )
        except NotFoundError:
            logger.warning(f"ECPay barcode for unknown MerchantTradeNo {data.merchant_trade_no}")
            return CallbackOutcome(ack_error("Order not found"))
        except PaymentServiceError as e:
            logger.error(f"ECPay payment-info callback failed for {data.merchant_trade_no}: {e.message}")
            return CallbackOutcome(ack_error("Processing error"))
        except Exception as e:
            logger.error(f"Unexpected error processing ECPay payment-info {data.merchant_trade_no}: {e}", exc_info=True)
            return CallbackOutcome(ack_error("Processing error"))

        return CallbackOutcome(ACK_OK)
