"""Сервис заказов сторонних систем: хранение и машина состояний."""
import logging
import uuid
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AmountMismatchError,
    DuplicateError,
    NotFoundError,
    OrderStateError,
    ValidationError,
)
from app.models.ecpay_transaction import RAW_PAYMENT_INFO, RAW_RETURN, EcpayTransaction
from app.models.third_party_order import (
    BARCODE_STATUS_EXPIRED,
    BARCODE_STATUS_GENERATED,
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING,
    ThirdPartyOrder,
)
from app.services.barcode_service import BarcodeRecord

logger = logging.getLogger(__name__)

ORDER_STATUSES = (ORDER_STATUS_PENDING, ORDER_STATUS_PAID, ORDER_STATUS_EXPIRED, ORDER_STATUS_CANCELLED)
MAX_PRODUCT_INFO_LENGTH = 400


class ThirdPartyOrderService:
    """
    Сервис для работы с заказами сторонних систем.

    Все изменения статуса выполняются условным UPDATE (WHERE status = ...)
    внутри транзакции с блокировкой строки, поэтому повторные и параллельные
    callback'и либо ничего не меняют, либо завершаются понятной ошибкой.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_order(
        self,
        external_order_id: str,
        client_system: str,
        amount: int,
        product_info: str,
        callback_url: str | None = None,
        api_key_id: uuid.UUID | None = None,
        min_amount: int = 1,
        max_amount: int = 6000,
    ) -> ThirdPartyOrder:
        """
        Создать заказ в статусе pending.

        Заказ только добавляется в сессию (flush), commit выполняет вызывающий
        код вместе с транзакцией ECPay.

        Raises:
            ValidationError: неверные поля или сумма вне границ
            DuplicateError: заказ с такой парой (external_order_id, client_system) уже есть
        """
        external_order_id = (external_order_id or "").strip()
        if not external_order_id:
            raise ValidationError("Отсутствует номер заказа клиента")
        if len(external_order_id) > 100:
            raise ValidationError("Номер заказа клиента длиннее 100 символов")
        if not client_system:
            raise ValidationError("Отсутствует client_system")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Сумма должна быть целым числом")
        if amount < min_amount or amount > max_amount:
            raise ValidationError(f"Сумма должна быть в диапазоне {min_amount}-{max_amount}")

        product_info = (product_info or "").strip()
        if not product_info:
            raise ValidationError("Отсутствует описание товара")
        if len(product_info) > MAX_PRODUCT_INFO_LENGTH:
            product_info = product_info[:MAX_PRODUCT_INFO_LENGTH - 3] + "..."

        if callback_url and not callback_url.startswith(("http://", "https://")):
            raise ValidationError("callback_url должен быть http(s) URL")

        # Быстрая проверка, окончательно уникальность гарантирует ограничение в БД
        existing = await self.get_by_external_id(external_order_id, client_system)
        if existing:
            raise DuplicateError(f"Заказ {external_order_id} уже существует")

        order = ThirdPartyOrder(
            external_order_id=external_order_id,
            client_system=client_system,
            api_key_id=api_key_id,
            amount=amount,
            product_info=product_info,
            callback_url=callback_url or None,
            status=ORDER_STATUS_PENDING,
        )
        self.db.add(order)

        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Duplicate order {external_order_id} for {client_system} rejected by unique constraint")
            raise DuplicateError(f"Заказ {external_order_id} уже существует")

        return order

    async def get_by_id(self, order_id: uuid.UUID) -> ThirdPartyOrder | None:
        """Получить заказ по ID."""
        stmt = select(ThirdPartyOrder).where(ThirdPartyOrder.id == order_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_order_id: str, client_system: str) -> ThirdPartyOrder | None:
        """Получить заказ по ключу идемпотентности."""
        stmt = select(ThirdPartyOrder).where(
            ThirdPartyOrder.external_order_id == external_order_id,
            ThirdPartyOrder.client_system == client_system,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order_for_client(self, order_id: uuid.UUID, client_system: str) -> ThirdPartyOrder:
        """Получить заказ, принадлежащий клиентской системе."""
        stmt = select(ThirdPartyOrder).where(
            ThirdPartyOrder.id == order_id,
            ThirdPartyOrder.client_system == client_system,
        )
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundError("Заказ не найден")
        return order

    async def get_by_merchant_trade_no(
        self,
        merchant_trade_no: str,
        for_update: bool = False,
    ) -> tuple[EcpayTransaction, ThirdPartyOrder] | None:
        """Найти транзакцию и заказ по MerchantTradeNo."""
        stmt = (
            select(EcpayTransaction, ThirdPartyOrder)
            .join(ThirdPartyOrder, EcpayTransaction.third_party_order_id == ThirdPartyOrder.id)
            .where(EcpayTransaction.merchant_trade_no == merchant_trade_no)
        )
        if for_update:
            # Под блокировкой читаем актуальные значения, а не копию из identity map
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def get_latest_transaction(self, order_id: uuid.UUID) -> EcpayTransaction | None:
        """Последняя транзакция ECPay заказа."""
        stmt = (
            select(EcpayTransaction)
            .where(EcpayTransaction.third_party_order_id == order_id)
            .order_by(EcpayTransaction.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_orders(
        self,
        client_system: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ThirdPartyOrder], int]:
        """Список заказов с пагинацией. Возвращает (заказы, общее количество)."""
        filters = []
        if client_system:
            filters.append(ThirdPartyOrder.client_system == client_system)
        if status:
            if status not in ORDER_STATUSES:
                raise ValidationError(f"Неизвестный статус: {status}")
            filters.append(ThirdPartyOrder.status == status)

        total_stmt = select(func.count()).select_from(ThirdPartyOrder).where(*filters)
        total = (await self.db.execute(total_stmt)).scalar_one()

        offset = (page - 1) * limit
        stmt = (
            select(ThirdPartyOrder)
            .where(*filters)
            .order_by(ThirdPartyOrder.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def mark_paid(
        self,
        merchant_trade_no: str,
        paid_at: datetime,
        amount: int,
        trade_no: str | None = None,
        payment_type: str | None = None,
        rtn_code: str | None = None,
        rtn_msg: str | None = None,
        raw_payload: dict | None = None,
    ) -> tuple[ThirdPartyOrder, bool]:
        """
        Перевести заказ в paid по подтвержденному callback'у.

        Returns:
            (заказ, True) если статус изменился, (заказ, False) если заказ уже оплачен.

        Raises:
            NotFoundError: MerchantTradeNo не найден
            AmountMismatchError: сумма callback'а отличается от суммы заказа
            OrderStateError: заказ уже expired/cancelled
        """
        row = await self.get_by_merchant_trade_no(merchant_trade_no, for_update=True)
        if row is None:
            await self.db.rollback()
            raise NotFoundError(f"Транзакция {merchant_trade_no} не найдена")

        transaction, order = row
        order_id = order.id
        order_amount = order.amount
        current_status = order.status

        if amount != order_amount:
            await self.db.rollback()
            raise AmountMismatchError(
                f"Сумма {amount} не совпадает с суммой заказа {order_amount} ({merchant_trade_no})"
            )

        if current_status == ORDER_STATUS_PAID:
            # Повторная доставка: ничего не меняем, снимаем блокировку
            await self.db.commit()
            return order, False

        if current_status != ORDER_STATUS_PENDING:
            await self.db.rollback()
            raise OrderStateError(f"Заказ {order_id} в статусе {current_status}, оплата не применена")

        now = datetime.utcnow()
        self._apply_processor_response(
            transaction,
            now=now,
            trade_no=trade_no,
            payment_type=payment_type,
            payment_date=paid_at,
            rtn_code=rtn_code,
            rtn_msg=rtn_msg,
            raw_payload=raw_payload,
        )

        stmt = (
            update(ThirdPartyOrder)
            .where(
                ThirdPartyOrder.id == order_id,
                ThirdPartyOrder.status == ORDER_STATUS_PENDING,
            )
            .values(status=ORDER_STATUS_PAID, paid_at=paid_at, updated_at=now)
        )
        result = await self.db.execute(stmt)

        if result.rowcount == 0:
            await self.db.rollback()
            refreshed = await self.get_by_id(order_id)
            await self.db.commit()
            if refreshed and refreshed.status == ORDER_STATUS_PAID:
                return refreshed, False
            raise OrderStateError(f"Заказ {order_id} изменен параллельно, оплата не применена")

        await self.db.commit()
        await self.db.refresh(order)
        logger.info(f"Order {order_id} marked as paid ({merchant_trade_no})")
        return order, True

    async def record_processor_response(
        self,
        merchant_trade_no: str,
        trade_no: str | None = None,
        payment_type: str | None = None,
        payment_date: datetime | None = None,
        rtn_code: str | None = None,
        rtn_msg: str | None = None,
        raw_payload: dict | None = None,
    ) -> ThirdPartyOrder:
        """Сохранить ответ ECPay в транзакции, не меняя статус заказа."""
        row = await self.get_by_merchant_trade_no(merchant_trade_no, for_update=True)
        if row is None:
            await self.db.rollback()
            raise NotFoundError(f"Транзакция {merchant_trade_no} не найдена")

        transaction, order = row
        self._apply_processor_response(
            transaction,
            now=datetime.utcnow(),
            trade_no=trade_no,
            payment_type=payment_type,
            payment_date=payment_date,
            rtn_code=rtn_code,
            rtn_msg=rtn_msg,
            raw_payload=raw_payload,
        )
        await self.db.commit()
        return order

    async def attach_barcode(
        self,
        merchant_trade_no: str,
        barcode_record: BarcodeRecord | None,
        expire_at: datetime | None = None,
        trade_no: str | None = None,
        raw_payload: dict | None = None,
    ) -> ThirdPartyOrder:
        """
        Сохранить штрихкод из callback'а PaymentInfo.

        Допускается в статусах pending и paid: штрихкод обычно приходит раньше
        подтверждения оплаты. При barcode_record=None barcode_status не меняется.

        Raises:
            NotFoundError: MerchantTradeNo не найден
        """
        row = await self.get_by_merchant_trade_no(merchant_trade_no, for_update=True)
        if row is None:
            await self.db.rollback()
            raise NotFoundError(f"Транзакция {merchant_trade_no} не найдена")

        transaction, order = row
        order_id = order.id
        now = datetime.utcnow()

        if trade_no:
            transaction.trade_no = trade_no
        if raw_payload is not None:
            transaction.store_raw(RAW_PAYMENT_INFO, raw_payload)
        if barcode_record is not None:
            transaction.barcode_info = barcode_record.model_dump()
        transaction.updated_at = now

        if barcode_record is None:
            logger.info(f"Barcode for {merchant_trade_no} is not generated yet (placeholder segments)")
            await self.db.commit()
            return order

        if order.status not in (ORDER_STATUS_PENDING, ORDER_STATUS_PAID):
            logger.warning(f"Barcode for order {order_id} ignored: order is {order.status}")
            await self.db.commit()
            return order

        barcode_data = barcode_record.model_dump()
        if order.barcode_status == BARCODE_STATUS_GENERATED and order.barcode_data == barcode_data:
            # Повторная доставка того же штрихкода
            await self.db.commit()
            return order

        values = {
            "barcode_data": barcode_data,
            "barcode_status": BARCODE_STATUS_GENERATED,
            "payment_code": barcode_record.payment_no or barcode_record.full_barcode,
            "updated_at": now,
        }
        if expire_at is not None:
            values["expire_at"] = expire_at

        stmt = (
            update(ThirdPartyOrder)
            .where(
                ThirdPartyOrder.id == order_id,
                ThirdPartyOrder.status.in_((ORDER_STATUS_PENDING, ORDER_STATUS_PAID)),
            )
            .values(**values)
        )
        await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info(f"Barcode attached to order {order_id} ({merchant_trade_no})")
        return order

    async def expire_stale_orders(
        self,
        now: datetime | None = None,
        order_id: uuid.UUID | None = None,
    ) -> int:
        """
        Перевести просроченные pending заказы в expired.

        Оплаченные заказы не затрагиваются независимо от возраста.
        """
        now = now or datetime.utcnow()
        stmt = (
            update(ThirdPartyOrder)
            .where(
                ThirdPartyOrder.status == ORDER_STATUS_PENDING,
                ThirdPartyOrder.expire_at.is_not(None),
                ThirdPartyOrder.expire_at < now,
            )
            .values(
                status=ORDER_STATUS_EXPIRED,
                barcode_status=BARCODE_STATUS_EXPIRED,
                updated_at=now,
            )
        )
        if order_id is not None:
            stmt = stmt.where(ThirdPartyOrder.id == order_id)

        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount or 0

    async def cancel_order(self, order_id: uuid.UUID) -> ThirdPartyOrder:
        """Административная отмена pending заказа."""
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFoundError("Заказ не найден")

        stmt = (
            update(ThirdPartyOrder)
            .where(
                ThirdPartyOrder.id == order_id,
                ThirdPartyOrder.status == ORDER_STATUS_PENDING,
            )
            .values(status=ORDER_STATUS_CANCELLED, updated_at=datetime.utcnow())
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            status = order.status
            await self.db.rollback()
            raise OrderStateError(f"Заказ в статусе {status} нельзя отменить")

        await self.db.commit()
        await self.db.refresh(order)
        return order

    @staticmethod
    def _apply_processor_response(
        transaction: EcpayTransaction,
        now: datetime,
        trade_no: str | None = None,
        payment_type: str | None = None,
        payment_date: datetime | None = None,
        rtn_code: str | None = None,
        rtn_msg: str | None = None,
        raw_payload: dict | None = None,
    ):
        """Обновить транзакцию данными ECPay."""
        if trade_no:
            transaction.trade_no = trade_no
        if payment_type:
            transaction.payment_type = payment_type
        if payment_date:
            transaction.payment_date = payment_date
        if rtn_code is not None:
            transaction.response_code = str(rtn_code)
        if rtn_msg is not None:
            transaction.response_msg = rtn_msg
        if raw_payload is not None:
            transaction.store_raw(RAW_RETURN, raw_payload)
        transaction.updated_at = now
