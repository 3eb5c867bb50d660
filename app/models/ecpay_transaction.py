"""Модель транзакции ECPay."""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Integer, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.third_party_order import ThirdPartyOrder

# Ключи raw_response: подписанный запрос и каждый тип callback'а хранятся отдельно
RAW_REQUEST = "request"
RAW_PAYMENT_INFO = "payment_info"
RAW_RETURN = "return"


class EcpayTransaction(Base):
    """Транзакция процессора, по MerchantTradeNo сопоставляются callback'и."""

    __tablename__ = "ecpay_transactions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    third_party_order_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("third_party_orders.id"), nullable=False, index=True
    )
    merchant_trade_no: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    trade_no: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    response_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    response_msg: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    barcode_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    order: Mapped["ThirdPartyOrder"] = relationship("ThirdPartyOrder", back_populates="transactions")

    def store_raw(self, kind: str, payload: dict) -> None:
        """Сохранить payload ECPay как есть под ключом kind, не затирая остальные."""
        raw = dict(self.raw_response or {})
        raw[kind] = payload
        self.raw_response = raw
