"""Модели заказов сторонних систем."""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Integer, ForeignKey, JSON, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.ecpay_transaction import EcpayTransaction


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PAID = "paid"
ORDER_STATUS_EXPIRED = "expired"
ORDER_STATUS_CANCELLED = "cancelled"

BARCODE_STATUS_PENDING = "pending"
BARCODE_STATUS_GENERATED = "generated"
BARCODE_STATUS_EXPIRED = "expired"


class ThirdPartyOrder(Base):
    """Модель заказа, созданного сторонней системой через gateway."""

    __tablename__ = "third_party_orders"
    __table_args__ = (
        # Ключ идемпотентности: повторный запрос клиента не создает второй заказ
        UniqueConstraint("external_order_id", "client_system", name="uq_third_party_orders_external_client"),
        Index("ix_third_party_orders_status_expire", "status", "expire_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    external_order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    client_system: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    api_key_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("api_keys.id"), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # NTD, целое число
    product_info: Mapped[str] = mapped_column(Text, nullable=False)
    callback_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=ORDER_STATUS_PENDING)  # pending / paid / expired / cancelled
    payment_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    barcode_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    barcode_status: Mapped[str] = mapped_column(String(20), default=BARCODE_STATUS_PENDING)  # pending / generated / expired

    expire_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Внутренний заказ магазина (внешний сервис, связь без FK)
    internal_order_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    transactions: Mapped[list["EcpayTransaction"]] = relationship("EcpayTransaction", back_populates="order")

    @property
    def barcode_available(self) -> bool:
        """Штрихкод доступен только по barcode_status, а не по наличию данных."""
        return self.barcode_status == BARCODE_STATUS_GENERATED and self.barcode_data is not None
