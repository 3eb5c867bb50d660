"""Модель API-ключа стороннего клиента."""
import uuid
from datetime import datetime

from sqlalchemy import String, Text, Boolean, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ApiKey(Base):
    """Модель API-ключа."""

    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    key_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    api_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    client_system: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Количество запросов за окно rate limit
    rate_limit: Mapped[int] = mapped_column(Integer, default=100)

    # Список IP/CIDR через запятую, None = без ограничений
    allowed_ips: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def masked_key(self) -> str:
        """Замаскированное значение ключа для списков и логов."""
        if len(self.api_key) <= 12:
            return "****"
        return f"{self.api_key[:8]}...{self.api_key[-4:]}"
