"""Сервис для управления API-ключами сторонних систем."""
import logging
import uuid
from datetime import datetime

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.security import generate_api_key, parse_allowed_ips
from app.models.api_call_log import ApiCallLog
from app.models.api_key import ApiKey
from app.models.third_party_order import ThirdPartyOrder

logger = logging.getLogger(__name__)


class ApiKeyService:
    """Сервис для работы с API-ключами."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        key_name: str,
        client_system: str,
        rate_limit: int = 100,
        allowed_ips: list[str] | None = None,
    ) -> ApiKey:
        """Создать ключ. Секрет возвращается вызывающему коду только здесь."""
        if rate_limit < 1:
            raise ValidationError("rate_limit должен быть положительным")

        api_key = ApiKey(
            key_name=key_name,
            api_key=generate_api_key(),
            client_system=client_system,
            rate_limit=rate_limit,
            allowed_ips=",".join(allowed_ips) if allowed_ips else None,
            is_active=True,
        )
        self.db.add(api_key)

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError(f"Ключ с именем {key_name} уже существует")

        await self.db.refresh(api_key)
        logger.info(f"API key {api_key.masked_key} created for {client_system}")
        return api_key

    async def get_by_id(self, api_key_id: uuid.UUID) -> ApiKey:
        """Получить ключ по ID."""
        stmt = select(ApiKey).where(ApiKey.id == api_key_id)
        result = await self.db.execute(stmt)
        api_key = result.scalar_one_or_none()
        if not api_key:
            raise NotFoundError("API-ключ не найден")
        return api_key

    async def list_keys(self, client_system: str | None = None) -> list[ApiKey]:
        """Список ключей."""
        stmt = select(ApiKey).order_by(ApiKey.created_at.desc())
        if client_system:
            stmt = stmt.where(ApiKey.client_system == client_system)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update(
        self,
        api_key_id: uuid.UUID,
        key_name: str | None = None,
        rate_limit: int | None = None,
        allowed_ips: list[str] | None = None,
        is_active: bool | None = None,
    ) -> ApiKey:
        """Обновить параметры ключа. Пустой список allowed_ips снимает ограничение."""
        api_key = await self.get_by_id(api_key_id)

        if key_name is not None:
            api_key.key_name = key_name
        if rate_limit is not None:
            if rate_limit < 1:
                raise ValidationError("rate_limit должен быть положительным")
            api_key.rate_limit = rate_limit
        if allowed_ips is not None:
            api_key.allowed_ips = ",".join(parse_allowed_ips(",".join(allowed_ips))) or None
        if is_active is not None:
            api_key.is_active = is_active
        api_key.updated_at = datetime.utcnow()

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError(f"Ключ с именем {key_name} уже существует")

        await self.db.refresh(api_key)
        return api_key

    async def deactivate(self, api_key_id: uuid.UUID) -> ApiKey:
        """Отключить ключ, история заказов и журнала сохраняется."""
        api_key = await self.update(api_key_id, is_active=False)
        logger.info(f"API key {api_key.masked_key} deactivated")
        return api_key

    async def delete(self, api_key_id: uuid.UUID) -> None:
        """
        Удалить ключ навсегда.

        Raises:
            ConflictError: у ключа есть заказы, его можно только отключить
        """
        api_key = await self.get_by_id(api_key_id)

        stmt = select(func.count()).select_from(ThirdPartyOrder).where(ThirdPartyOrder.api_key_id == api_key.id)
        orders_count = (await self.db.execute(stmt)).scalar_one()
        if orders_count:
            raise ConflictError(f"У ключа есть заказы ({orders_count}), используйте отключение")

        masked = api_key.masked_key
        # Журнал вызовов сохраняется, связь с ключом обнуляется
        await self.db.execute(
            update(ApiCallLog).where(ApiCallLog.api_key_id == api_key.id).values(api_key_id=None)
        )
        await self.db.delete(api_key)
        await self.db.commit()
        logger.info(f"API key {masked} deleted")

    async def list_call_logs(
        self,
        api_key_id: uuid.UUID | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[ApiCallLog], int]:
        """Журнал вызовов gateway."""
        filters = []
        if api_key_id:
            filters.append(ApiCallLog.api_key_id == api_key_id)

        total = (await self.db.execute(
            select(func.count()).select_from(ApiCallLog).where(*filters)
        )).scalar_one()

        stmt = (
            select(ApiCallLog)
            .where(*filters)
            .order_by(ApiCallLog.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
