"""Скрипт для ручного запуска просрочки неоплаченных заказов."""
import asyncio
import logging
from app.database import AsyncSessionLocal
from app.services.third_party_order_service import ThirdPartyOrderService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main():
    """Перевести просроченные pending заказы в expired."""
    try:
        async with AsyncSessionLocal() as db:
            service = ThirdPartyOrderService(db)
            expired_count = await service.expire_stale_orders()
            logger.info(f"Просрочено {expired_count} неоплаченных заказов")
    except Exception as e:
        logger.error(f"Ошибка при просрочке заказов: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    asyncio.run(main())
