"""Redis: атомарные счетчики окон rate limit."""
from typing import Optional
import redis.asyncio as redis
from app.config import settings


class CacheService:
    """Сервис для работы с Redis."""

    def __init__(self, url: str | None = None):
        self._url = url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        """Подключение к Redis."""
        if not self._redis:
            try:
                self._redis = await redis.from_url(
                    self._url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                # Проверяем подключение
                await self._redis.ping()
            except Exception:
                # Если Redis недоступен, продолжаем без него
                self._redis = None

    async def disconnect(self):
        """Отключение от Redis."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def incr_window(self, key: str, ttl: int) -> int | None:
        """
        Атомарно увеличить счетчик окна.

        INCR и EXPIRE выполняются одной транзакцией (MULTI/EXEC).
        Возвращает None, если Redis недоступен.
        """
        if not self._redis:
            return None

        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl)
                count, _ = await pipe.execute()
            return int(count)
        except Exception:
            return None


# Глобальный экземпляр
cache_service = CacheService()


def get_cache_key_rate_limit(api_key_id: str, window: int) -> str:
    """Генерация ключа счетчика rate limit."""
    return f"ratelimit:{api_key_id}:{window}"
