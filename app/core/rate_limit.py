"""Ограничение частоты запросов по API-ключу (фиксированное окно)."""
import asyncio
import logging
import time
from dataclasses import dataclass

from app.config import settings
from app.core.cache import CacheService, cache_service, get_cache_key_rate_limit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Результат учета запроса."""

    allowed: bool
    limit: int
    count: int
    reset_in: int  # секунд до конца окна

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    """
    Счетчики запросов по API-ключу.

    Основной backend - Redis (INCR + EXPIRE). Если Redis недоступен,
    используется счетчик в памяти процесса под asyncio.Lock.
    """

    def __init__(self, cache: CacheService | None = None, window_seconds: int = 60):
        self.cache = cache
        self.window_seconds = window_seconds
        self._counters: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def hit(self, api_key_id: str, limit: int, now: float | None = None) -> RateLimitResult:
        """Учесть запрос и проверить лимит. Отклоненные запросы тоже считаются."""
        now = time.time() if now is None else now
        window = int(now // self.window_seconds)
        reset_in = max(1, int((window + 1) * self.window_seconds - now))
        key = get_cache_key_rate_limit(api_key_id, window)

        count = None
        if self.cache is not None and self.cache.is_connected:
            count = await self.cache.incr_window(key, self.window_seconds)
            if count is None:
                logger.warning("Redis rate limit counter unavailable, falling back to in-memory counter")

        if count is None:
            count = await self._incr_local(key, window)

        return RateLimitResult(
            allowed=count <= limit,
            limit=limit,
            count=count,
            reset_in=reset_in,
        )

    async def _incr_local(self, key: str, window: int) -> int:
        async with self._lock:
            # Удаляем счетчики прошлых окон
            stale = [k for k in self._counters if int(k.rsplit(":", 1)[1]) < window]
            for k in stale:
                del self._counters[k]

            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]


# Глобальный экземпляр
rate_limiter = RateLimiter(cache_service, settings.rate_limit_window_seconds)


def get_rate_limiter() -> RateLimiter:
    """Dependency для rate limiter."""
    return rate_limiter
