"""Dependencies для FastAPI: gateway API-ключей и конфигурация ECPay."""
import logging

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import EcpayConfig
from app.core.exceptions import AuthError, ForbiddenError, RateLimitError
from app.core.rate_limit import RateLimiter, get_rate_limiter
from app.core.security import get_client_ip, is_ip_allowed, parse_allowed_ips
from app.database import get_db
from app.models.api_key import ApiKey

logger = logging.getLogger(__name__)


def get_ecpay_config(request: Request) -> EcpayConfig:
    """Конфигурация ECPay, созданная при старте приложения."""
    config = getattr(request.app.state, "ecpay_config", None)
    if config is None:
        raise RuntimeError("ECPay config is not initialized")
    return config


async def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    db: AsyncSession = Depends(get_db),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ApiKey:
    """
    Gateway для сторонних систем.

    Проверяет ключ, список разрешенных IP и лимит запросов.
    После успешной идентификации ключа запрос попадает в журнал вызовов
    (см. ApiCallLogMiddleware), в том числе если он отклонен с 403 или 429.
    """
    if not x_api_key:
        raise AuthError("Отсутствует API Key")

    stmt = select(ApiKey).where(ApiKey.api_key == x_api_key)
    result = await db.execute(stmt)
    api_key = result.scalar_one_or_none()

    if not api_key or not api_key.is_active:
        raise AuthError("Недействительный API Key")

    # Данные для журнала вызовов
    request.state.api_call = {
        "api_key_id": api_key.id,
        "client_system": api_key.client_system,
    }

    allowed = parse_allowed_ips(api_key.allowed_ips)
    if allowed:
        client_ip = get_client_ip(request)
        if not is_ip_allowed(client_ip, allowed):
            logger.warning(
                f"IP {client_ip} rejected for client_system={api_key.client_system} "
                f"(key {api_key.masked_key})"
            )
            raise ForbiddenError("IP не входит в список разрешенных")

    outcome = await limiter.hit(str(api_key.id), api_key.rate_limit)
    if not outcome.allowed:
        logger.warning(
            f"Rate limit exceeded for client_system={api_key.client_system}: "
            f"{outcome.count}/{outcome.limit}"
        )
        raise RateLimitError(retry_after=outcome.reset_in)

    return api_key
