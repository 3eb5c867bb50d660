"""Middleware журнала вызовов gateway."""
import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app import database
from app.core.security import get_client_ip
from app.models.api_call_log import ApiCallLog

logger = logging.getLogger(__name__)


class ApiCallLogMiddleware(BaseHTTPMiddleware):
    """
    Пишет одну запись ApiCallLog на каждый запрос, в котором gateway
    опознал API-ключ. Ошибка записи журнала не влияет на ответ.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.perf_counter()
        response = await call_next(request)

        api_call = getattr(request.state, "api_call", None)
        if api_call is None:
            return response

        processing_time = int((time.perf_counter() - started) * 1000)
        error_message = getattr(request.state, "api_error", None)
        if error_message is None and response.status_code >= 400:
            error_message = f"HTTP {response.status_code}"

        try:
            async with database.AsyncSessionLocal() as session:
                session.add(ApiCallLog(
                    api_key_id=api_call["api_key_id"],
                    client_system=api_call["client_system"],
                    endpoint=request.url.path,
                    method=request.method,
                    response_status=response.status_code,
                    processing_time=processing_time,
                    client_ip=get_client_ip(request),
                    user_agent=request.headers.get("user-agent"),
                    error_message=error_message,
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write API call log for {request.url.path}: {e}", exc_info=True)

        return response
