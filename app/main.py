"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app import database
from app.config import settings, build_ecpay_config
from app.api.v1 import router as api_v1_router
from app.core.cache import cache_service
from app.core.exceptions import PaymentServiceError, RateLimitError
from app.core.middleware import ApiCallLogMiddleware
from app.services.third_party_order_service import ThirdPartyOrderService

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def expire_stale_orders():
    """Периодическая задача: просроченные pending заказы -> expired."""
    try:
        async with database.AsyncSessionLocal() as db:
            service = ThirdPartyOrderService(db)
            expired_count = await service.expire_stale_orders()
            if expired_count > 0:
                logger.info(f"Просрочено {expired_count} неоплаченных заказов")
    except Exception as e:
        logger.error(f"Ошибка при просрочке заказов: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    await cache_service.connect()
    app.state.ecpay_config = build_ecpay_config(settings)

    scheduler.add_job(
        expire_stale_orders,
        trigger=IntervalTrigger(seconds=settings.expire_sweep_interval_seconds),
        id="expire_stale_orders",
        name="Просрочка неоплаченных заказов",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Планировщик задач запущен, просрочка заказов каждые {settings.expire_sweep_interval_seconds} с")

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await cache_service.disconnect()


app = FastAPI(
    title="CVS Barcode Payment API",
    description="Gateway для оплаты штрихкодом в магазинах у дома через ECPay",
    version="1.0.0",
    lifespan=lifespan,
)


def error_response(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


@app.exception_handler(PaymentServiceError)
async def payment_service_error_handler(request: Request, exc: PaymentServiceError):
    """Ошибки сервиса -> JSON с кодом ошибки."""
    request.state.api_error = f"{exc.code}: {exc.message}"
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")

    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(exc.status_code, exc.code, exc.message, headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Ошибки валидации тела запроса -> 400."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in errors
    ) or "Неверные данные запроса"
    request.state.api_error = f"VALIDATION_ERROR: {message}"
    return error_response(400, "VALIDATION_ERROR", message)


# CORS - в development режиме разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(ApiCallLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "CVS Barcode Payment API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "redis": cache_service.is_connected}
