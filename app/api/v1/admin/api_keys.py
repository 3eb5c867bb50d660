"""Админ: API-ключи сторонних систем и журнал вызовов."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from datetime import datetime
import uuid

from app.database import get_db
from app.core.auth import get_current_admin
from app.core.security import parse_allowed_ips
from app.models.api_key import ApiKey
from app.services.api_key_service import ApiKeyService

router = APIRouter()


class ApiKeyCreateRequest(BaseModel):
    """Запрос на создание API-ключа."""

    key_name: str = Field(min_length=1, max_length=100)
    client_system: str = Field(min_length=1, max_length=100)
    rate_limit: int = 100  # Запросов за окно
    allowed_ips: list[str] | None = None  # IP или CIDR, None = без ограничений


class ApiKeyUpdateRequest(BaseModel):
    """Запрос на обновление API-ключа."""

    key_name: str | None = Field(default=None, min_length=1, max_length=100)
    rate_limit: int | None = None
    allowed_ips: list[str] | None = None
    is_active: bool | None = None


class ApiKeyResponse(BaseModel):
    """API-ключ без секрета."""

    id: uuid.UUID
    key_name: str
    masked_key: str
    client_system: str
    is_active: bool
    rate_limit: int
    allowed_ips: list[str]
    created_at: datetime
    updated_at: datetime


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Созданный ключ. Секрет показывается только в этом ответе."""

    api_key: str


class ApiCallLogResponse(BaseModel):
    """Запись журнала вызовов."""

    id: uuid.UUID
    api_key_id: uuid.UUID | None
    client_system: str
    endpoint: str
    method: str
    response_status: int
    processing_time: int
    client_ip: str | None
    user_agent: str | None
    error_message: str | None
    created_at: datetime


class ApiCallLogListResponse(BaseModel):
    """Страница журнала вызовов."""

    items: list[ApiCallLogResponse]
    total: int
    page: int
    limit: int


def to_response(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=api_key.id,
        key_name=api_key.key_name,
        masked_key=api_key.masked_key,
        client_system=api_key.client_system,
        is_active=api_key.is_active,
        rate_limit=api_key.rate_limit,
        allowed_ips=parse_allowed_ips(api_key.allowed_ips),
        created_at=api_key.created_at,
        updated_at=api_key.updated_at,
    )


@router.get("/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(
    client_system: str | None = None,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Список API-ключей (значения замаскированы)."""
    service = ApiKeyService(db)
    api_keys = await service.list_keys(client_system=client_system)
    return [to_response(api_key) for api_key in api_keys]


@router.post("/api-keys", response_model=ApiKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: ApiKeyCreateRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Создать API-ключ. Значение ключа больше нигде не возвращается."""
    service = ApiKeyService(db)
    api_key = await service.create(
        key_name=request.key_name,
        client_system=request.client_system,
        rate_limit=request.rate_limit,
        allowed_ips=request.allowed_ips,
    )
    return ApiKeyCreatedResponse(**to_response(api_key).model_dump(), api_key=api_key.api_key)


@router.get("/api-keys/{api_key_id}", response_model=ApiKeyResponse)
async def get_api_key(
    api_key_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Получить API-ключ."""
    service = ApiKeyService(db)
    return to_response(await service.get_by_id(api_key_id))


@router.patch("/api-keys/{api_key_id}", response_model=ApiKeyResponse)
async def update_api_key(
    api_key_id: uuid.UUID,
    request: ApiKeyUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Обновить API-ключ."""
    service = ApiKeyService(db)
    api_key = await service.update(
        api_key_id,
        key_name=request.key_name,
        rate_limit=request.rate_limit,
        allowed_ips=request.allowed_ips,
        is_active=request.is_active,
    )
    return to_response(api_key)


@router.post("/api-keys/{api_key_id}/deactivate", response_model=ApiKeyResponse)
async def deactivate_api_key(
    api_key_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Отключить API-ключ."""
    service = ApiKeyService(db)
    return to_response(await service.deactivate(api_key_id))


@router.delete("/api-keys/{api_key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_api_key(
    api_key_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Удалить API-ключ. Ключ с заказами можно только отключить (409)."""
    service = ApiKeyService(db)
    await service.delete(api_key_id)


@router.get("/api-call-logs", response_model=ApiCallLogListResponse)
async def list_api_call_logs(
    api_key_id: uuid.UUID | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Журнал вызовов gateway."""
    service = ApiKeyService(db)
    logs, total = await service.list_call_logs(api_key_id=api_key_id, page=page, limit=limit)
    return ApiCallLogListResponse(
        items=[ApiCallLogResponse.model_validate(log, from_attributes=True) for log in logs],
        total=total,
        page=page,
        limit=limit,
    )
