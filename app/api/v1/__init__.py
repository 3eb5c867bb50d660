"""API v1 роутеры."""
from fastapi import APIRouter

from app.api.v1 import admin, ecpay, third_party

router = APIRouter()

# Подключаем все роутеры
router.include_router(third_party.router, prefix="/third-party", tags=["third-party"])
router.include_router(ecpay.router, prefix="/third-party/ecpay", tags=["ecpay"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
