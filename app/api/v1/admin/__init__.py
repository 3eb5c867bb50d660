"""Админ API."""
from fastapi import APIRouter
from app.api.v1.admin import api_keys, orders

router = APIRouter()
router.include_router(api_keys.router)
router.include_router(orders.router)
