"""Безопасность: JWT администратора, API-ключи, проверка IP."""
import ipaddress
import secrets
from datetime import datetime, timedelta
from typing import Any

from fastapi import Request
from jose import jwt

from app.config import settings

API_KEY_PREFIX = "cvs_"


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Создание JWT токена."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(hours=24)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm="HS256")
    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Декодирование JWT токена."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=["HS256"])
        return payload
    except jwt.JWTError:
        return None


def generate_api_key(nbytes: int = 24) -> str:
    """Сгенерировать новый секретный API-ключ."""
    return API_KEY_PREFIX + secrets.token_hex(nbytes)


def get_client_ip(request: Request) -> str:
    """IP клиента с учетом прокси."""
    if settings.trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def parse_allowed_ips(allowed_ips: str | None) -> list[str]:
    """Разобрать список разрешенных IP из строки через запятую."""
    if not allowed_ips:
        return []
    return [entry.strip() for entry in allowed_ips.split(",") if entry.strip()]


def is_ip_allowed(client_ip: str, allowed: list[str]) -> bool:
    """
    Проверить IP по списку разрешенных.

    Поддерживаются "*", одиночные адреса и CIDR. IPv4-mapped IPv6
    (::ffff:1.2.3.4) приводится к IPv4.
    """
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return "*" in allowed

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped

    for entry in allowed:
        if entry == "*":
            return True
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            # Некорректная запись в списке не должна блокировать остальные
            continue

    return False
