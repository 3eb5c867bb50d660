"""Подпись CheckMacValue для ECPay."""
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import quote

CHECK_MAC_FIELD = "CheckMacValue"

# encodeURIComponent оставляет !'()* без кодирования, ECPay требует их кодировать
_SAFE_CHARS = "-_.~"


def stringify_value(value: Any) -> str:
    """
    Привести значение параметра к строке.

    Числа сериализуются как простые десятичные целые без разделителей,
    иначе подпись не совпадет с подписью ECPay.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        if value == int(value):
            return str(int(value))
        return format(Decimal(str(value)), "f")
    return str(value)


def canonicalize(params: Mapping[str, Any], hash_key: str, hash_iv: str) -> str:
    """Строка, которая хэшируется для CheckMacValue."""
    filtered = {k: v for k, v in params.items() if k != CHECK_MAC_FIELD}
    sorted_keys = sorted(filtered, key=str.lower)
    query_string = "&".join(f"{key}={stringify_value(filtered[key])}" for key in sorted_keys)
    raw = f"HashKey={hash_key}&{query_string}&HashIV={hash_iv}"

    encoded = quote(raw, safe=_SAFE_CHARS).replace("%20", "+")
    return encoded.lower()


def sign(params: Mapping[str, Any], hash_key: str, hash_iv: str) -> str:
    """Вычислить CheckMacValue (SHA-256, hex, верхний регистр)."""
    encoded = canonicalize(params, hash_key, hash_iv)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest().upper()


def verify(
    params: Mapping[str, Any],
    provided_signature: str | None,
    hash_key: str,
    hash_iv: str,
) -> bool:
    """Проверить CheckMacValue входящих параметров без учета регистра."""
    if not isinstance(provided_signature, str) or not provided_signature:
        return False
    expected = sign(params, hash_key, hash_iv)
    return hmac.compare_digest(expected, provided_signature.strip().upper())
