"""Форматирование штрихкодов для оплаты в магазинах у дома."""
from urllib.parse import quote

from pydantic import BaseModel

SEGMENT_SEPARATOR = "-"

# Символы, которые encodeURIComponent оставляет как есть
_URI_SAFE_CHARS = "-_.!~*'()"


class BarcodeRecord(BaseModel):
    """Нормализованные данные штрихкода, хранятся в third_party_orders.barcode_data."""

    barcode_1: str
    barcode_2: str
    barcode_3: str
    full_barcode: str
    compact: str
    segments: list[str]
    segments_count: int
    payment_no: str | None = None
    expire_date: str | None = None
    barcode_url: str | None = None


def _clean_segment(segment: str | None) -> str:
    """Сегмент-заглушка ("--", "---") считается отсутствующим."""
    if segment is None:
        return ""
    value = str(segment).strip()
    if not value.strip(SEGMENT_SEPARATOR):
        return ""
    return value.strip(SEGMENT_SEPARATOR)


def build_barcode_url(code: str, qrcode_url: str) -> str | None:
    """URL картинки для сканирования. Лишние дефисы по краям отбрасываются."""
    cleaned = code.strip().strip(SEGMENT_SEPARATOR)
    if not cleaned:
        return None
    return f"{qrcode_url}{quote(cleaned, safe=_URI_SAFE_CHARS)}"


def format_barcode(
    segment1: str | None,
    segment2: str | None,
    segment3: str | None,
    reference_no: str | None,
    expire_at: str | None,
    qrcode_url: str,
) -> BarcodeRecord | None:
    """
    Собрать запись штрихкода из сегментов ECPay.

    Returns:
        None, если все три сегмента пустые или заглушки: штрихкод еще не создан.
    """
    raw = [_clean_segment(segment1), _clean_segment(segment2), _clean_segment(segment3)]
    segments = [segment for segment in raw if segment]

    if not segments:
        return None

    full_barcode = SEGMENT_SEPARATOR.join(segments)

    return BarcodeRecord(
        barcode_1=raw[0],
        barcode_2=raw[1],
        barcode_3=raw[2],
        full_barcode=full_barcode,
        compact="".join(segments),
        segments=segments,
        segments_count=len(segments),
        payment_no=reference_no or None,
        expire_date=expire_at or None,
        barcode_url=build_barcode_url(full_barcode, qrcode_url),
    )
