import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from app.models.third_party_order import (
    BARCODE_STATUS_GENERATED,
    BARCODE_STATUS_PENDING,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING,
)
from app.core.exceptions import SignatureError
from app.services.ecpay_service import parse_ecpay_date
from app.services.third_party_order_service import ThirdPartyOrderService
from app.services.webhook_service import ACK_OK, EcpayWebhookService
from tests.factories import create_order_with_transaction, payment_info_payload, return_payload, signed

CALLBACK_URL = "/api/v1/third-party/ecpay/callback"
PAYMENT_INFO_URL = "/api/v1/third-party/ecpay/payment-info"


async def load_order(session_factory, order_id):
    async with session_factory() as session:
        return await ThirdPartyOrderService(session).get_by_id(order_id)


@pytest.mark.asyncio
async def test_paid_callback_marks_order_paid(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)

    with patch("app.api.v1.ecpay.notify_payment_completed", new=AsyncMock()) as mock_notify:
        response = await client.post(CALLBACK_URL, data=return_payload(request.merchant_trade_no))

    assert response.status_code == 200
    assert response.text == "1|OK"
    assert response.headers["content-type"].startswith("text/plain")
    mock_notify.assert_awaited_once_with(order.id)

    stored = await load_order(session_factory, order.id)
    assert stored.status == ORDER_STATUS_PAID
    assert stored.paid_at == parse_ecpay_date("2024/10/19 12:00:00", "Asia/Taipei")


@pytest.mark.asyncio
async def test_duplicate_paid_callback_is_idempotent(client, db, session_factory, ecpay_config):
    """Повторная доставка подтверждается 1|OK и не уведомляет клиента второй раз."""
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = return_payload(request.merchant_trade_no)

    with patch("app.api.v1.ecpay.notify_payment_completed", new=AsyncMock()) as mock_notify:
        first = await client.post(CALLBACK_URL, data=payload)
        second = await client.post(CALLBACK_URL, data=payload)

    assert first.text == "1|OK"
    assert second.text == "1|OK"
    assert mock_notify.await_count == 1

    stored = await load_order(session_factory, order.id)
    assert stored.status == ORDER_STATUS_PAID


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = return_payload(request.merchant_trade_no)
    payload["CheckMacValue"] = "0" * 64

    response = await client.post(CALLBACK_URL, data=payload)

    assert response.status_code == 200
    assert response.text.startswith("0|")
    assert (await load_order(session_factory, order.id)).status == ORDER_STATUS_PENDING


@pytest.mark.asyncio
async def test_tampered_amount_fails_signature(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = return_payload(request.merchant_trade_no)
    payload["TradeAmt"] = "1"

    response = await client.post(CALLBACK_URL, data=payload)

    assert response.text.startswith("0|")
    assert (await load_order(session_factory, order.id)).status == ORDER_STATUS_PENDING


@pytest.mark.asyncio
async def test_signed_amount_mismatch_is_rejected(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config, amount=100)

    response = await client.post(CALLBACK_URL, data=return_payload(request.merchant_trade_no, amount=90))

    assert response.text == "0|Amount mismatch"
    assert (await load_order(session_factory, order.id)).status == ORDER_STATUS_PENDING


@pytest.mark.asyncio
async def test_unknown_trade_no(client):
    response = await client.post(CALLBACK_URL, data=return_payload("TP000000000000UNKNW"))

    assert response.status_code == 200
    assert response.text == "0|Order not found"


@pytest.mark.asyncio
async def test_failed_payment_code_is_recorded_not_applied(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)

    response = await client.post(CALLBACK_URL, data=return_payload(request.merchant_trade_no, rtn_code="10100058"))

    assert response.text == ACK_OK
    assert (await load_order(session_factory, order.id)).status == ORDER_STATUS_PENDING

    async with session_factory() as session:
        transaction = await ThirdPartyOrderService(session).get_latest_transaction(order.id)
    assert transaction.response_code == "10100058"


@pytest.mark.asyncio
async def test_json_callback_is_accepted(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)

    with patch("app.api.v1.ecpay.notify_payment_completed", new=AsyncMock()):
        response = await client.post(CALLBACK_URL, json=return_payload(request.merchant_trade_no))

    assert response.text == ACK_OK
    assert (await load_order(session_factory, order.id)).status == ORDER_STATUS_PAID


@pytest.mark.asyncio
async def test_empty_callback_body(client):
    response = await client.post(CALLBACK_URL, content=b"", headers={"content-type": "application/x-www-form-urlencoded"})

    assert response.status_code == 200
    assert response.text.startswith("0|")


@pytest.mark.asyncio
async def test_payment_info_attaches_barcode(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)

    response = await client.post(PAYMENT_INFO_URL, data=payment_info_payload(request.merchant_trade_no))

    assert response.text == ACK_OK
    stored = await load_order(session_factory, order.id)
    assert stored.status == ORDER_STATUS_PENDING
    assert stored.barcode_status == BARCODE_STATUS_GENERATED
    assert stored.barcode_data["full_barcode"] == "241026603-0000000000123456-102600000000100"
    assert stored.barcode_data["barcode_url"].startswith(ecpay_config.qrcode_url)


@pytest.mark.asyncio
async def test_payment_info_underscore_field_names(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = payment_info_payload(request.merchant_trade_no)
    for index in (1, 2, 3):
        payload[f"Barcode_{index}"] = payload.pop(f"Barcode{index}")
    payload.pop("CheckMacValue")

    response = await client.post(PAYMENT_INFO_URL, data=signed(payload))

    assert response.text == ACK_OK
    stored = await load_order(session_factory, order.id)
    assert stored.barcode_data["segments_count"] == 3


@pytest.mark.asyncio
async def test_payment_info_placeholder_barcode(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = payment_info_payload(request.merchant_trade_no, Barcode1="", Barcode2="--", Barcode3="---")

    response = await client.post(PAYMENT_INFO_URL, data=payload)

    assert response.text == ACK_OK
    stored = await load_order(session_factory, order.id)
    assert stored.barcode_status == BARCODE_STATUS_PENDING
    assert stored.barcode_data is None


@pytest.mark.asyncio
async def test_payment_info_invalid_signature(client, db, session_factory, ecpay_config):
    order, request = await create_order_with_transaction(db, ecpay_config)
    payload = payment_info_payload(request.merchant_trade_no)
    payload["Barcode2"] = "9999999999999999"

    response = await client.post(PAYMENT_INFO_URL, data=payload)

    assert response.text.startswith("0|")
    assert (await load_order(session_factory, order.id)).barcode_status == BARCODE_STATUS_PENDING


@pytest.mark.asyncio
async def test_webhook_service_never_raises(db, ecpay_config):
    """Внутренняя ошибка превращается в отрицательное подтверждение."""
    _, request = await create_order_with_transaction(db, ecpay_config)
    service = EcpayWebhookService(db, ecpay_config)

    with patch.object(service.orders, "mark_paid", new=AsyncMock(side_effect=RuntimeError("db down"))):
        outcome = await service.handle_return(return_payload(request.merchant_trade_no))

    assert not outcome.ok
    assert outcome.ack == "0|Processing error"
    assert outcome.paid_order_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize("url", [CALLBACK_URL, PAYMENT_INFO_URL])
async def test_json_callback_with_non_string_signature(client, db, session_factory, ecpay_config, url):
    order, request = await create_order_with_transaction(db, ecpay_config)
    if url == CALLBACK_URL:
        payload = return_payload(request.merchant_trade_no)
    else:
        payload = payment_info_payload(request.merchant_trade_no)
    payload["CheckMacValue"] = 12345

    response = await client.post(url, json=payload)

    assert response.status_code == 200
    assert response.text == "0|CheckMacValue Error"
    stored = await load_order(session_factory, order.id)
    assert stored.status == ORDER_STATUS_PENDING
    assert stored.barcode_status == BARCODE_STATUS_PENDING


def test_require_valid_signature(ecpay_config):
    service = EcpayWebhookService(None, ecpay_config)
    payload = return_payload("TP2410191200ABC123")

    service.require_valid_signature(payload)

    with pytest.raises(SignatureError):
        service.require_valid_signature({**payload, "TradeAmt": "1"})
    with pytest.raises(SignatureError):
        service.require_valid_signature({**payload, "CheckMacValue": None})


@pytest.mark.asyncio
async def test_raw_payloads_are_kept_for_every_message(client, db, session_factory, ecpay_config):
    """Подписанный запрос и оба callback'а хранятся в транзакции как пришли."""
    order, request = await create_order_with_transaction(db, ecpay_config)
    barcode = payment_info_payload(request.merchant_trade_no)
    paid = return_payload(request.merchant_trade_no)

    await client.post(PAYMENT_INFO_URL, data=barcode)
    with patch("app.api.v1.ecpay.notify_payment_completed", new=AsyncMock()):
        await client.post(CALLBACK_URL, data=paid)

    async with session_factory() as session:
        transaction = await ThirdPartyOrderService(session).get_latest_transaction(order.id)

    raw = transaction.raw_response
    assert raw["request"] == request.form_params
    assert raw["payment_info"]["Barcode1"] == barcode["Barcode1"]
    assert raw["payment_info"]["ExpireDate"] == barcode["ExpireDate"]
    assert raw["payment_info"]["CheckMacValue"] == barcode["CheckMacValue"]
    assert raw["return"]["PaymentDate"] == paid["PaymentDate"]
    assert raw["return"]["CheckMacValue"] == paid["CheckMacValue"]


@pytest.mark.asyncio
async def test_parallel_callbacks_for_one_order(client, file_session_factory, ecpay_config):
    """Одновременные ReturnURL, PaymentInfoURL и повтор ReturnURL применяются ровно один раз."""
    async with file_session_factory() as session:
        order, request = await create_order_with_transaction(session, ecpay_config)
        order_id = order.id
    paid = return_payload(request.merchant_trade_no)
    barcode = payment_info_payload(request.merchant_trade_no)

    with patch("app.api.v1.ecpay.notify_payment_completed", new=AsyncMock()) as mock_notify:
        responses = await asyncio.gather(
            client.post(CALLBACK_URL, data=paid),
            client.post(PAYMENT_INFO_URL, data=barcode),
            client.post(CALLBACK_URL, data=paid),
        )

    assert [response.text for response in responses] == [ACK_OK, ACK_OK, ACK_OK]
    mock_notify.assert_awaited_once_with(order_id)

    stored = await load_order(file_session_factory, order_id)
    assert stored.status == ORDER_STATUS_PAID
    assert stored.barcode_status == BARCODE_STATUS_GENERATED
