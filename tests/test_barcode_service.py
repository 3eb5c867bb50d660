from app.services.barcode_service import build_barcode_url, format_barcode

QR_URL = "https://payment-stage.ecpay.com.tw/SP/CreateQRCode?qdata="


def test_format_barcode_three_segments():
    record = format_barcode("241026603", "0000000000123456", "102600000000100", None, "2024/10/26 23:59:59", QR_URL)

    assert record is not None
    assert record.full_barcode == "241026603-0000000000123456-102600000000100"
    assert record.compact == "2410266030000000000123456102600000000100"
    assert record.segments == ["241026603", "0000000000123456", "102600000000100"]
    assert record.segments_count == 3
    assert record.expire_date == "2024/10/26 23:59:59"
    assert record.barcode_url == QR_URL + "241026603-0000000000123456-102600000000100"


def test_placeholder_segments_mean_not_generated():
    """Заглушки "--" и "---" означают, что штрихкод еще не создан."""
    assert format_barcode("", "--", "---", None, None, QR_URL) is None
    assert format_barcode(None, None, None, None, None, QR_URL) is None


def test_missing_segment_is_skipped():
    record = format_barcode("241026603", "", "102600000000100", "PN123", None, QR_URL)

    assert record.barcode_2 == ""
    assert record.segments == ["241026603", "102600000000100"]
    assert record.full_barcode == "241026603-102600000000100"
    assert record.payment_no == "PN123"


def test_segment_dashes_are_stripped():
    record = format_barcode("-241026603-", "0000000000123456", "102600000000100", None, None, QR_URL)

    assert record.barcode_1 == "241026603"
    assert not record.full_barcode.startswith("-")


def test_build_barcode_url_encodes_and_trims():
    assert build_barcode_url("--AB C--", QR_URL) == QR_URL + "AB%20C"
    assert build_barcode_url("---", QR_URL) is None


def test_ecpay_sample_segments():
    record = format_barcode("1407086CY", "1557341899384519", "0708B4000000100", None, None, QR_URL)

    assert record.full_barcode == "1407086CY-1557341899384519-0708B4000000100"
    assert record.barcode_url is not None


def test_all_double_dash_segments():
    assert format_barcode("--", "--", "--", None, None, QR_URL) is None
