import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from urllib.parse import quote_plus, unquote_plus
from zoneinfo import ZoneInfo

import pytest

import vnpay
from vnpay import VNPayGateway


SECRET = "SECRETKEY"


@pytest.fixture
def gw():
    return VNPayGateway(
        tmn_code="TMN00001",
        hash_secret=SECRET,
        payment_url="https://gateway.test/pay",
        return_url="http://shop.test/api/payments/vnpay_return",
        timezone="Asia/Ho_Chi_Minh",
        expire_minutes=15,
    )


def _split(url):
    base, query = url.split("?", 1)
    pairs = [p.split("=", 1) for p in query.split("&")]
    return base, query, pairs


def test_redirect_uses_canonical_order_and_signs_exact_query(gw):
    now = datetime(2026, 10, 17, 9, 30, 5, tzinfo=ZoneInfo("Asia/Ho_Chi_Minh"))
    url, ref = gw.build_redirect(12, Decimal("100000"), client_ip="10.1.2.3", now=now)

    base, query, pairs = _split(url)
    keys = [k for k, _ in pairs]
    assert base == "https://gateway.test/pay"
    assert keys[-1] == "vnp_SecureHash"
    assert keys[:-1] == [k for k in vnpay.REQUEST_FIELD_ORDER if k in keys]

    values = dict(pairs)
    assert values["vnp_Amount"] == "10000000"
    assert values["vnp_CreateDate"] == "20261017093005"
    assert values["vnp_ExpireDate"] == "20261017094505"
    assert values["vnp_OrderInfo"] == "Payment+for+order+12"
    assert values["vnp_ReturnUrl"] == quote_plus("http://shop.test/api/payments/vnpay_return")
    assert values["vnp_TxnRef"] == ref
    assert ref.startswith("12_20261017093005")

    signed_part = query.rsplit("&vnp_SecureHash=", 1)[0]
    expected = hmac.new(SECRET.encode(), signed_part.encode(), hashlib.sha512).hexdigest()
    assert values["vnp_SecureHash"] == expected


def test_create_date_is_rendered_in_gateway_timezone(gw):
    now = datetime(2026, 10, 17, 0, 0, 0, tzinfo=ZoneInfo("UTC"))
    url, _ = gw.build_redirect(1, 1000, now=now)
    assert "vnp_CreateDate=20261017070000" in url


def test_empty_billing_fields_are_left_out(gw):
    url, _ = gw.build_redirect(3, 5000, billing={
        "bill_email": "someone@example.com",
        "bill_city": "",
        "bill_first_name": "   ",
        "bank_code": "NCB",
        "unrelated": "x",
    })
    _, _, pairs = _split(url)
    keys = [k for k, _ in pairs]
    assert "vnp_Bill_Email" in keys
    assert "vnp_BankCode" in keys
    assert "vnp_Bill_City" not in keys
    assert "vnp_Bill_FirstName" not in keys
    assert keys.index("vnp_BankCode") < keys.index("vnp_Bill_Email")
    assert dict(pairs)["vnp_Bill_Email"] == "someone%40example.com"


def _signed(params):
    query = "&".join(f"{k}={quote_plus(str(v))}" for k, v in sorted(params.items()))
    out = dict(params)
    out["vnp_SecureHash"] = hmac.new(SECRET.encode(), query.encode(), hashlib.sha512).hexdigest()
    return out


CALLBACK = {
    "vnp_Amount": "10000000",
    "vnp_BankCode": "NCB",
    "vnp_OrderInfo": "Payment for order 12",
    "vnp_ResponseCode": "00",
    "vnp_TmnCode": "TMN00001",
    "vnp_TxnRef": "12_202610170930051234",
}


def test_callback_verifies_over_alphabetical_order(gw):
    params = _signed(CALLBACK)
    params["vnp_SecureHashType"] = "HmacSHA512"
    assert gw.verify_callback(params) is True


def test_callback_hash_is_case_insensitive(gw):
    params = _signed(CALLBACK)
    params["vnp_SecureHash"] = params["vnp_SecureHash"].upper()
    assert gw.verify_callback(params) is True


@pytest.mark.parametrize("field", sorted(CALLBACK))
def test_any_altered_field_fails_verification(gw, field):
    params = _signed(CALLBACK)
    params[field] = params[field] + "9"
    assert gw.verify_callback(params) is False


def test_added_field_fails_verification(gw):
    params = _signed(CALLBACK)
    params["vnp_PayDate"] = "20261017093500"
    assert gw.verify_callback(params) is False


def test_missing_or_foreign_signature_fails(gw):
    params = dict(CALLBACK)
    assert gw.verify_callback(params) is False

    other = VNPayGateway("TMN00001", "ANOTHERKEY", "https://gateway.test/pay", "http://x")
    assert other.verify_callback(_signed(CALLBACK)) is False


def test_request_signature_is_not_valid_as_callback(gw):
    # outbound requests are signed in canonical order, callbacks alphabetically
    url, _ = gw.build_redirect(12, 100000, now=datetime(2026, 10, 17, 9, 30, 5))
    _, _, pairs = _split(url)
    params = {k: unquote_plus(v) for k, v in pairs}
    assert gw.verify_callback(params) is False


@pytest.mark.parametrize("ref,expected", [
    ("12_202610170930051234", 12),
    ("7", 7),
    ("", None),
    (None, None),
    ("abc_123", None),
])
def test_order_id_from_ref(ref, expected):
    assert vnpay.order_id_from_ref(ref) == expected


def test_response_codes():
    assert vnpay.is_success("00")
    assert not vnpay.is_success("24")
    assert not vnpay.is_success(None)
    assert vnpay.describe_response("24") == "Customer cancelled the transaction"
    assert vnpay.describe_response("zz") == "Unknown response code"


def test_minor_units():
    assert vnpay.to_minor_units("100000") == 10000000
    assert vnpay.to_minor_units(Decimal("12.345")) == 1235
    assert vnpay.from_minor_units("10000000") == Decimal("100000.00")
