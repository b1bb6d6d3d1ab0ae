# vnpay.py
import hmac
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

from database import money


logger = logging.getLogger(__name__)

VNP_VERSION = "2.1.0"
VNP_COMMAND = "pay"
VNP_CURRENCY = "VND"
VNP_SUCCESS_CODE = "00"
DATE_FORMAT = "%Y%m%d%H%M%S"

HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# The gateway signs outbound requests in this exact order. Do not sort.
REQUEST_FIELD_ORDER = (
    "vnp_Version",
    "vnp_Command",
    "vnp_TmnCode",
    "vnp_Amount",
    "vnp_CurrCode",
    "vnp_TxnRef",
    "vnp_OrderInfo",
    "vnp_OrderType",
    "vnp_Locale",
    "vnp_ReturnUrl",
    "vnp_IpAddr",
    "vnp_CreateDate",
    "vnp_ExpireDate",
    "vnp_BankCode",
    "vnp_Bill_Mobile",
    "vnp_Bill_Email",
    "vnp_Bill_FirstName",
    "vnp_Bill_LastName",
    "vnp_Bill_Address",
    "vnp_Bill_City",
    "vnp_Bill_Country",
    "vnp_Inv_Phone",
    "vnp_Inv_Email",
    "vnp_Inv_Customer",
    "vnp_Inv_Address",
    "vnp_Inv_Company",
    "vnp_Inv_Taxcode",
    "vnp_Inv_Type",
)

# billing payload key -> gateway field
BILLING_FIELDS = {
    "bank_code": "vnp_BankCode",
    "locale": "vnp_Locale",
    "order_info": "vnp_OrderInfo",
    "order_type": "vnp_OrderType",
    "bill_mobile": "vnp_Bill_Mobile",
    "bill_email": "vnp_Bill_Email",
    "bill_first_name": "vnp_Bill_FirstName",
    "bill_last_name": "vnp_Bill_LastName",
    "bill_address": "vnp_Bill_Address",
    "bill_city": "vnp_Bill_City",
    "bill_country": "vnp_Bill_Country",
    "inv_phone": "vnp_Inv_Phone",
    "inv_email": "vnp_Inv_Email",
    "inv_customer": "vnp_Inv_Customer",
    "inv_address": "vnp_Inv_Address",
    "inv_company": "vnp_Inv_Company",
    "inv_taxcode": "vnp_Inv_Taxcode",
    "inv_type": "vnp_Inv_Type",
}

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Money deducted, transaction suspected of fraud",
    "09": "Card or account not registered for internet banking",
    "10": "Card or account authentication failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Wrong OTP",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Bank under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Other error",
}


def encode_params(pairs) -> str:
    return "&".join(f"{k}={quote_plus(str(v))}" for k, v in pairs)


def sign(data: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


def to_minor_units(amount) -> int:
    return int(money(amount) * 100)


def from_minor_units(raw) -> Decimal:
    return money(Decimal(int(raw)) / 100)


def order_id_from_ref(txn_ref):
    head = str(txn_ref or "").split("_", 1)[0]
    if not head.isdigit():
        return None
    return int(head)


def is_success(response_code) -> bool:
    return str(response_code or "") == VNP_SUCCESS_CODE


def describe_response(response_code) -> str:
    return RESPONSE_MESSAGES.get(str(response_code or ""), "Unknown response code")


class VNPayGateway:
    def __init__(self, tmn_code, hash_secret, payment_url, return_url,
                 timezone="Asia/Ho_Chi_Minh", expire_minutes=15):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url
        self.tz = ZoneInfo(timezone)
        self.expire_minutes = int(expire_minutes)

    @classmethod
    def from_config(cls, config):
        return cls(
            tmn_code=config["VNPAY_TMN_CODE"],
            hash_secret=config["VNPAY_HASH_SECRET"],
            payment_url=config["VNPAY_PAYMENT_URL"],
            return_url=config["VNPAY_RETURN_URL"],
            timezone=config.get("VNPAY_TIMEZONE", "Asia/Ho_Chi_Minh"),
            expire_minutes=config.get("VNPAY_EXPIRE_MINUTES", 15),
        )

    def make_txn_ref(self, order_id, now: datetime) -> str:
        return f"{int(order_id)}_{now.strftime(DATE_FORMAT)}{secrets.randbelow(10000):04d}"

    def build_redirect(self, order_id, amount, billing=None, client_ip="127.0.0.1",
                       now=None, return_url=None):
        """Return (redirect_url, txn_ref) for a signed payment request."""
        now = (now or datetime.now(self.tz)).astimezone(self.tz)
        txn_ref = self.make_txn_ref(order_id, now)

        values = {
            "vnp_Version": VNP_VERSION,
            "vnp_Command": VNP_COMMAND,
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": to_minor_units(amount),
            "vnp_CurrCode": VNP_CURRENCY,
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": f"Payment for order {order_id}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": return_url or self.return_url,
            "vnp_IpAddr": client_ip or "127.0.0.1",
            "vnp_CreateDate": now.strftime(DATE_FORMAT),
            "vnp_ExpireDate": (now + timedelta(minutes=self.expire_minutes)).strftime(DATE_FORMAT),
        }
        for key, field in BILLING_FIELDS.items():
            v = (billing or {}).get(key)
            if v is not None and str(v).strip():
                values[field] = str(v).strip()

        pairs = [(k, values[k]) for k in REQUEST_FIELD_ORDER
                 if values.get(k) is not None and str(values[k]) != ""]
        query = encode_params(pairs)
        secure_hash = sign(query, self.hash_secret)

        logger.info("built gateway redirect order=%s ref=%s", order_id, txn_ref)
        return f"{self.payment_url}?{query}&vnp_SecureHash={secure_hash}", txn_ref

    def verify_callback(self, params) -> bool:
        received = str(params.get("vnp_SecureHash") or "")
        if not received:
            return False

        # callbacks are signed over alphabetical key order, unlike requests
        pairs = sorted(
            (k, v) for k, v in params.items()
            if k not in HASH_FIELDS and k.startswith("vnp_") and v is not None and str(v) != ""
        )
        expected = sign(encode_params(pairs), self.hash_secret)
        return hmac.compare_digest(expected.lower(), received.lower())
