import sqlite3
from contextlib import contextmanager
from decimal import Decimal

import pytest

import vnpay
from app import create_app
from config import Config
from database import db, Category, Food, User, Role


HASH_SECRET = "TESTHASHSECRET0123456789"
GATEWAY_URL = "https://gateway.test/paymentv2/vpcpay.html"
SUCCESS_URL = "http://front.test/payment/success"
FAILURE_URL = "http://front.test/payment/failed"

PASSWORD = "password123"


@pytest.fixture
def config(tmp_path):
    return Config(
        TESTING=True,
        SECRET_KEY="test-secret-key",
        DATABASE_URL=f"sqlite:///{tmp_path / 'fastorder-test.db'}",
        DB_TIMEOUT=15,
        VNPAY_TMN_CODE="TESTTMN1",
        VNPAY_HASH_SECRET=HASH_SECRET,
        VNPAY_PAYMENT_URL=GATEWAY_URL,
        VNPAY_RETURN_URL="http://localhost/api/payments/vnpay_return",
        PAYMENT_SUCCESS_URL=SUCCESS_URL,
        PAYMENT_FAILURE_URL=FAILURE_URL,
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def app(config):
    app = create_app(config)
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def seeded(app):
    """One user per role, a category and three foods. Returns their ids."""
    with app.app_context():
        users = {}
        for role in (Role.ADMIN.value, Role.STAFF.value, Role.CUSTOMER.value, "other"):
            u = User(
                name=role.title(),
                email=f"{role}@example.com",
                role=Role.CUSTOMER.value if role == "other" else role,
            )
            u.set_password(PASSWORD)
            db.session.add(u)
            db.session.flush()
            users[role] = u.id

        cat = Category(name="Rice", description="Rice dishes")
        db.session.add(cat)
        db.session.flush()

        foods = {}
        for key, name, price, available in (
            ("rice", "Broken rice", "50000", True),
            ("tea", "Iced tea", "25000", True),
            ("soup", "Sold out soup", "40000", False),
        ):
            f = Food(category_id=cat.id, name=name, price=Decimal(price), is_available=available)
            db.session.add(f)
            db.session.flush()
            foods[key] = f.id

        db.session.commit()
        out = {"users": users, "foods": foods, "category": cat.id}
    return out


@pytest.fixture
def session(app, seeded):
    with app.app_context():
        yield db.session


@pytest.fixture
def actors(session, seeded):
    return {role: session.get(User, uid) for role, uid in seeded["users"].items()}


@pytest.fixture
def gateway(app):
    return app.extensions["vnpay"]


@pytest.fixture
def client(app, seeded):
    return app.test_client()


@contextmanager
def store(app):
    """Short-lived app context for inspecting rows between requests."""
    with app.app_context():
        yield db.session


def signed_callback(params, secret=HASH_SECRET):
    pairs = sorted((k, v) for k, v in params.items() if str(v) != "")
    out = dict(params)
    out["vnp_SecureHash"] = vnpay.sign(vnpay.encode_params(pairs), secret)
    out["vnp_SecureHashType"] = "HmacSHA512"
    return out


def callback_for(payment, code="00", **extra):
    params = {
        "vnp_Amount": str(vnpay.to_minor_units(payment["amount"])),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": f"Payment for order {payment['order_id']}",
        "vnp_PayDate": "20261017120000",
        "vnp_ResponseCode": code,
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14000000",
        "vnp_TransactionStatus": code,
        "vnp_TxnRef": payment["transaction_id"],
    }
    params.update(extra)
    return signed_callback(params)


def login(client, email, password=PASSWORD):
    resp = client.post("/api/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.get_json()
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def headers(client):
    return {
        role: login(client, f"{role}@example.com")
        for role in (Role.ADMIN.value, Role.STAFF.value, Role.CUSTOMER.value, "other")
    }


def store_is_writable(config, timeout=1):
    """True when a second connection can take the sqlite write lock."""
    conn = sqlite3.connect(config.DATABASE_URL[len("sqlite:///"):], timeout=timeout)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("ROLLBACK")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()
