# database.py
import enum
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask import has_request_context, request
from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

from errors import OrderingError, StoreError


logger = logging.getLogger(__name__)

db = SQLAlchemy()


def now_utc():
    return datetime.now(timezone.utc)


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


class Role(str, enum.Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


def norm_role(role) -> str:
    return (role or "").strip().lower()


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    SCANNED = "scanned"
    CANCELLED = "cancelled"


TERMINAL_ORDER_STATUSES = (OrderStatus.SCANNED.value, OrderStatus.CANCELLED.value)
ADMIN_SETTABLE_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.COMPLETED.value,
)


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    ONLINE = "online"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STALE_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.CANCELLED.value,
)


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(160), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(40))
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=Role.CUSTOMER.value)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)

    def set_password(self, pw):
        self.password_hash = generate_password_hash(pw)

    def check_password(self, pw):
        return check_password_hash(self.password_hash, pw)

    def get_id(self):
        return str(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
        }


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    action = db.Column(db.String(80), nullable=False)
    entity = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    ip = db.Column(db.String(80))
    details_json = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=now_utc)


class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(140), nullable=False, unique=True)
    description = db.Column(db.String(500))


class Food(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    category_id = db.Column(db.Integer, db.ForeignKey("category.id"))
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    price = db.Column(db.Numeric(12, 2), nullable=False)
    image_url = db.Column(db.String(500))
    is_available = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=now_utc)

    def to_dict(self):
        return {
            "id": self.id,
            "category_id": self.category_id,
            "name": self.name,
            "description": self.description,
            "price": str(money(self.price)),
            "image_url": self.image_url,
            "is_available": bool(self.is_available),
        }


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    total_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING.value)
    cancelled_reason = db.Column(db.String(300))
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    food_id = db.Column(db.Integer, db.ForeignKey("food.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)

    __table_args__ = (db.CheckConstraint("quantity > 0", name="ck_order_item_quantity"),)


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    method = db.Column(db.String(20), nullable=False, default=PaymentMethod.CASH.value)
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    transaction_id = db.Column(db.String(120), unique=True, index=True)
    gateway_response_code = db.Column(db.String(10))
    created_at = db.Column(db.DateTime, default=now_utc)
    updated_at = db.Column(db.DateTime, default=now_utc, onupdate=now_utc)

    def to_dict(self):
        return {
            "payment_id": self.id,
            "order_id": self.order_id,
            "amount": str(money(self.amount)),
            "method": self.method,
            "status": self.status,
            "transaction_id": self.transaction_id,
        }


class Ticket(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, unique=True)
    ticket_code = db.Column(db.String(64), nullable=False, unique=True, index=True)
    issued_at = db.Column(db.DateTime, default=now_utc)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime)
    used_by = db.Column(db.Integer, db.ForeignKey("user.id"))

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "ticket_code": self.ticket_code,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "is_used": bool(self.is_used),
        }


def audit(session, actor_id, action, entity, entity_id=None, details=None):
    ip = None
    if has_request_context():
        ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    session.add(AuditLog(
        user_id=actor_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        ip=ip,
        details_json=(details or {}),
        created_at=now_utc()
    ))
    logger.info("audit action=%s entity=%s id=%s actor=%s", action, entity, entity_id, actor_id)


@contextmanager
def unit_of_work(session):
    """Commit everything done inside the block, or nothing.

    Any failure rolls back. Driver errors surface as StoreError, everything
    else propagates unchanged.
    """
    try:
        yield session
        session.commit()
    except OrderingError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("store failure, transaction rolled back")
        raise StoreError("Database error, please retry") from e
    except Exception:
        session.rollback()
        raise


@contextmanager
def read_only(session):
    """Run reads in a transaction that is always ended, never committed."""
    try:
        yield session
    finally:
        session.rollback()


def configure_sqlite(engine):
    """Make every SQLite transaction take the write lock up front.

    Without this, two writers that both read first can deadlock on lock
    promotion and one of them fails with "database is locked".
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
