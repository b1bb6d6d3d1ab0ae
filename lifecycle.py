# lifecycle.py
"""Order, payment and ticket state transitions.

Every public function takes the store session as its first argument and
runs as a single unit of work: all rows change or none do.
"""
import logging
from decimal import Decimal

from database import (
    Order, OrderItem, Payment, Ticket, Food, User,
    OrderStatus, PaymentMethod, PaymentStatus, Role,
    TERMINAL_ORDER_STATUSES, ADMIN_SETTABLE_STATUSES, STALE_PAYMENT_STATUSES,
    audit, money, norm_role, now_utc, read_only, unit_of_work,
)
from errors import (
    ValidationError, NotFoundError, AuthorizationError, ConflictError, SecurityError,
)
from tickets import issue_ticket, render_ticket_pdf
import vnpay


logger = logging.getLogger(__name__)

MSG_ALREADY_USED = "Ticket already used"
MSG_NOT_CONFIRMED = "Order not yet confirmed"
MSG_NOT_PAID = "Order must be paid before pickup"
MSG_CANCELLED = "Order has been cancelled"
MSG_REDEEMED = "Ticket redeemed, order ready for pickup"

REDEEM_REJECTIONS = {
    OrderStatus.PENDING.value: MSG_NOT_CONFIRMED,
    OrderStatus.CONFIRMED.value: MSG_NOT_PAID,
    OrderStatus.CANCELLED.value: MSG_CANCELLED,
    OrderStatus.SCANNED.value: MSG_ALREADY_USED,
}


def _require_role(actor, *roles):
    allowed = {norm_role(r) for r in roles}
    if norm_role(getattr(actor, "role", "")) not in allowed:
        raise AuthorizationError("Forbidden: insufficient role", "user", getattr(actor, "id", None))


def _get_order(session, order_id, lock=False) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationError("order_id must be an integer", "order", None)
    q = session.query(Order).filter(Order.id == oid)
    if lock:
        q = q.with_for_update()
    o = q.first()
    if not o:
        raise NotFoundError("Order not found", "order", oid)
    return o


def _get_owned_order(session, user, order_id, lock=False) -> Order:
    o = _get_order(session, order_id, lock=lock)
    if o.user_id != user.id:
        raise AuthorizationError("Order does not belong to you", "order", o.id)
    return o


def _positive_int(value):
    if isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and value != n:
        return None
    return n if n > 0 else None


def _parse_items(items):
    if not isinstance(items, list) or not items:
        raise ValidationError("Items are required and must be a non-empty array", "order")

    merged = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("Each item must have food_id and quantity > 0", "order")
        food_id = _positive_int(raw.get("food_id"))
        quantity = _positive_int(raw.get("quantity"))
        if food_id is None or quantity is None:
            raise ValidationError("Each item must have food_id and quantity > 0", "order")
        merged[food_id] = merged.get(food_id, 0) + quantity
    return merged


def create_order(session, user, items):
    wanted = _parse_items(items)

    with unit_of_work(session):
        foods = {f.id: f for f in session.query(Food).filter(Food.id.in_(list(wanted))).all()}
        for food_id in wanted:
            f = foods.get(food_id)
            if f is None:
                raise NotFoundError(f"Food {food_id} not found", "food", food_id)
            if not f.is_available:
                raise ConflictError(f"Food {food_id} is not available", "food", food_id)

        # unit prices are frozen here; later menu edits never touch this order
        lines = [(food_id, qty, money(foods[food_id].price)) for food_id, qty in wanted.items()]
        total = sum((price * qty for _, qty, price in lines), Decimal("0.00"))

        o = Order(user_id=user.id, total_price=total, status=OrderStatus.PENDING.value,
                  created_at=now_utc())
        session.add(o)
        session.flush()

        for food_id, qty, price in lines:
            session.add(OrderItem(order_id=o.id, food_id=food_id, quantity=qty, unit_price=price))

        ticket = issue_ticket(session, o.id)
        audit(session, user.id, "create", "order", o.id,
              {"total_price": str(total), "items": len(lines)})
        result = {
            "order_id": o.id,
            "total_price": str(money(total)),
            "status": o.status,
            "ticket_code": ticket.ticket_code,
        }

    return result


def record_payment(session, user, order_id, method, amount, gateway=None,
                   billing=None, client_ip=None):
    method = (method or "").strip().lower()
    if method not in (PaymentMethod.CASH.value, PaymentMethod.ONLINE.value):
        raise ValidationError("method must be 'cash' or 'online'", "order", order_id)
    amt = money(amount)
    if amt <= Decimal("0.00"):
        raise ValidationError("amount must be positive", "order", order_id)
    if method == PaymentMethod.ONLINE.value and gateway is None:
        raise ValidationError("Online payment is not configured", "order", order_id)

    payment_url = None
    with unit_of_work(session):
        o = _get_owned_order(session, user, order_id, lock=True)

        if session.query(Payment.id).filter_by(
                order_id=o.id, status=PaymentStatus.COMPLETED.value).first():
            raise ConflictError("Order is already paid", "order", o.id)
        if o.status not in (OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value):
            raise ConflictError(f"Cannot pay an order that is {o.status}", "order", o.id)
        if amt != money(o.total_price):
            raise ValidationError(
                f"amount must equal the order total {money(o.total_price)}", "order", o.id
            )

        purged = session.query(Payment).filter(
            Payment.order_id == o.id,
            Payment.status.in_(STALE_PAYMENT_STATUSES),
        ).delete(synchronize_session=False)

        transaction_id = None
        if method == PaymentMethod.ONLINE.value:
            payment_url, transaction_id = gateway.build_redirect(
                o.id, amt, billing=billing, client_ip=client_ip
            )

        p = Payment(order_id=o.id, method=method, amount=amt,
                    status=PaymentStatus.PENDING.value, transaction_id=transaction_id)
        session.add(p)

        if method == PaymentMethod.CASH.value and o.status == OrderStatus.PENDING.value:
            o.status = OrderStatus.CONFIRMED.value

        issue_ticket(session, o.id)
        session.flush()
        audit(session, user.id, "payment", "order", o.id,
              {"payment_id": p.id, "method": method, "amount": str(amt), "purged": purged})
        out = p.to_dict()

    if payment_url:
        out["payment_url"] = payment_url
    return out


def confirm_cash_payment(session, admin, payment_id):
    _require_role(admin, Role.ADMIN.value)

    with unit_of_work(session):
        p = session.query(Payment).filter_by(
            id=payment_id, method=PaymentMethod.CASH.value
        ).with_for_update().first()
        if not p:
            raise NotFoundError("Cash payment not found", "payment", payment_id)
        if p.status == PaymentStatus.COMPLETED.value:
            raise ConflictError("Payment already completed", "payment", p.id)
        if p.status != PaymentStatus.PENDING.value:
            raise ConflictError(f"Payment is {p.status}", "payment", p.id)

        p.status = PaymentStatus.COMPLETED.value
        p.updated_at = now_utc()
        audit(session, admin.id, "confirm_cash", "payment", p.id, {"order_id": p.order_id})
        out = p.to_dict()

    return out


def reconcile_online_callback(session, gateway, params):
    """Apply a signed gateway callback to the payment and its order.

    Only a pending payment moves. A replayed or late callback for a payment
    that already settled is reported back and changes nothing.
    """
    params = dict(params or {})
    txn_ref = params.get("vnp_TxnRef")

    if not gateway.verify_callback(params):
        logger.warning("rejected gateway callback with bad signature ref=%s", txn_ref)
        raise SecurityError("Invalid signature", "payment", None)

    order_id = vnpay.order_id_from_ref(txn_ref)
    if order_id is None:
        raise ValidationError("Malformed transaction reference", "payment", None)

    code = str(params.get("vnp_ResponseCode") or "")
    success = vnpay.is_success(code)

    with unit_of_work(session):
        p = session.query(Payment).filter_by(transaction_id=txn_ref).with_for_update().first()
        if not p:
            raise NotFoundError("Payment not found", "payment", None)
        if p.order_id != order_id:
            raise ValidationError("Transaction reference does not match order", "payment", p.id)
        try:
            paid = vnpay.from_minor_units(params.get("vnp_Amount"))
        except (TypeError, ValueError):
            raise ValidationError("Malformed amount", "payment", p.id)
        if paid != money(p.amount):
            raise ValidationError("Amount does not match payment", "payment", p.id)

        result = {
            "order_id": order_id,
            "payment_id": p.id,
            "success": success,
            "replayed": False,
        }

        moved = session.query(Payment).filter(
            Payment.id == p.id,
            Payment.status == PaymentStatus.PENDING.value,
        ).update({
            "status": PaymentStatus.COMPLETED.value if success else PaymentStatus.CANCELLED.value,
            "gateway_response_code": code,
            "updated_at": now_utc(),
        }, synchronize_session=False)

        if moved != 1:
            session.refresh(p)
            logger.info("ignored replayed callback payment=%s status=%s", p.id, p.status)
            result.update(status=p.status, replayed=True,
                          success=p.status == PaymentStatus.COMPLETED.value)
            return result

        if success:
            flipped = session.query(Order).filter(
                Order.id == order_id,
                Order.status.in_([OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value]),
            ).update({"status": OrderStatus.COMPLETED.value, "updated_at": now_utc()},
                     synchronize_session=False)
            if flipped != 1:
                logger.warning("payment %s settled but order %s was not payable", p.id, order_id)

        audit(session, None, "gateway_callback", "payment", p.id, {
            "order_id": order_id,
            "response_code": code,
            "message": vnpay.describe_response(code),
        })
        result["status"] = PaymentStatus.COMPLETED.value if success else PaymentStatus.CANCELLED.value

    return result


def cancel_order(session, user, order_id):
    with unit_of_work(session):
        o = _get_owned_order(session, user, order_id, lock=True)

        if o.status == OrderStatus.PENDING.value:
            if session.query(Payment.id).filter_by(
                    order_id=o.id, status=PaymentStatus.COMPLETED.value).first():
                raise ConflictError("Order is already paid", "order", o.id)
            oid = o.id
            session.query(Ticket).filter_by(order_id=oid).delete(synchronize_session=False)
            session.query(OrderItem).filter_by(order_id=oid).delete(synchronize_session=False)
            session.query(Payment).filter_by(order_id=oid).delete(synchronize_session=False)
            session.delete(o)
            audit(session, user.id, "delete", "order", oid)
            return {"message": "Order cancelled and removed", "order_id": oid}

        if o.status == OrderStatus.CONFIRMED.value:
            _soft_cancel(session, o, "cancelled by customer")
            audit(session, user.id, "cancel", "order", o.id)
            return {"message": "Order cancelled", "order_id": o.id}

        raise ConflictError(f"Cannot cancel an order that is {o.status}", "order", o.id)


def admin_cancel_order(session, admin, order_id, reason=None):
    _require_role(admin, Role.ADMIN.value)
    reason = (reason or "cancelled by admin").strip()

    with unit_of_work(session):
        o = _get_order(session, order_id, lock=True)
        if o.status in TERMINAL_ORDER_STATUSES:
            raise ConflictError(f"Order is already {o.status}", "order", o.id)
        _soft_cancel(session, o, reason)
        audit(session, admin.id, "cancel", "order", o.id, {"reason": reason})
        result = {"message": "Order cancelled", "order_id": o.id}

    return result


def _soft_cancel(session, order, reason):
    order.status = OrderStatus.CANCELLED.value
    order.cancelled_reason = reason
    session.query(Payment).filter_by(
        order_id=order.id, status=PaymentStatus.PENDING.value
    ).update({"status": PaymentStatus.CANCELLED.value, "updated_at": now_utc()},
             synchronize_session=False)


def update_order_status(session, admin, order_id, status):
    _require_role(admin, Role.ADMIN.value)
    status = (status or "").strip().lower()
    if status not in ADMIN_SETTABLE_STATUSES:
        raise ValidationError(
            "status must be one of: " + ", ".join(ADMIN_SETTABLE_STATUSES), "order", order_id
        )

    with unit_of_work(session):
        o = _get_order(session, order_id, lock=True)
        if o.status in TERMINAL_ORDER_STATUSES:
            raise ConflictError(f"Order is already {o.status}", "order", o.id)
        previous = o.status
        o.status = status
        o.updated_at = now_utc()
        audit(session, admin.id, "status", "order", o.id, {"from": previous, "to": status})
        result = {"order_id": o.id, "status": status}

    return result


def _ticket_code(ticket_code):
    code = ticket_code.strip() if isinstance(ticket_code, str) else ""
    if not code:
        raise ValidationError("ticket_code is required", "ticket")
    return code


def _redeem(session, actor, code):
    """Claim the ticket and scan its order inside the caller's unit of work.

    Both updates are conditional on the previous state, so of any number of
    concurrent scans only one can see the affected rows change.
    """
    t = session.query(Ticket).filter_by(ticket_code=code).with_for_update().first()
    if not t:
        raise NotFoundError("Ticket not found", "ticket", None)
    o = _get_order(session, t.order_id, lock=True)

    if t.is_used:
        raise ConflictError(MSG_ALREADY_USED, "ticket", t.id)
    if o.status != OrderStatus.COMPLETED.value:
        raise ConflictError(REDEEM_REJECTIONS.get(o.status, MSG_NOT_PAID), "order", o.id)

    used = session.query(Ticket).filter(
        Ticket.id == t.id,
        Ticket.is_used.is_(False),
    ).update({"is_used": True, "used_at": now_utc(), "used_by": actor.id},
             synchronize_session=False)
    if used != 1:
        raise ConflictError(MSG_ALREADY_USED, "ticket", t.id)

    scanned = session.query(Order).filter(
        Order.id == o.id,
        Order.status == OrderStatus.COMPLETED.value,
    ).update({"status": OrderStatus.SCANNED.value, "updated_at": now_utc()},
             synchronize_session=False)
    if scanned != 1:
        raise ConflictError(MSG_ALREADY_USED, "order", o.id)

    audit(session, actor.id, "redeem", "ticket", t.id, {"order_id": o.id})
    return o


def redeem_ticket(session, staff, ticket_code):
    """Mark a ticket used and its order scanned, exactly once."""
    with unit_of_work(session):
        _require_role(staff, Role.STAFF.value, Role.ADMIN.value)
        code = _ticket_code(ticket_code)
        o = _redeem(session, staff, code)
        result = {"message": MSG_REDEEMED, "order_id": o.id, "ticket_code": code}

    return result


def verify_ticket_for_admin(session, admin, ticket_code):
    with unit_of_work(session):
        _require_role(admin, Role.ADMIN.value)
        code = _ticket_code(ticket_code)
        o = _redeem(session, admin, code)
        p = session.query(Payment).filter_by(
            order_id=o.id, status=PaymentStatus.COMPLETED.value
        ).first()
        result = {
            "message": MSG_REDEEMED,
            "order_id": o.id,
            "ticket_code": code,
            "payment_status": p.status if p else None,
            "payment_method": p.method if p else None,
            "total_price": str(money(o.total_price)),
        }

    return result


def _order_dict(o, items, ticket):
    return {
        "id": o.id,
        "user_id": o.user_id,
        "total_price": str(money(o.total_price)),
        "status": o.status,
        "created_at": o.created_at.isoformat() if o.created_at else None,
        "ticket_code": ticket.ticket_code if ticket else None,
        "items": items,
    }


def _orders_payload(session, orders):
    if not orders:
        return []
    ids = [o.id for o in orders]
    rows = (
        session.query(OrderItem, Food.name)
        .join(Food, Food.id == OrderItem.food_id)
        .filter(OrderItem.order_id.in_(ids))
        .order_by(OrderItem.id.asc())
        .all()
    )
    items = {}
    for oi, name in rows:
        items.setdefault(oi.order_id, []).append({
            "food_id": oi.food_id,
            "name": name,
            "quantity": oi.quantity,
            "unit_price": str(money(oi.unit_price)),
        })
    tickets = {t.order_id: t for t in session.query(Ticket).filter(Ticket.order_id.in_(ids)).all()}
    return [_order_dict(o, items.get(o.id, []), tickets.get(o.id)) for o in orders]


def list_orders(session, user):
    with read_only(session):
        orders = (
            session.query(Order)
            .filter(Order.user_id == user.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )
        out = _orders_payload(session, orders)
    return out


def list_all_orders(session, admin, status=None):
    with read_only(session):
        _require_role(admin, Role.ADMIN.value)
        q = session.query(Order)
        if status:
            q = q.filter(Order.status == status)
        orders = q.order_by(Order.created_at.desc(), Order.id.desc()).limit(500).all()
        out = _orders_payload(session, orders)

        names = dict(
            session.query(User.id, User.name)
            .filter(User.id.in_({o.user_id for o in orders}))
            .all()
        ) if orders else {}
    for row in out:
        row["customer_name"] = names.get(row["user_id"])
    return out


def _visible_ticket(session, user, order_id):
    o = _get_order(session, order_id)
    if o.user_id != user.id and norm_role(user.role) != Role.ADMIN.value:
        raise AuthorizationError("Ticket not found or not authorized", "order", o.id)
    t = session.query(Ticket).filter_by(order_id=o.id).first()
    if not t:
        raise NotFoundError("Ticket not found", "ticket", None)
    return t, o


def get_ticket(session, user, order_id):
    with read_only(session):
        t, _o = _visible_ticket(session, user, order_id)
        out = t.to_dict()
    return out


def ticket_voucher(session, user, order_id):
    """Return (filename, pdf bytes) of the order's QR pickup voucher."""
    with read_only(session):
        t, o = _visible_ticket(session, user, order_id)
        items = (
            session.query(OrderItem)
            .filter_by(order_id=o.id)
            .order_by(OrderItem.id.asc())
            .all()
        )
        filename = f"ticket_{o.id}.pdf"
        pdf_bytes = render_ticket_pdf(session, t, o, items)
    return filename, pdf_bytes
