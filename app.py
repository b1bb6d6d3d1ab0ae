# app.py
import io
import os
import logging
from functools import wraps

from flask import (
    Blueprint, Flask, current_app, jsonify, redirect, request, send_file,
)
from flask_login import LoginManager, current_user, login_required
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import Config, validate_config
from database import (
    db, configure_sqlite, audit, money, norm_role, unit_of_work,
    AuditLog, Category, Food, OrderItem, Role, User,
)
from errors import OrderingError, SecurityError
import lifecycle
from vnpay import VNPayGateway


logger = logging.getLogger(__name__)

login_manager = LoginManager()
api = Blueprint("api", __name__, url_prefix="/api")


def json_error(message, code=400):
    return jsonify({"success": False, "error": message}), code


def require_json():
    if not request.is_json:
        return json_error("Expected JSON body", 400)
    return None


def require_roles(*roles):
    allowed = {norm_role(r) for r in roles}

    def deco(fn):
        @wraps(fn)
        @login_required
        def wrapper(*args, **kwargs):
            cur = norm_role(getattr(current_user, "role", ""))
            if cur != Role.ADMIN.value and cur not in allowed:
                return json_error("Forbidden: insufficient role", 403)
            return fn(*args, **kwargs)
        return wrapper
    return deco


def _token_serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")


def issue_token(user) -> str:
    return _token_serializer().dumps({"uid": user.id, "role": user.role})


def gateway() -> VNPayGateway:
    return current_app.extensions["vnpay"]


def _actor_id():
    try:
        return int(current_user.id) if current_user and current_user.is_authenticated else None
    except Exception:
        return None


@login_manager.request_loader
def load_user_from_token(req):
    header = req.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    try:
        payload = _token_serializer().loads(token, max_age=current_app.config["TOKEN_MAX_AGE"])
    except SignatureExpired:
        logger.info("expired bearer token")
        return None
    except BadSignature:
        logger.warning("rejected bearer token with bad signature")
        return None
    user = db.session.get(User, int(payload.get("uid") or 0))
    if not user or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def _unauthorized():
    return json_error("Authentication required", 401)


# ---------------------------
# System / identity
# ---------------------------

@api.route("/system/init", methods=["POST"])
def api_system_init():
    db.create_all()
    if User.query.count() == 0:
        with unit_of_work(db.session):
            admin = User(name="Admin", email="admin@local", role=Role.ADMIN.value, phone="")
            admin.set_password("admin12345")
            db.session.add(admin)
            db.session.flush()
            audit(db.session, None, "seed", "user", admin.id, {"note": "Default admin created"})
        return jsonify({"success": True, "message": "Initialized. Default admin: admin@local / admin12345"})
    return jsonify({"success": True, "message": "Already initialized"})


@api.route("/register", methods=["POST"])
def api_register():
    bad = require_json()
    if bad:
        return bad

    data = request.get_json()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    phone = (data.get("phone") or "").strip() or None
    pw = data.get("password") or ""

    if not name:
        return json_error("Name required", 400)
    if not email:
        return json_error("Email required", 400)
    if len(pw) < 8:
        return json_error("Password must be at least 8 characters", 400)
    if User.query.filter_by(email=email).first():
        return json_error("Email already exists", 400)

    with unit_of_work(db.session):
        u = User(name=name, email=email, phone=phone, role=Role.CUSTOMER.value, is_active=True)
        u.set_password(pw)
        db.session.add(u)
        db.session.flush()
        audit(db.session, u.id, "register", "user", u.id)
        body = {"success": True, "token": issue_token(u), "user": u.to_dict()}

    return jsonify(body)


@api.route("/login", methods=["POST"])
def api_login():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    email = (data.get("email") or "").strip().lower()
    pw = data.get("password") or ""
    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not user.check_password(pw):
        logger.warning("failed login for %s", email)
        return json_error("Invalid email or password", 401)

    with unit_of_work(db.session):
        audit(db.session, user.id, "login", "user", user.id)
        body = {"success": True, "token": issue_token(user), "user": user.to_dict()}
    return jsonify(body)


@api.route("/me", methods=["GET"])
@login_required
def api_me():
    return jsonify({"success": True, "user": current_user.to_dict()})


# ---------------------------
# Menu
# ---------------------------

@api.route("/categories", methods=["GET"])
def api_categories_list():
    rows = Category.query.order_by(Category.name.asc()).all()
    return jsonify([{"id": c.id, "name": c.name, "description": c.description} for c in rows])


@api.route("/categories", methods=["POST"])
@require_roles(Role.ADMIN.value)
def api_categories_create():
    bad = require_json()
    if bad:
        return bad
    data = request.get_json()
    name = (data.get("name") or "").strip()
    if not name:
        return json_error("Name required", 400)
    if Category.query.filter_by(name=name).first():
        return json_error("Category already exists", 400)

    with unit_of_work(db.session):
        c = Category(name=name, description=(data.get("description") or "").strip() or None)
        db.session.add(c)
        db.session.flush()
        audit(db.session, current_user.id, "create", "category", c.id)
        body = {"success": True, "id": c.id}
    return jsonify(body)


def _food_fields(data, partial=False):
    out = {}
    if "name" in data or not partial:
        name = (data.get("name") or "").strip()
        if not name:
            return None, "Name required"
        out["name"] = name
    if "price" in data or not partial:
        price = money(data.get("price"))
        if price <= 0:
            return None, "price must be positive"
        out["price"] = price
    if "category_id" in data:
        cid = data.get("category_id")
        try:
            cid = int(cid) if cid is not None else None
        except (TypeError, ValueError):
            return None, "Invalid category_id"
        if cid is not None and not db.session.get(Category, cid):
            return None, "Invalid category_id"
        out["category_id"] = cid
    for key in ("description", "image_url"):
        if key in data:
            out[key] = (data.get(key) or "").strip() or None
    if "is_available" in data:
        out["is_available"] = bool(data.get("is_available"))
    return out, None


@api.route("/foods", methods=["GET"])
def api_foods_list():
    q = Food.query
    category_id = request.args.get("category_id", type=int)
    if category_id:
        q = q.filter_by(category_id=category_id)
    if request.args.get("all") != "1":
        q = q.filter(Food.is_available.is_(True))
    return jsonify([f.to_dict() for f in q.order_by(Food.id.asc()).all()])


@api.route("/foods", methods=["POST"])
@require_roles(Role.ADMIN.value)
def api_foods_create():
    bad = require_json()
    if bad:
        return bad
    fields, err = _food_fields(request.get_json())
    if err:
        return json_error(err, 400)

    with unit_of_work(db.session):
        f = Food(**fields)
        db.session.add(f)
        db.session.flush()
        audit(db.session, current_user.id, "create", "food", f.id, {"price": str(f.price)})
        body = {"success": True, "food": f.to_dict()}
    return jsonify(body)


@api.route("/foods/<int:food_id>", methods=["PUT"])
@require_roles(Role.ADMIN.value)
def api_foods_update(food_id):
    bad = require_json()
    if bad:
        return bad
    f = db.get_or_404(Food, food_id)
    fields, err = _food_fields(request.get_json(), partial=True)
    if err:
        return json_error(err, 400)

    with unit_of_work(db.session):
        for k, v in fields.items():
            setattr(f, k, v)
        audit(db.session, current_user.id, "update", "food", f.id,
              {k: str(v) for k, v in fields.items()})
        body = {"success": True, "food": f.to_dict()}
    return jsonify(body)


@api.route("/foods/<int:food_id>", methods=["DELETE"])
@require_roles(Role.ADMIN.value)
def api_foods_delete(food_id):
    f = db.get_or_404(Food, food_id)
    with unit_of_work(db.session):
        # ordered foods stay referenced by their line items
        if OrderItem.query.filter_by(food_id=f.id).first():
            f.is_available = False
            action = "disable"
        else:
            db.session.delete(f)
            action = "delete"
        audit(db.session, current_user.id, action, "food", food_id)
    return jsonify({"success": True, "action": action})


# ---------------------------
# Orders / payments / tickets
# ---------------------------

@api.route("/orders", methods=["POST"])
@require_roles(Role.CUSTOMER.value)
def api_orders_create():
    payload = request.get_json(silent=True) or {}
    out = lifecycle.create_order(db.session, current_user, payload.get("items"))
    return jsonify(out), 201


@api.route("/orders", methods=["GET"])
@login_required
def api_orders_list():
    return jsonify(lifecycle.list_orders(db.session, current_user))


@api.route("/orders/<int:order_id>", methods=["DELETE"])
@login_required
def api_orders_cancel(order_id):
    return jsonify(lifecycle.cancel_order(db.session, current_user, order_id))


@api.route("/payments", methods=["POST"])
@login_required
def api_payments_create():
    bad = require_json()
    if bad:
        return bad
    d = request.get_json()
    billing = {k: v for k, v in d.items() if k not in ("order_id", "method", "amount")}
    out = lifecycle.record_payment(
        db.session,
        current_user,
        d.get("order_id"),
        d.get("method"),
        d.get("amount"),
        gateway=current_app.extensions.get("vnpay"),
        billing=billing,
        client_ip=request.headers.get("X-Forwarded-For", request.remote_addr),
    )
    return jsonify(out)


@api.route("/payments/vnpay_return", methods=["GET"])
def api_vnpay_return():
    out = lifecycle.reconcile_online_callback(db.session, gateway(), request.args.to_dict())
    target = (current_app.config["PAYMENT_SUCCESS_URL"] if out["success"]
              else current_app.config["PAYMENT_FAILURE_URL"])
    sep = "&" if "?" in target else "?"
    return redirect(f"{target}{sep}order_id={out['order_id']}")


@api.route("/tickets/<int:order_id>", methods=["GET"])
@login_required
def api_ticket_get(order_id):
    return jsonify(lifecycle.get_ticket(db.session, current_user, order_id))


@api.route("/tickets/<int:order_id>/voucher.pdf", methods=["GET"])
@login_required
def api_ticket_voucher(order_id):
    filename, pdf_bytes = lifecycle.ticket_voucher(db.session, current_user, order_id)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=filename
    )


@api.route("/tickets/redeem", methods=["POST"])
@require_roles(Role.STAFF.value)
def api_ticket_redeem():
    d = request.get_json(silent=True) or {}
    out = lifecycle.redeem_ticket(db.session, current_user, d.get("ticket_code"))
    return jsonify({"success": True, **out})


# ---------------------------
# Admin
# ---------------------------

@api.route("/admin/orders", methods=["GET"])
@require_roles(Role.ADMIN.value)
def api_admin_orders():
    return jsonify(lifecycle.list_all_orders(db.session, current_user, request.args.get("status")))


@api.route("/admin/orders/<int:order_id>/status", methods=["PUT"])
@require_roles(Role.ADMIN.value)
def api_admin_order_status(order_id):
    bad = require_json()
    if bad:
        return bad
    out = lifecycle.update_order_status(
        db.session, current_user, order_id, request.get_json().get("status")
    )
    return jsonify({"success": True, **out})


@api.route("/admin/orders/<int:order_id>/cancel", methods=["POST"])
@require_roles(Role.ADMIN.value)
def api_admin_order_cancel(order_id):
    d = request.get_json(silent=True) or {}
    out = lifecycle.admin_cancel_order(db.session, current_user, order_id, d.get("reason"))
    return jsonify({"success": True, **out})


@api.route("/admin/payments/<int:payment_id>/confirm", methods=["POST"])
@require_roles(Role.ADMIN.value)
def api_admin_payment_confirm(payment_id):
    out = lifecycle.confirm_cash_payment(db.session, current_user, payment_id)
    return jsonify({"success": True, **out})


@api.route("/admin/tickets/verify", methods=["POST"])
@require_roles(Role.ADMIN.value)
def api_admin_ticket_verify():
    d = request.get_json(silent=True) or {}
    out = lifecycle.verify_ticket_for_admin(db.session, current_user, d.get("ticket_code"))
    return jsonify({"success": True, **out})


@api.route("/audit-logs", methods=["GET"])
@require_roles(Role.ADMIN.value)
def api_audit_logs():
    logs = AuditLog.query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(500).all()
    out = []
    for l in logs:
        out.append({
            "id": l.id, "user_id": l.user_id, "action": l.action, "entity": l.entity,
            "entity_id": l.entity_id, "ip": l.ip, "details": l.details_json,
            "created_at": l.created_at.isoformat() if l.created_at else None
        })
    return jsonify({"success": True, "logs": out})


def _handle_ordering_error(e: OrderingError):
    level = logging.ERROR if e.http_status >= 500 else logging.WARNING
    if isinstance(e, SecurityError):
        level = logging.ERROR
    logger.log(
        level,
        "%s on %s %s: %s (actor=%s entity=%s id=%s)",
        type(e).__name__, request.method, request.path, e.message,
        _actor_id(), e.entity, e.entity_id,
    )
    return jsonify(e.to_dict()), e.http_status


def create_app(config=None):
    if config is None:
        config = Config()
    elif isinstance(config, dict):
        config = Config(**config)
    validate_config(config)

    app = Flask(__name__)
    app.config.from_mapping(config.as_flask_config())

    logging.basicConfig(level=getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    db.init_app(app)
    login_manager.init_app(app)
    app.extensions["vnpay"] = VNPayGateway.from_config(app.config)

    app.register_blueprint(api)
    app.register_error_handler(OrderingError, _handle_ordering_error)

    @app.errorhandler(404)
    def _err_404(_e):
        return json_error("Not found", 404)

    @app.errorhandler(405)
    def _err_405(_e):
        return json_error("Method not allowed", 405)

    @app.get("/")
    def root():
        return jsonify({"message": "FastOrder API is running"})

    with app.app_context():
        configure_sqlite(db.engine)
        db.create_all()

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
