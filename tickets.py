# tickets.py
import io
import logging
import secrets

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.pagesizes import A6
from reportlab.pdfgen import canvas

from database import Ticket, Food, money, now_utc


logger = logging.getLogger(__name__)

TICKET_CODE_BYTES = 8
MAX_CODE_ATTEMPTS = 5


def new_ticket_code() -> str:
    return secrets.token_hex(TICKET_CODE_BYTES)


def issue_ticket(session, order_id) -> Ticket:
    """Return the order's ticket, minting one if it has none yet.

    Runs inside the caller's transaction; nothing is committed here.
    """
    existing = session.query(Ticket).filter_by(order_id=order_id).first()
    if existing:
        return existing

    for _ in range(MAX_CODE_ATTEMPTS):
        code = new_ticket_code()
        if session.query(Ticket.id).filter_by(ticket_code=code).first() is None:
            break
    else:
        raise RuntimeError("could not generate a unique ticket code")

    t = Ticket(order_id=order_id, ticket_code=code, issued_at=now_utc(), is_used=False)
    session.add(t)
    session.flush()
    logger.info("issued ticket for order=%s", order_id)
    return t


def _qr_drawing(value, size):
    widget = QrCodeWidget(value)
    x0, y0, x1, y1 = widget.getBounds()
    d = Drawing(size, size, transform=[size / (x1 - x0), 0, 0, size / (y1 - y0), 0, 0])
    d.add(widget)
    return d


def render_ticket_pdf(session, ticket, order, items, restaurant_name="FastOrder") -> bytes:
    buffer = io.BytesIO()
    c = canvas.Canvas(buffer, pagesize=A6)
    width, height = A6

    c.setFont("Helvetica-Bold", 13)
    c.drawString(20, height - 30, restaurant_name)

    c.setFont("Helvetica", 9)
    c.drawString(20, height - 46, f"Order #{order.id}")
    c.drawString(20, height - 58, f"Status: {order.status}")
    c.drawString(20, height - 70, f"Ticket: {ticket.ticket_code}")

    qr_size = 110
    renderPDF.draw(_qr_drawing(ticket.ticket_code, qr_size), c, (width - qr_size) / 2, height - 195)

    y = height - 212
    c.setFont("Helvetica-Bold", 8)
    c.drawString(20, y, "Item")
    c.drawRightString(200, y, "Qty")
    c.drawRightString(width - 20, y, "Line")
    y -= 6
    c.line(20, y, width - 20, y)
    y -= 10

    food_names = {
        f.id: f.name
        for f in session.query(Food).filter(Food.id.in_([oi.food_id for oi in items])).all()
    } if items else {}

    c.setFont("Helvetica", 8)
    for oi in items:
        line_total = money(oi.unit_price) * oi.quantity
        c.drawString(20, y, (food_names.get(oi.food_id) or f"Food {oi.food_id}")[:32])
        c.drawRightString(200, y, str(oi.quantity))
        c.drawRightString(width - 20, y, f"{line_total:.2f}")
        y -= 11
        if y < 40:
            c.showPage()
            y = height - 30
            c.setFont("Helvetica", 8)

    y -= 4
    c.line(20, y, width - 20, y)
    y -= 12
    c.setFont("Helvetica-Bold", 9)
    c.drawRightString(width - 20, y, f"Total: {money(order.total_price):.2f}")

    if ticket.is_used:
        c.setFont("Helvetica-Bold", 16)
        c.drawCentredString(width / 2, 20, "USED")

    c.showPage()
    c.save()
    buffer.seek(0)
    return buffer.read()
