import os
from decimal import Decimal

from jinja2 import Environment, select_autoescape
from sqlalchemy.orm import Session

from .errors import OrderNotFound
from .models import Order, Payment
from . import orders

RECEIPT_COMPANY_NAME = os.getenv("RECEIPT_COMPANY_NAME", "MicroShop")

METHOD_LABELS = {
    "card": "Credit/Debit Card",
    "bank_transfer": "Bank Transfer",
    "cash_on_delivery": "Cash on Delivery",
}

RECEIPT_TEMPLATE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Receipt #{{ payment.id }}</title></head>
<body>
<h1>{{ company }}</h1>
<h2>PAYMENT RECEIPT</h2>

<h3>Payment Information</h3>
<p>Receipt Number: {{ payment.id }}<br>
Payment Date: {{ payment.created_at.strftime("%Y-%m-%d") }}<br>
Payment Method: {{ method_label }}<br>
Payment Status: {{ payment.status }}<br>
Transaction ID: {{ payment.transaction_id or "N/A" }}</p>
{% if payment.method == "card" %}
<p>Card: {{ payment.method_payload.get("brand", "unknown") }} ending in {{ payment.method_payload.get("last_four", "????") }}</p>
{% elif payment.method == "bank_transfer" %}
<p>Bank: {{ payment.method_payload.get("bank_name") }}<br>
Reference: {{ payment.method_payload.get("reference_number") }}</p>
{% endif %}

<h3>Customer Information</h3>
<p>Customer ID: {{ payment.user_id }}</p>

{% if order %}
<h3>Order Information</h3>
<p>Order ID: {{ order.id }}<br>
Order Date: {{ order.created_at.strftime("%Y-%m-%d") }}<br>
Order Status: {{ order.status }}</p>

<table>
<tr><th>Item #</th><th>Description</th><th>Qty</th><th>Price</th><th>Total</th></tr>
{% for item in order.items %}
<tr><td>{{ loop.index }}</td><td>{{ item.name }}</td><td>{{ item.quantity }}</td><td>{{ money(item.unit_price) }}</td><td>{{ money(item.line_total) }}</td></tr>
{% endfor %}
</table>
<p>Subtotal: {{ money(subtotal) }}</p>
{% else %}
<p>Order #{{ payment.order_id }} is no longer on file.</p>
{% endif %}
<p><b>Total: {{ money(payment.amount) }}</b></p>

<p>Thank you for your business!</p>
<p><small>This is an electronically generated receipt and does not require a signature.</small></p>
</body>
</html>
"""

_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))
_template = _env.from_string(RECEIPT_TEMPLATE)


def money(value) -> str:
    return f"${Decimal(value):,.2f}"


def render_receipt(db: Session, payment: Payment) -> str:
    """Human-readable receipt for one payment. Read-only."""
    try:
        order: Order | None = orders.load(db, payment.order_id)
    except OrderNotFound:
        # cancelled orders may have been cleared since
        order = None

    subtotal = sum((i.line_total for i in order.items), Decimal("0.00")) if order else Decimal("0.00")
    return _template.render(
        company=RECEIPT_COMPANY_NAME,
        payment=payment,
        order=order,
        subtotal=subtotal,
        method_label=METHOD_LABELS.get(payment.method, payment.method),
        money=money,
    )


def receipt_filename(payment: Payment) -> str:
    return f"receipt-{payment.id}.html"
