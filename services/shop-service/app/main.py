import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from . import cart as carts
from . import checkout, inventory, orders, payments, receipts
from .db import get_db, init_schema
from .errors import install_handlers
from .gateway import CardAuthorizer, close_http_client, get_card_authorizer, open_http_client
from .schemas import (
    CartItemAdd,
    CartItemUpdate,
    CartOut,
    Envelope,
    InventoryOut,
    OrderCreateIn,
    OrderOut,
    OrderPaymentStatusIn,
    OrderStatusUpdate,
    PaymentCreateIn,
    PaymentOut,
    PaymentStatusUpdate,
    RestockIn,
)
from shared.security import Principal, require_admin, require_user

logger = logging.getLogger(__name__)
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Keep cold start lightweight for Lambda.
    Schema creation belongs to deploy-time unless DB_INIT_ON_STARTUP=true.
    """
    if os.getenv("DB_INIT_ON_STARTUP", "false").lower() == "true":
        init_schema()
    open_http_client()
    yield
    close_http_client()


app = FastAPI(title="shop-service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,  # tighten in prod
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_handlers(app)


# Cart

@app.get("/cart", response_model=Envelope[CartOut])
def get_cart(principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    return Envelope(data=CartOut.model_validate(carts.get_or_create(db, principal.id)))


@app.post("/cart/add", response_model=Envelope[CartOut])
def add_to_cart(payload: CartItemAdd, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    cart = carts.add_item(db, principal.id, payload.product_id, payload.quantity)
    return Envelope(message="Item added to cart", data=CartOut.model_validate(cart))


@app.put("/cart/update", response_model=Envelope[CartOut])
def update_cart_item(payload: CartItemUpdate, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    cart = carts.update_item_quantity(db, principal.id, payload.item_id, payload.quantity)
    return Envelope(message="Cart item updated", data=CartOut.model_validate(cart))


@app.delete("/cart/item/{item_id}", response_model=Envelope[CartOut])
def remove_from_cart(item_id: int, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    cart = carts.remove_item(db, principal.id, item_id)
    return Envelope(message="Item removed from cart", data=CartOut.model_validate(cart))


@app.delete("/cart/clear", response_model=Envelope[CartOut])
def clear_cart(principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    return Envelope(message="Cart cleared", data=CartOut.model_validate(carts.clear(db, principal.id)))


# Orders

@app.post("/orders", response_model=Envelope[OrderOut], status_code=201)
def create_order(payload: OrderCreateIn, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    order = checkout.create_order(db, principal.id, payload.shipping_address.model_dump())
    return Envelope(message="Order created", data=OrderOut.model_validate(order))


@app.get("/orders/my-orders", response_model=Envelope[list[OrderOut]])
def list_my_orders(principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    rows = orders.list_for_user(db, principal.id)
    return Envelope(data=[OrderOut.model_validate(o) for o in rows], count=len(rows))


@app.delete("/orders/clear-cancelled", response_model=Envelope[None])
def clear_my_cancelled_orders(principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    count = orders.clear_cancelled(db, user_id=principal.id)
    message = "Cancelled orders cleared successfully" if count else "No cancelled orders to clear"
    return Envelope(message=message, count=count)


@app.delete("/orders/admin/clear-cancelled", response_model=Envelope[None])
def clear_all_cancelled_orders(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    count = orders.clear_cancelled(db)
    message = "All cancelled orders cleared successfully" if count else "No cancelled orders to clear"
    return Envelope(message=message, count=count)


@app.get("/orders", response_model=Envelope[list[OrderOut]])
def list_all_orders(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    rows = orders.list_all(db)
    return Envelope(data=[OrderOut.model_validate(o) for o in rows], count=len(rows))


@app.get("/orders/{order_id}", response_model=Envelope[OrderOut])
def get_order(order_id: int, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    return Envelope(data=OrderOut.model_validate(orders.get_for(db, principal, order_id)))


@app.delete("/orders/{order_id}", response_model=Envelope[OrderOut])
def cancel_order(order_id: int, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    order = orders.cancel(db, principal, order_id)
    return Envelope(message="Order cancelled successfully", data=OrderOut.model_validate(order))


@app.put("/orders/{order_id}/status", response_model=Envelope[OrderOut])
def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order = orders.update_status(db, principal, order_id, payload.status)
    return Envelope(message="Order status updated", data=OrderOut.model_validate(order))


@app.put("/orders/{order_id}/payment-status", response_model=Envelope[OrderOut])
def update_order_payment_status(
    order_id: int,
    payload: OrderPaymentStatusIn,
    principal: Principal = Depends(require_user),
    db: Session = Depends(get_db),
):
    order = orders.reconcile_payment_status(db, principal, order_id, payload.payment_status)
    return Envelope(message="Order payment status updated", data=OrderOut.model_validate(order))


# Payments

@app.post("/payments", response_model=Envelope[PaymentOut], status_code=201)
def create_payment(
    payload: PaymentCreateIn,
    principal: Principal = Depends(require_user),
    authorizer: CardAuthorizer = Depends(get_card_authorizer),
    db: Session = Depends(get_db),
):
    payment = payments.submit_payment(
        db,
        principal,
        payload.order_id,
        payload.amount,
        payload.payment,
        authorizer,
        transaction_id=payload.transaction_id,
    )
    if payment.method == "card":
        message = "Card payment processed successfully."
    elif payment.method == "bank_transfer":
        message = "Bank transfer payment recorded. Awaiting verification."
    else:
        message = "Payment recorded. Awaiting collection."
    return Envelope(message=message, data=PaymentOut.model_validate(payment))


@app.get("/payments/my-payments", response_model=Envelope[list[PaymentOut]])
def list_my_payments(principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    rows = payments.list_for_user(db, principal.id)
    return Envelope(data=[PaymentOut.model_validate(p) for p in rows], count=len(rows))


@app.get("/payments", response_model=Envelope[list[PaymentOut]])
def list_all_payments(principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    rows = payments.list_all(db)
    return Envelope(data=[PaymentOut.model_validate(p) for p in rows], count=len(rows))


@app.get("/payments/{payment_id}/receipt")
def download_receipt(payment_id: int, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    payment = payments.get_for(db, principal, payment_id)
    return Response(
        content=receipts.render_receipt(db, payment),
        media_type="text/html",
        headers={"Content-Disposition": f'attachment; filename="{receipts.receipt_filename(payment)}"'},
    )


@app.get("/payments/{payment_id}", response_model=Envelope[PaymentOut])
def get_payment(payment_id: int, principal: Principal = Depends(require_user), db: Session = Depends(get_db)):
    return Envelope(data=PaymentOut.model_validate(payments.get_for(db, principal, payment_id)))


@app.put("/payments/{payment_id}/status", response_model=Envelope[PaymentOut])
def update_payment_status(
    payment_id: int,
    payload: PaymentStatusUpdate,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    payment = payments.update_status(db, payment_id, payload.status, payload.admin_note)
    return Envelope(message="Payment status updated successfully", data=PaymentOut.model_validate(payment))


@app.delete("/payments/{payment_id}", response_model=Envelope[None])
def delete_payment(payment_id: int, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    payments.delete_payment(db, payment_id)
    return Envelope(message="Payment deleted successfully")


# Inventory (admin)

@app.get("/inventory/{product_id}", response_model=Envelope[InventoryOut])
def get_inventory(product_id: int, principal: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return Envelope(data=inventory.describe(db, product_id))


@app.post("/inventory/{product_id}/restock", response_model=Envelope[InventoryOut])
def restock(
    product_id: int,
    payload: RestockIn,
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    inventory.restock(db, product_id, payload.quantity)
    return Envelope(message="Stock updated", data=inventory.describe(db, product_id))


@app.get("/health")
def health():
    return {"ok": True}
