"""
Checkout orchestrator: the only path from a cart to an order.

1. load the cart, refuse when empty
2. re-check every line against live stock, nothing written yet
3. claim the cart: delete exactly the lines that were read
4. reserve stock line by line
5. total from the prices captured in the cart
6. persist the order as pending / pending

Steps 3, 4 and 6 run as a saga so a failure at any point leaves neither
stock decremented without an order nor a cleared cart without one.
Claiming first means two checkouts of the same cart cannot both get past
step 3: the loser deletes fewer rows than it read and stops before
touching stock.
"""

import logging
from decimal import Decimal

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.events import publish

from . import cart as carts
from . import catalog, inventory
from .errors import Conflict, EmptyCart, InsufficientStock, ShopError, Unexpected
from .models import Cart, CartItem, Order, OrderItem, utcnow
from .saga import Saga

logger = logging.getLogger(__name__)


def _committed(db: Session, fn, *args):
    try:
        result = fn(*args)
        db.commit()
        return result
    except Exception:
        db.rollback()
        raise


def create_order(db: Session, user_id: int, shipping_address: dict) -> Order:
    try:
        order = _create_order(db, user_id, shipping_address)
    except ShopError:
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("checkout failed for user=%s", user_id)
        raise Unexpected("Failed to create order") from e

    publish(
        "order.created",
        {"order_id": order.id, "user_id": user_id, "total": order.total_amount},
        safe=True,
    )
    return order


def _create_order(db: Session, user_id: int, shipping_address: dict) -> Order:
    cart = carts.get_or_create(db, user_id)
    # (id, product_id, quantity, unit_price) as read; the ORM rows go away with the claim
    lines = [(i.id, i.product_id, i.quantity, i.unit_price) for i in cart.items]
    if not lines:
        raise EmptyCart()

    # All-or-nothing pre-check: any missing product or short line aborts before a write
    names: dict[int, str] = {}
    for _, product_id, quantity, _ in lines:
        product = catalog.get_product(db, product_id)
        if product.available_quantity < quantity:
            raise InsufficientStock(
                f"Not enough stock for {product.name}: requested {quantity}, "
                f"available {product.available_quantity}",
                product_id=product.id,
            )
        names[product.id] = product.name

    total = sum((price * qty for _, _, qty, price in lines), Decimal("0.00"))
    order = Order(
        user_id=user_id,
        total_amount=total,
        shipping_address=dict(shipping_address),
        items=[
            OrderItem(product_id=pid, name=names[pid], quantity=qty, unit_price=price)
            for _, pid, qty, price in lines
        ],
    )

    saga = Saga(f"checkout user={user_id}")
    saga.step(
        "claim cart",
        lambda: _committed(db, _claim_cart, db, cart, [line_id for line_id, *_ in lines]),
        lambda: _committed(db, _restore_cart, db, cart, lines),
    )
    for _, pid, qty, _ in lines:
        saga.step(
            f"reserve product={pid}",
            lambda pid=pid, qty=qty: _committed(db, inventory.reserve, db, pid, qty),
            lambda pid=pid, qty=qty: _committed(db, inventory.release, db, pid, qty),
        )
    saga.step("persist order", lambda: _committed(db, _persist, db, order), lambda: _committed(db, db.delete, order))
    saga.run()

    logger.info("order %s created for user=%s total=%s", order.id, user_id, total)
    return order


def _claim_cart(db: Session, cart: Cart, line_ids: list[int]) -> None:
    taken = db.execute(
        delete(CartItem).where(CartItem.cart_id == cart.id, CartItem.id.in_(line_ids))
    ).rowcount
    if taken != len(line_ids):
        raise Conflict("Cart changed during checkout, reload and retry")
    db.expire(cart, ["items"])
    cart.updated_at = utcnow()


def _restore_cart(db: Session, cart: Cart, lines: list[tuple]) -> None:
    db.add_all(
        CartItem(cart_id=cart.id, product_id=pid, quantity=qty, unit_price=price)
        for _, pid, qty, price in lines
    )
    db.expire(cart, ["items"])
    cart.updated_at = utcnow()


def _persist(db: Session, order: Order) -> None:
    db.add(order)
