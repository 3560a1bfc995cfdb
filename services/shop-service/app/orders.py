"""
Order state machine.

    pending -> processing -> shipped -> delivered
    pending|processing|shipped -> cancelled

Owners may cancel only pending orders; admins any non-terminal one.
Status writes are conditional on the status that was read, so a cancel
and a payment settlement racing on the same order cannot overwrite each
other.
"""

import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shared.events import publish
from shared.security import Principal

from . import inventory
from .errors import Conflict, Forbidden, InvalidTransition, OrderNotFound, ProductNotFound, ShopError, Unexpected
from .models import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_TERMINAL,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    Order,
    OrderItem,
    Payment,
    utcnow,
)

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    ORDER_PENDING: ORDER_PROCESSING,
    ORDER_PROCESSING: ORDER_SHIPPED,
    ORDER_SHIPPED: ORDER_DELIVERED,
}


def load(db: Session, order_id: int) -> Order:
    order = db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFound()
    return order


def get_for(db: Session, principal: Principal, order_id: int) -> Order:
    order = load(db, order_id)
    if not principal.can_access(order.user_id):
        raise Forbidden("Not authorized to access this order")
    return order


def list_for_user(db: Session, user_id: int) -> list[Order]:
    return list(
        db.execute(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars()
    )


def list_all(db: Session) -> list[Order]:
    return list(db.execute(select(Order).order_by(Order.created_at.desc(), Order.id.desc())).scalars())


def _transition(db: Session, order_id: int, observed: str, new_status: str) -> bool:
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == observed)
        .values(status=new_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_status(db: Session, principal: Principal, order_id: int, new_status: str) -> Order:
    """Admin status change. Cancelling goes through ``cancel`` so stock comes back."""
    if new_status == ORDER_CANCELLED:
        return cancel(db, principal, order_id)

    order = load(db, order_id)
    if order.status == new_status:
        return order
    if NEXT_STATUS.get(order.status) != new_status:
        raise InvalidTransition(f"Cannot move order from {order.status} to {new_status}")

    try:
        if not _transition(db, order.id, order.status, new_status):
            db.rollback()
            raise Conflict("Order status changed concurrently, reload and retry")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("status update failed for order=%s", order.id)
        raise Unexpected("Error updating order status") from e

    logger.info("order %s status %s -> %s", order.id, order.status, new_status)
    return load(db, order.id)


def cancel(db: Session, principal: Principal, order_id: int) -> Order:
    order = get_for(db, principal, order_id)

    if order.status == ORDER_CANCELLED:
        # retried cancel: only finish whatever release is still outstanding
        if not order.stock_released:
            _release_stock(db, order)
        return load(db, order.id)

    if order.status in ORDER_TERMINAL:
        raise InvalidTransition("Delivered orders cannot be cancelled")
    if not principal.is_admin and order.status != ORDER_PENDING:
        raise InvalidTransition("Cannot cancel order that is not in pending status")

    try:
        if not _transition(db, order.id, order.status, ORDER_CANCELLED):
            db.rollback()
            raise Conflict("Order status changed concurrently, reload and retry")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("cancel failed for order=%s", order.id)
        raise Unexpected("Error cancelling order") from e

    logger.info("order %s cancelled by user=%s", order.id, principal.id)
    _release_stock(db, order)

    publish("order.cancelled", {"order_id": order.id, "user_id": order.user_id}, safe=True)
    return load(db, order.id)


def _release_stock(db: Session, order: Order) -> None:
    """
    Give every line's stock back exactly once.

    The line's ``released`` flag flips in the same transaction as the stock
    increment, so retries skip lines that already went back.
    """
    try:
        for item in order.items:
            claimed = db.execute(
                update(OrderItem)
                .where(OrderItem.id == item.id, OrderItem.released.is_(False))
                .values(released=True)
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                continue
            try:
                inventory.release(db, item.product_id, item.quantity)
            except ProductNotFound:
                logger.warning(
                    "product %s no longer in catalog, %s units of order %s not restocked",
                    item.product_id, item.quantity, order.id,
                )
            db.commit()

        db.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(stock_released=True)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except (SQLAlchemyError, ShopError) as e:
        db.rollback()
        logger.exception("order %s cancelled but stock release incomplete", order.id)
        raise Unexpected("Order cancelled but stock could not be fully restored, retry the cancel") from e

    logger.info("stock released for order %s", order.id)


def derive_payment_status(statuses: Iterable[str]) -> str:
    statuses = set(statuses)
    for status in (PAYMENT_COMPLETED, PAYMENT_REFUNDED, PAYMENT_PENDING, PAYMENT_FAILED):
        if status in statuses:
            return status
    return PAYMENT_PENDING


def set_payment_status(db: Session, order_id: int, payment_status: str) -> None:
    """
    Mirror a payment outcome onto the order. Does not commit.

    A completed payment moves a pending order to processing.
    """
    db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(payment_status=payment_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if payment_status == PAYMENT_COMPLETED:
        _transition(db, order_id, ORDER_PENDING, ORDER_PROCESSING)


def reconcile_payment_status(db: Session, principal: Principal, order_id: int, expected: str | None = None) -> Order:
    """Recompute ``payment_status`` from the order's payment records."""
    order = get_for(db, principal, order_id)
    statuses = db.execute(select(Payment.status).where(Payment.order_id == order.id)).scalars().all()
    derived = derive_payment_status(statuses)

    if expected is not None and expected != derived:
        raise Conflict(f"Payment records put this order at {derived}, not {expected}")

    try:
        set_payment_status(db, order.id, derived)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("payment status update failed for order=%s", order.id)
        raise Unexpected("Error updating payment status") from e
    return load(db, order.id)


def clear_cancelled(db: Session, user_id: int | None = None) -> int:
    """Delete cancelled orders, all of them or one user's. Returns how many went."""
    query = select(Order).where(Order.status == ORDER_CANCELLED).execution_options(populate_existing=True)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)

    count = 0
    try:
        for order in db.execute(query).scalars().all():
            if not order.stock_released:
                # deleting it would lose the outstanding release for good
                logger.warning("order %s kept: cancelled but stock not yet released", order.id)
                continue
            db.delete(order)
            count += 1
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("clearing cancelled orders failed (user=%s)", user_id)
        raise Unexpected("Error clearing cancelled orders") from e

    logger.info("cleared %s cancelled orders (user=%s)", count, user_id)
    return count
