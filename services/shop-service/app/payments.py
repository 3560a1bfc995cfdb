"""
Payment processor.

Payment records are attempts; an order can collect several but at most one
may be completed. The order's ``payment_status`` only moves through here.

Settlement by method:
  card              authorized synchronously, completed or rejected outright
  bank_transfer     pending until an admin settles it
  cash_on_delivery  pending until an admin settles it
"""

import logging
from decimal import Decimal
from typing import Any

from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shared.events import publish
from shared.security import Principal

from . import orders
from .errors import (
    AlreadyPaid,
    Conflict,
    Forbidden,
    InvalidTransition,
    MethodFailure,
    PaymentNotFound,
    Unexpected,
    ValidationError,
)
from .gateway import CardAuthorizer, deferred_transaction_id
from .models import (
    ORDER_CANCELLED,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    Payment,
    utcnow,
)
from .schemas import BankTransferPaymentIn, CardPaymentIn, CashOnDeliveryPaymentIn, PaymentMethodIn

logger = logging.getLogger(__name__)

NEXT_STATUSES = {
    PAYMENT_PENDING: {PAYMENT_COMPLETED, PAYMENT_FAILED},
    PAYMENT_COMPLETED: {PAYMENT_REFUNDED},
}

# Statuses that propagate onto the order when an admin settles a payment
MIRRORED = (PAYMENT_COMPLETED, PAYMENT_REFUNDED)

_method_adapter = TypeAdapter(PaymentMethodIn)


def parse_method(raw: dict[str, Any]) -> CardPaymentIn | BankTransferPaymentIn | CashOnDeliveryPaymentIn:
    try:
        return _method_adapter.validate_python(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        method = raw.get("method") if isinstance(raw, dict) else None
        if method == "card":
            detail = "Card details are required for card payments"
        elif method == "bank_transfer":
            detail = "Bank transfer details are required for bank transfer payments"
        else:
            detail = "Unsupported payment method"
        raise ValidationError(f"{detail} ({field}: {first['msg']})") from e


def _has_completed(db: Session, order_id: int, exclude_id: int | None = None) -> bool:
    query = select(func.count(Payment.id)).where(
        Payment.order_id == order_id, Payment.status == PAYMENT_COMPLETED
    )
    if exclude_id is not None:
        query = query.where(Payment.id != exclude_id)
    return db.execute(query).scalar_one() > 0


def submit_payment(
    db: Session,
    principal: Principal,
    order_id: int,
    amount: Decimal,
    method_payload: dict[str, Any],
    authorizer: CardAuthorizer,
    transaction_id: str | None = None,
) -> Payment:
    order = orders.load(db, order_id)

    if not principal.can_access(order.user_id):
        raise Forbidden("Not authorized to make payment for this order")

    if _has_completed(db, order.id):
        raise AlreadyPaid()

    method = parse_method(method_payload)

    if order.status == ORDER_CANCELLED:
        raise Conflict("Cannot pay for a cancelled order")
    if Decimal(amount) != order.total_amount:
        raise ValidationError(f"Amount {amount} does not match order total {order.total_amount}")

    match method:
        case CardPaymentIn():
            auth = authorizer.authorize(method, order.total_amount)
            if not auth.approved:
                logger.info("card declined for order=%s: %s", order.id, auth.message)
                raise MethodFailure(auth.message or "Card payment failed")
            status = PAYMENT_COMPLETED
            transaction_id = auth.transaction_id or deferred_transaction_id()
        case BankTransferPaymentIn() | CashOnDeliveryPaymentIn():
            status = PAYMENT_PENDING
            transaction_id = transaction_id or deferred_transaction_id()

    payment = Payment(
        order_id=order.id,
        user_id=principal.id,
        amount=order.total_amount,
        method=method.method,
        method_payload=method.persisted(),
        transaction_id=transaction_id,
        status=status,
    )

    try:
        db.add(payment)
        db.flush()
        orders.set_payment_status(db, order.id, status)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # lost a race with another completed payment for the same order
        logger.warning("duplicate completed payment for order=%s, transaction %s must be voided", order.id, transaction_id)
        raise AlreadyPaid() from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to record payment for order=%s", order.id)
        raise Unexpected("Failed to create payment") from e

    logger.info("payment %s (%s) recorded for order=%s status=%s", payment.id, payment.method, order.id, status)
    if status == PAYMENT_COMPLETED:
        publish(
            "payment.completed",
            {"payment_id": payment.id, "order_id": order.id, "user_id": order.user_id, "amount": payment.amount},
            safe=True,
        )
    return payment


def load(db: Session, payment_id: int) -> Payment:
    payment = db.execute(
        select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not payment:
        raise PaymentNotFound()
    return payment


def get_for(db: Session, principal: Principal, payment_id: int) -> Payment:
    payment = load(db, payment_id)
    if not principal.can_access(payment.user_id):
        raise Forbidden("Not authorized to access this payment")
    return payment


def list_for_user(db: Session, user_id: int) -> list[Payment]:
    return list(
        db.execute(
            select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc(), Payment.id.desc())
        ).scalars()
    )


def list_all(db: Session) -> list[Payment]:
    return list(db.execute(select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc())).scalars())


def update_status(db: Session, payment_id: int, new_status: str, admin_note: str | None = None) -> Payment:
    """Admin settlement. Completed and refunded are mirrored onto the order."""
    payment = load(db, payment_id)
    observed = payment.status

    if new_status != observed and new_status not in NEXT_STATUSES.get(observed, ()):
        raise InvalidTransition(f"Cannot move payment from {observed} to {new_status}")
    if new_status == PAYMENT_COMPLETED and observed != PAYMENT_COMPLETED:
        if _has_completed(db, payment.order_id, exclude_id=payment.id):
            raise AlreadyPaid()

    values: dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
    if admin_note is not None:
        values["admin_note"] = admin_note

    try:
        changed = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount
        if not changed:
            db.rollback()
            raise Conflict("Payment status changed concurrently, reload and retry")
        if new_status != observed and new_status in MIRRORED:
            orders.set_payment_status(db, payment.order_id, new_status)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise AlreadyPaid() from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to update payment %s", payment.id)
        raise Unexpected("Error updating payment status") from e

    logger.info("payment %s status %s -> %s", payment.id, observed, new_status)
    if new_status != observed and new_status in MIRRORED:
        publish(
            f"payment.{new_status}",
            {"payment_id": payment.id, "order_id": payment.order_id, "amount": payment.amount},
            safe=True,
        )
    return load(db, payment.id)


def delete_payment(db: Session, payment_id: int) -> None:
    """Only pending or failed attempts can go; completed and refunded ones are kept for audit."""
    payment = load(db, payment_id)
    if payment.status not in (PAYMENT_PENDING, PAYMENT_FAILED):
        raise Conflict("Cannot delete completed or refunded payments")

    try:
        deleted = db.execute(
            delete(Payment)
            .where(Payment.id == payment.id, Payment.status.in_((PAYMENT_PENDING, PAYMENT_FAILED)))
            .execution_options(synchronize_session=False)
        ).rowcount
        if not deleted:
            db.rollback()
            raise Conflict("Payment status changed concurrently, reload and retry")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("failed to delete payment %s", payment.id)
        raise Unexpected("Error deleting payment") from e
    logger.info("payment %s deleted", payment.id)
