"""
Inventory ledger.

Every change to ``Product.available_quantity`` goes through ``reserve`` and
``release``. Both use a compare-and-set on the observed quantity so two
requests touching the same product can never both act on a stale read.
Neither function commits: the caller owns the transaction boundary.
"""

import logging
import os

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import InsufficientStock, ProductNotFound, StockConflict, ValidationError
from .models import Product
from .schemas import InventoryOut

logger = logging.getLogger(__name__)

STOCK_CAS_ATTEMPTS = int(os.getenv("STOCK_CAS_ATTEMPTS", "5"))


def available(db: Session, product_id: int) -> int:
    qty = db.execute(
        select(Product.available_quantity).where(Product.id == product_id)
    ).scalar_one_or_none()
    if qty is None:
        raise ProductNotFound(f"Product {product_id} not found")
    return qty


def _compare_and_set(db: Session, product_id: int, observed: int, new_qty: int) -> bool:
    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.available_quantity == observed)
        .values(available_quantity=new_qty)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reserve(db: Session, product_id: int, quantity: int) -> int:
    """Verify and decrement stock in one step. Returns the remaining quantity."""
    if quantity < 1:
        raise ValidationError("Reservation quantity must be at least 1")

    for attempt in range(1, STOCK_CAS_ATTEMPTS + 1):
        observed = available(db, product_id)
        if observed < quantity:
            raise InsufficientStock(
                f"Not enough stock for product {product_id}: requested {quantity}, available {observed}",
                product_id=product_id,
            )
        if _compare_and_set(db, product_id, observed, observed - quantity):
            return observed - quantity
        logger.info("stock CAS lost for product=%s attempt=%s", product_id, attempt)

    logger.warning("stock CAS attempts exhausted for product=%s", product_id)
    raise StockConflict()


def release(db: Session, product_id: int, quantity: int) -> int:
    """
    Return stock to the ledger. Returns the new quantity.

    No dedup happens here: callers pair each release with exactly one earlier
    reserve (see OrderItem.released).
    """
    if quantity < 1:
        raise ValidationError("Release quantity must be at least 1")

    for attempt in range(1, STOCK_CAS_ATTEMPTS + 1):
        observed = available(db, product_id)
        if _compare_and_set(db, product_id, observed, observed + quantity):
            return observed + quantity
        logger.info("stock CAS lost for product=%s attempt=%s", product_id, attempt)

    logger.warning("stock CAS attempts exhausted for product=%s", product_id)
    raise StockConflict()


def restock(db: Session, product_id: int, quantity: int) -> int:
    """Admin stock increase; same contract as release, committed here."""
    try:
        qty = release(db, product_id, quantity)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("product %s restocked by %s, now %s", product_id, quantity, qty)
    return qty


def describe(db: Session, product_id: int) -> InventoryOut:
    row = db.execute(
        select(Product.id, Product.name, Product.available_quantity).where(Product.id == product_id)
    ).one_or_none()
    if row is None:
        raise ProductNotFound(f"Product {product_id} not found")
    return InventoryOut(product_id=row.id, name=row.name, available_quantity=row.available_quantity)
