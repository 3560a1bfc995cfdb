import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import catalog, inventory
from .errors import CartItemNotFound, InsufficientStock, Unexpected
from .models import Cart, CartItem, utcnow

logger = logging.getLogger(__name__)


def _load(db: Session, user_id: int) -> Cart | None:
    return db.execute(
        select(Cart).where(Cart.user_id == user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def get_or_create(db: Session, user_id: int) -> Cart:
    cart = _load(db, user_id)
    if cart:
        return cart

    cart = Cart(user_id=user_id, items=[])
    db.add(cart)
    try:
        db.commit()
    except IntegrityError as e:
        # another request created it first
        db.rollback()
        cart = _load(db, user_id)
        if cart is None:
            raise Unexpected("Failed to create cart") from e
        return cart
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("cart creation failed for user=%s", user_id)
        raise Unexpected("Failed to create cart") from e

    logger.info("created cart for user=%s", user_id)
    return cart


def _touch(db: Session, cart: Cart) -> Cart:
    cart.updated_at = utcnow()
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("cart update failed for user=%s", cart.user_id)
        raise Unexpected("Failed to update cart") from e
    db.refresh(cart)
    return cart


def _find_item(cart: Cart, item_id: int) -> CartItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise CartItemNotFound()


def add_item(db: Session, user_id: int, product_id: int, quantity: int = 1) -> Cart:
    product = catalog.get_product(db, product_id)
    cart = get_or_create(db, user_id)

    existing = next((i for i in cart.items if i.product_id == product_id), None)
    wanted = quantity + (existing.quantity if existing else 0)

    # soft check; checkout re-validates against live stock
    if product.available_quantity < wanted:
        raise InsufficientStock(
            f"Not enough stock for {product.name}: requested {wanted}, available {product.available_quantity}",
            product_id=product_id,
        )

    if existing:
        existing.quantity = wanted
    else:
        cart.items.append(
            CartItem(product_id=product_id, quantity=quantity, unit_price=catalog.unit_price(product))
        )

    return _touch(db, cart)


def update_item_quantity(db: Session, user_id: int, item_id: int, quantity: int) -> Cart:
    cart = get_or_create(db, user_id)
    item = _find_item(cart, item_id)

    stock = inventory.available(db, item.product_id)
    if stock < quantity:
        raise InsufficientStock(
            f"Not enough stock for product {item.product_id}: requested {quantity}, available {stock}",
            product_id=item.product_id,
        )

    item.quantity = quantity
    return _touch(db, cart)


def remove_item(db: Session, user_id: int, item_id: int) -> Cart:
    cart = get_or_create(db, user_id)
    cart.items.remove(_find_item(cart, item_id))
    return _touch(db, cart)


def clear(db: Session, user_id: int) -> Cart:
    cart = get_or_create(db, user_id)
    cart.items.clear()
    return _touch(db, cart)
