"""Read side of the product catalog as seen by carts and checkout."""

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.orm import Session

from .errors import ProductNotFound
from .models import Product

CENT = Decimal("0.01")


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id, populate_existing=True)
    if not product:
        raise ProductNotFound(f"Product {product_id} not found")
    return product


def unit_price(product: Product) -> Decimal:
    """Shelf price with the product's percent discount applied, rounded to cents."""
    discount = product.discount or Decimal("0")
    price = Decimal(product.price) * (Decimal("1") - Decimal(discount) / Decimal("100"))
    return price.quantize(CENT, rounding=ROUND_HALF_UP)
