from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from app import cart as carts
from app import checkout, inventory, orders
from app.errors import Conflict, EmptyCart, InsufficientStock, ProductNotFound, Unexpected
from app.models import Order, Product

ADDRESS = {"address": "1 Main St", "city": "Town", "phone": "555"}


def _order_count(db):
    return db.query(Order).count()


def test_empty_cart_fails_without_side_effects(db, make_product, stock_of):
    pid = make_product(quantity=5)
    with pytest.raises(EmptyCart):
        checkout.create_order(db, 1, ADDRESS)
    assert _order_count(db) == 0
    assert stock_of(pid) == 5


def test_two_line_order_totals_and_clears_cart(db, make_product, stock_of):
    a = make_product(name="Mug", price="10.00", quantity=5)
    b = make_product(name="Plate", price="20.00", quantity=3)
    carts.add_item(db, 1, a, 2)
    carts.add_item(db, 1, b, 1)

    order = checkout.create_order(db, 1, ADDRESS)

    assert order.total_amount == Decimal("40.00")
    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.shipping_address == ADDRESS
    assert [(i.name, i.quantity, i.unit_price) for i in order.items] == [
        ("Mug", 2, Decimal("10.00")),
        ("Plate", 1, Decimal("20.00")),
    ]
    assert stock_of(a) == 3
    assert stock_of(b) == 2
    assert carts.get_or_create(db, 1).items == []


def test_insufficient_line_aborts_everything(db, make_product, stock_of):
    a = make_product(name="A", quantity=5)
    b = make_product(name="B", quantity=5)
    carts.add_item(db, 1, a, 2)
    carts.add_item(db, 1, b, 4)

    # stock drops under the cart line after it was added
    db.get(Product, b).available_quantity = 1
    db.commit()

    with pytest.raises(InsufficientStock):
        checkout.create_order(db, 1, ADDRESS)

    assert stock_of(a) == 5
    assert stock_of(b) == 1
    assert _order_count(db) == 0
    assert len(carts.get_or_create(db, 1).items) == 2


def test_missing_product_fails(db, make_product, monkeypatch):
    pid = make_product()
    carts.add_item(db, 1, pid)

    real = checkout.catalog.get_product

    def gone(session, product_id):
        if product_id == pid:
            raise ProductNotFound(f"Product {product_id} not found")
        return real(session, product_id)

    monkeypatch.setattr(checkout.catalog, "get_product", gone)
    with pytest.raises(ProductNotFound):
        checkout.create_order(db, 1, ADDRESS)
    assert _order_count(db) == 0


def test_price_is_locked_at_cart_time(db, make_product):
    pid = make_product(price="10.00")
    carts.add_item(db, 1, pid, 3)

    db.get(Product, pid).price = Decimal("15.00")
    db.commit()

    order = checkout.create_order(db, 1, ADDRESS)
    assert order.total_amount == Decimal("30.00")

    db.get(Product, pid).price = Decimal("1.00")
    db.commit()
    assert orders.load(db, order.id).total_amount == Decimal("30.00")


def test_failed_reservation_rolls_back_earlier_ones(db, make_product, stock_of, monkeypatch):
    a = make_product(name="A", quantity=5)
    b = make_product(name="B", quantity=5)
    carts.add_item(db, 1, a, 2)
    carts.add_item(db, 1, b, 2)

    real_reserve = inventory.reserve

    def reserve(session, product_id, quantity):
        if product_id == b:
            # someone else took the stock between the check and the reservation
            raise InsufficientStock("gone", product_id=b)
        return real_reserve(session, product_id, quantity)

    monkeypatch.setattr(inventory, "reserve", reserve)
    with pytest.raises(InsufficientStock):
        checkout.create_order(db, 1, ADDRESS)

    assert stock_of(a) == 5
    assert stock_of(b) == 5
    assert _order_count(db) == 0
    assert len(carts.get_or_create(db, 1).items) == 2


def test_claim_failure_changes_nothing(db, make_product, stock_of, monkeypatch):
    pid = make_product(quantity=5)
    carts.add_item(db, 1, pid, 2)

    def broken(session, cart, line_ids):
        raise OperationalError("DELETE FROM cart_items", {}, Exception("disk I/O error"))

    monkeypatch.setattr(checkout, "_claim_cart", broken)
    with pytest.raises(Unexpected):
        checkout.create_order(db, 1, ADDRESS)

    assert stock_of(pid) == 5
    assert _order_count(db) == 0
    assert len(carts.get_or_create(db, 1).items) == 1


def test_persist_failure_restores_cart_and_stock(db, make_product, stock_of, monkeypatch):
    a = make_product(name="A", price="10.00", quantity=5)
    b = make_product(name="B", price="4.50", quantity=5)
    carts.add_item(db, 1, a, 2)
    carts.add_item(db, 1, b, 3)

    def broken(session, order):
        raise OperationalError("INSERT INTO orders", {}, Exception("disk full"))

    monkeypatch.setattr(checkout, "_persist", broken)
    with pytest.raises(Unexpected):
        checkout.create_order(db, 1, ADDRESS)

    assert stock_of(a) == 5
    assert stock_of(b) == 5
    assert _order_count(db) == 0
    restored = carts.get_or_create(db, 1).items
    assert sorted((i.product_id, i.quantity, i.unit_price) for i in restored) == [
        (a, 2, Decimal("10.00")),
        (b, 3, Decimal("4.50")),
    ]


def test_claim_refuses_lines_already_taken(db, make_product):
    pid = make_product()
    cart = carts.add_item(db, 1, pid)
    line_id = cart.items[0].id
    carts.clear(db, 1)

    with pytest.raises(Conflict):
        checkout._claim_cart(db, cart, [line_id])
    db.rollback()


def test_failed_compensation_is_surfaced(db, make_product, stock_of, monkeypatch):
    a = make_product(name="A", quantity=5)
    b = make_product(name="B", quantity=5)
    carts.add_item(db, 1, a, 1)
    carts.add_item(db, 1, b, 1)

    real_reserve = inventory.reserve

    def reserve(session, product_id, quantity):
        if product_id == b:
            raise InsufficientStock("gone", product_id=b)
        return real_reserve(session, product_id, quantity)

    def release(session, product_id, quantity):
        raise OperationalError("UPDATE products", {}, Exception("connection lost"))

    monkeypatch.setattr(inventory, "reserve", reserve)
    monkeypatch.setattr(inventory, "release", release)
    with pytest.raises(Unexpected):
        checkout.create_order(db, 1, ADDRESS)

    # under-released, never over-released
    assert stock_of(a) == 4
    assert _order_count(db) == 0


def test_stock_matches_non_cancelled_orders(db, make_product, stock_of, place_order, shopper, other_shopper):
    pid = make_product(quantity=20)

    first = place_order(shopper.id, (pid, 3))
    second = place_order(other_shopper.id, (pid, 5))
    place_order(shopper.id, (pid, 2))
    orders.cancel(db, other_shopper, second.id)
    orders.cancel(db, other_shopper, second.id)

    live = [o for o in orders.list_all(db) if o.status != "cancelled"]
    ordered = sum(i.quantity for o in live for i in o.items if i.product_id == pid)
    assert stock_of(pid) == 20 - ordered == 15
    assert first.id in {o.id for o in live}
