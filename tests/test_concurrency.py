import threading
from decimal import Decimal

from app import cart as carts
from app import checkout, orders, payments
from app.db import SessionLocal
from app.errors import AlreadyPaid, Conflict, InsufficientStock
from app.gateway import SimulatedCardAuthorizer
from app.models import Order, Payment
from shared.security import Principal

ADDRESS = {"address": "1 Main St", "city": "Town", "phone": "555"}
CARD = {"method": "card", "number": "4242424242424242", "name": "Ann Lee", "expiry": "12/30", "cvv": "123"}


def _race(*calls):
    """Run each call on its own thread and session, released together."""
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(i, fn):
        session = SessionLocal()
        try:
            barrier.wait()
            outcomes[i] = fn(session)
        except Exception as e:
            outcomes[i] = e
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_concurrent_checkouts_never_oversell(db, make_product, stock_of):
    pid = make_product(quantity=5)
    carts.add_item(db, 1, pid, 3)
    carts.add_item(db, 2, pid, 3)

    outcomes = _race(
        lambda s: checkout.create_order(s, 1, ADDRESS),
        lambda s: checkout.create_order(s, 2, ADDRESS),
    )

    placed = [o for o in outcomes if isinstance(o, Order)]
    refused = [o for o in outcomes if isinstance(o, InsufficientStock)]
    assert len(placed) == 1, outcomes
    assert len(refused) == 1, outcomes
    assert stock_of(pid) == 2
    assert db.query(Order).count() == 1


def test_same_cart_checked_out_twice_yields_one_order(db, make_product, stock_of):
    pid = make_product(quantity=10)
    carts.add_item(db, 1, pid, 3)

    outcomes = _race(
        lambda s: checkout.create_order(s, 1, ADDRESS),
        lambda s: checkout.create_order(s, 1, ADDRESS),
    )

    # the loser finds the cart either already claimed or already empty
    assert sum(isinstance(o, Order) for o in outcomes) == 1, outcomes
    assert sum(isinstance(o, Conflict) for o in outcomes) == 1, outcomes
    assert stock_of(pid) == 7
    assert db.query(Order).count() == 1
    assert carts.get_or_create(db, 1).items == []


def test_concurrent_cancels_release_once(db, make_product, stock_of, place_order, shopper, admin):
    pid = make_product(quantity=5)
    order = place_order(shopper.id, (pid, 4))

    outcomes = _race(
        lambda s: orders.cancel(s, shopper, order.id),
        lambda s: orders.cancel(s, admin, order.id),
    )

    # the loser either sees it already cancelled or loses the status race
    assert all(isinstance(o, (Order, Conflict)) for o in outcomes), outcomes
    assert any(isinstance(o, Order) for o in outcomes)
    assert stock_of(pid) == 5
    assert orders.load(db, order.id).stock_released is True


def test_concurrent_card_payments_complete_once(db, make_product, place_order, shopper):
    pid = make_product(price="12.50")
    order = place_order(shopper.id, (pid, 2))
    authorizer = SimulatedCardAuthorizer()

    def pay(session):
        return payments.submit_payment(session, shopper, order.id, Decimal("25.00"), CARD, authorizer)

    outcomes = _race(pay, pay)

    assert sum(isinstance(o, Payment) for o in outcomes) == 1, outcomes
    assert sum(isinstance(o, AlreadyPaid) for o in outcomes) == 1, outcomes
    assert db.query(Payment).filter(Payment.status == "completed").count() == 1
    assert orders.load(db, order.id).payment_status == "completed"


def test_stock_never_negative_under_contention(db, make_product, stock_of):
    pid = make_product(quantity=3)
    users = [Principal(id=n) for n in range(10, 16)]
    for user in users:
        carts.add_item(db, user.id, pid, 1)

    outcomes = _race(*[lambda s, u=user: checkout.create_order(s, u.id, ADDRESS) for user in users])

    placed = [o for o in outcomes if isinstance(o, Order)]
    assert all(isinstance(o, (Order, InsufficientStock)) for o in outcomes), outcomes
    assert len(placed) == 3
    assert stock_of(pid) == 0
