"""Order placement: gates, idempotency and all-or-nothing persistence."""

import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from cloudimart import ordering, payments
from cloudimart.cart_snapshot import load_cart
from cloudimart.errors import (
    AmountMismatch,
    EmptyCart,
    InsufficientStock,
    OutsideDeliveryZone,
    PaymentNotFound,
    PaymentStateConflict,
)
from cloudimart.models import (
    DELIVERY_PENDING,
    ORDER_PENDING,
    ORDER_PENDING_DELIVERY,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    CartItem,
    Delivery,
    Notification,
    Order,
    OrderItem,
    Payment,
    Product,
)

INSIDE = (-11.42, 34.01)
OUTSIDE = (-11.50, 34.10)


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def _pay(db, user, **fields):
    payment = payments.create_pending(
        db,
        user.id,
        mobile="0991234567",
        network="airtel",
        delivery_lat=INSIDE[0],
        delivery_lng=INSIDE[1],
        delivery_address="Hostel 4, Room 12",
        **fields,
    )
    db.commit()
    db.refresh(payment)
    return payment


def _checkout(lat=INSIDE[0], lng=INSIDE[1]):
    return ordering.DeliveryDetails(address="Library entrance", lat=lat, lng=lng)


@pytest.fixture()
def campus(factory):
    return factory.zone(fee="500.00")


class TestPaymentPlacement:
    def test_paid_cart_becomes_an_order(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(price="2500.00", stock=10)
        factory.cart(user, (notebook, 2))
        payment = _pay(db, user, client_amount=Decimal("5500.00"))
        assert payment.amount == Decimal("5500.00")

        result = ordering.approve_payment(db, payment.id)
        assert result.created
        order = result.order

        assert re.fullmatch(r"ORD-\d{8}-[A-Z0-9]{6}", order.order_code)
        assert order.total == Decimal("5000.00")
        assert order.delivery_fee == Decimal("500.00")
        assert order.status == ORDER_PENDING_DELIVERY
        assert order.payment_ref == payment.tx_ref
        assert order.delivery_address == "Hostel 4, Room 12"
        [item] = order.items
        assert (item.product_id, item.quantity, item.unit_price) == (notebook.id, 2, Decimal("2500.00"))
        assert order.delivery.status == DELIVERY_PENDING
        assert re.fullmatch(r"[A-Z0-9]{6}", order.delivery.verification_code)

        db.expire_all()
        payment = db.get(Payment, payment.id)
        assert payment.status == PAYMENT_SUCCESS
        assert payments.meta_of(payment).order_id == order.order_code
        assert db.get(Product, notebook.id).stock == 8
        assert load_cart(db, user.id).items == []
        titles = set(db.scalars(select(Notification.title).where(Notification.user_id == user.id)))
        assert titles == {"Payment Successful", "Order Placed"}

    def test_placing_twice_is_idempotent(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=10)
        factory.cart(user, (notebook, 2))
        payment = _pay(db, user)

        first = ordering.approve_payment(db, payment.id)
        second = ordering.approve_payment(db, payment.id)

        assert first.created and not second.created
        assert second.order.id == first.order.id
        assert _count(db, Order) == 1
        db.expire_all()
        assert db.get(Product, notebook.id).stock == 8

    def test_short_stock_leaves_payment_pending_and_unlinked(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=1)
        factory.cart(user, (notebook, 2))
        payment = _pay(db, user)

        with pytest.raises(InsufficientStock) as exc:
            ordering.approve_payment(db, payment.id)

        assert exc.value.items == [{"product_id": notebook.id, "available": 1, "requested": 2}]
        db.expire_all()
        payment = db.get(Payment, payment.id)
        meta = payments.meta_of(payment)
        assert payment.status == PAYMENT_PENDING
        assert meta.order_id is None
        assert meta.notes[-1].kind == "stock_issue"
        assert _count(db, Order) == 0
        assert db.get(Product, notebook.id).stock == 1

    def test_one_short_product_writes_nothing(self, factory, db, campus):
        user = factory.user()
        plenty = factory.product(name="Pen", price="300.00", stock=50)
        scarce = factory.product(name="Calculator", price="9000.00", stock=0)
        factory.cart(user, (plenty, 3), (scarce, 1))
        payment = _pay(db, user)

        with pytest.raises(InsufficientStock):
            ordering.approve_payment(db, payment.id)

        db.expire_all()
        assert db.get(Product, plenty.id).stock == 50
        assert _count(db, Order) == 0
        assert _count(db, OrderItem) == 0
        assert _count(db, Delivery) == 0
        assert _count(db, CartItem) == 2

    def test_amount_mismatch_at_approval(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(stock=5), 2))
        payment = _pay(db, user)
        payment.amount = Decimal("100.00")
        db.commit()

        with pytest.raises(AmountMismatch) as exc:
            ordering.approve_payment(db, payment.id)

        assert exc.value.expected == Decimal("5500.00")
        assert exc.value.received == Decimal("100.00")
        db.expire_all()
        note = payments.meta_of(db.get(Payment, payment.id)).notes[-1]
        assert (note.kind, note.source) == ("amount_mismatch", "approval")
        assert _count(db, Order) == 0

    def test_payment_without_recorded_geofence_is_refused(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=5)
        factory.cart(user, (notebook, 1))
        payment = _pay(db, user)
        meta = dict(payment.meta)
        del meta["geofence"]
        payment.meta = meta
        db.commit()

        with pytest.raises(OutsideDeliveryZone):
            ordering.approve_payment(db, payment.id)

        db.expire_all()
        assert db.get(Payment, payment.id).status == PAYMENT_PENDING
        assert db.get(Product, notebook.id).stock == 5
        assert _count(db, Order) == 0

    def test_gateway_success_without_recorded_geofence_places_nothing(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(stock=5), 1))
        payment = _pay(db, user)
        payment.meta = {**payment.meta, "geofence": {"checked": False}}
        db.commit()

        assert ordering.settle_payment(db, payment, "successful") is None

        db.expire_all()
        payment = db.get(Payment, payment.id)
        assert payment.status == PAYMENT_SUCCESS
        assert payments.meta_of(payment).order_id is None
        assert _count(db, Order) == 0

    def test_order_follows_snapshot_not_edited_cart(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(name="Notebook", price="2500.00", stock=10)
        pen = factory.product(name="Pen", price="300.00", stock=10)
        factory.cart(user, (notebook, 2))
        payment = _pay(db, user)

        factory.cart(user, (notebook, 2), (pen, 1))
        result = ordering.approve_payment(db, payment.id)

        assert result.order.total == Decimal("5000.00")
        assert [i.product_id for i in result.order.items] == [notebook.id]
        db.expire_all()
        # the edited cart was never charged, so it stays
        assert len(load_cart(db, user.id).items) == 2
        assert db.get(Product, pen.id).stock == 10

    def test_failed_payment_cannot_be_approved(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(), 1))
        payment = _pay(db, user)
        ordering.reject_payment(db, payment.id, "Proof unreadable")

        with pytest.raises(PaymentStateConflict):
            ordering.approve_payment(db, payment.id)

        titles = set(db.scalars(select(Notification.title).where(Notification.user_id == user.id)))
        assert "Payment Rejected" in titles

    def test_unknown_payment(self, db):
        with pytest.raises(PaymentNotFound):
            ordering.approve_payment(db, 4242)

    def test_rejecting_a_paid_payment_conflicts(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(), 1))
        payment = _pay(db, user)
        ordering.approve_payment(db, payment.id)
        with pytest.raises(PaymentStateConflict):
            ordering.reject_payment(db, payment.id)


class TestSettlePayment:
    def test_gateway_success_places_the_order_once(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(stock=3), 1))
        payment = _pay(db, user)

        result = ordering.settle_payment(db, payment, "successful", {"tx_ref": payment.tx_ref}, "PCH-77")
        assert result.created
        assert ordering.settle_payment(db, payment, "successful", {"tx_ref": payment.tx_ref}) is None

        db.expire_all()
        payment = db.get(Payment, payment.id)
        assert payment.status == PAYMENT_SUCCESS
        assert payment.provider_ref == "PCH-77"
        assert len(payments.meta_of(payment).gateway_events) == 2
        assert _count(db, Order) == 1

    def test_paid_but_unplaceable_stays_unlinked(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(stock=0), 1))
        payment = _pay(db, user)

        assert ordering.settle_payment(db, payment, "successful") is None

        db.expire_all()
        payment = db.get(Payment, payment.id)
        assert payment.status == PAYMENT_SUCCESS
        assert payments.meta_of(payment).order_id is None
        assert _count(db, Order) == 0

    def test_gateway_failure_places_nothing(self, factory, db, campus):
        user = factory.user()
        factory.cart(user, (factory.product(), 1))
        payment = _pay(db, user)
        assert ordering.settle_payment(db, payment, "failed") is None
        assert _count(db, Order) == 0


class TestDirectCheckout:
    def test_direct_checkout(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=4)
        factory.cart(user, (notebook, 1))

        result = ordering.place_order(db, user.id, delivery=_checkout())

        order = result.order
        assert order.status == ORDER_PENDING
        assert order.payment_ref is None
        assert order.delivery_fee == Decimal("500.00")
        assert order.delivery_address == "Library entrance"
        db.expire_all()
        assert db.get(Product, notebook.id).stock == 3

    def test_outside_zone_is_refused(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=4)
        factory.cart(user, (notebook, 1))

        with pytest.raises(OutsideDeliveryZone):
            ordering.place_order(db, user.id, delivery=_checkout(*OUTSIDE))
        db.expire_all()
        assert db.get(Product, notebook.id).stock == 4
        assert _count(db, Order) == 0

    def test_empty_cart_is_refused(self, factory, db, campus):
        user = factory.user()
        with pytest.raises(EmptyCart):
            ordering.place_order(db, user.id, delivery=_checkout())

    def test_last_unit_goes_to_one_buyer(self, factory, db, campus):
        # SQLite has no row locks, so the race is played out one after the other
        first = factory.user(phone="+265990000001")
        second = factory.user(phone="+265990000002")
        last = factory.product(stock=1)
        factory.cart(first, (last, 1))
        factory.cart(second, (last, 1))

        ordering.place_order(db, first.id, delivery=_checkout())
        with pytest.raises(InsufficientStock):
            ordering.place_order(db, second.id, delivery=_checkout())

        db.expire_all()
        assert db.get(Product, last.id).stock == 0
        assert _count(db, Order) == 1

    def test_resubmitted_checkout_places_one_order(self, factory, db, campus):
        user = factory.user()
        notebook = factory.product(stock=4)
        factory.cart(user, (notebook, 2))

        ordering.place_order(db, user.id, delivery=_checkout())
        with pytest.raises(EmptyCart):
            ordering.place_order(db, user.id, delivery=_checkout())

        db.expire_all()
        assert db.get(Product, notebook.id).stock == 2
        assert _count(db, Order) == 1
