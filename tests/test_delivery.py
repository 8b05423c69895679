import pytest
from sqlalchemy import select

from cloudimart import delivery
from cloudimart.errors import (
    ChallengeFailed,
    DeliveryNotFound,
    DeliveryStateConflict,
    OrderNotFound,
    ValidationError,
)
from cloudimart.models import (
    DELIVERY_ASSIGNED,
    DELIVERY_COMPLETED,
    DELIVERY_PENDING,
    ORDER_DELIVERED,
    ORDER_PENDING_DELIVERY,
    Notification,
    Order,
    Transaction,
)

CODE = "ORD-20260101-ABC123"
PHONE = "+265991234567"


def _titles(db, user_id):
    return [n.title for n in db.scalars(select(Notification).where(Notification.user_id == user_id))]


class TestVerifyByChallenge:
    def test_matching_phone_marks_order_delivered(self, factory, db):
        customer = factory.user(phone=PHONE)
        factory.order(customer, code=CODE)

        order, changed = delivery.verify_by_challenge(db, CODE, PHONE, delivery_person="Mphatso")

        assert changed
        assert order.status == ORDER_DELIVERED
        assert order.delivery.status == DELIVERY_COMPLETED
        assert order.delivery.delivery_person == "Mphatso"
        assert order.delivery.verification_code is None
        [txn] = db.scalars(select(Transaction).where(Transaction.order_id == order.id)).all()
        assert txn.type == "delivery"
        assert txn.amount == order.total
        assert txn.meta == {"delivered_by": "Mphatso"}
        assert _titles(db, customer.id) == ["Order Delivered"]

    def test_second_confirmation_changes_nothing(self, factory, db):
        customer = factory.user(phone=PHONE)
        factory.order(customer, code=CODE)
        delivery.verify_by_challenge(db, CODE, PHONE)

        order, changed = delivery.verify_by_challenge(db, CODE, PHONE)

        assert not changed
        assert order.status == ORDER_DELIVERED
        assert len(db.scalars(select(Transaction)).all()) == 1

    @pytest.mark.parametrize("phone", ["+265991234568", "0991234567", " +265991234567", ""])
    def test_phone_must_match_exactly(self, factory, db, phone):
        customer = factory.user(phone=PHONE)
        factory.order(customer, code=CODE)

        with pytest.raises(ChallengeFailed) as exc:
            delivery.verify_by_challenge(db, CODE, phone)

        assert exc.value.status_code == 403
        db.expire_all()
        order = db.scalar(select(Order).where(Order.order_code == CODE))
        assert order.status == ORDER_PENDING_DELIVERY
        assert order.delivery.status == DELIVERY_PENDING
        assert order.delivery.verification_code == "K7Q2ZP"

    def test_customer_without_phone_never_matches(self, factory, db):
        customer = factory.user(phone=None)
        factory.order(customer, code=CODE)
        with pytest.raises(ChallengeFailed):
            delivery.verify_by_challenge(db, CODE, "")

    def test_unknown_order_is_reported_as_not_found(self, factory, db):
        with pytest.raises(OrderNotFound):
            delivery.verify_by_challenge(db, "ORD-20260101-ZZZZZZ", PHONE, uniform_errors=False)

    def test_unknown_order_can_look_like_a_mismatch(self, factory, db):
        with pytest.raises(ChallengeFailed):
            delivery.verify_by_challenge(db, "ORD-20260101-ZZZZZZ", PHONE, uniform_errors=True)


class TestComplete:
    def test_staff_completes_by_order_id(self, factory, db):
        customer = factory.user(phone=PHONE)
        driver = factory.user(name="Mphatso Phiri", role="delivery", phone="+265888000111")
        order = factory.order(customer)

        order, changed = delivery.complete(db, order.id, driver)

        assert changed
        assert order.status == ORDER_DELIVERED
        assert order.delivery.delivery_person_id == driver.id
        assert order.delivery.delivery_person == "Mphatso Phiri"

    def test_unknown_order(self, factory, db):
        driver = factory.user(role="delivery")
        with pytest.raises(OrderNotFound):
            delivery.complete(db, 999, driver)


class TestAssign:
    def test_assign_notifies_driver_and_customer(self, factory, db):
        customer = factory.user(phone=PHONE)
        driver = factory.user(name="Mphatso Phiri", role="delivery", phone="+265888000111")
        order = factory.order(customer)

        assigned = delivery.assign(db, order.delivery.id, driver.id)

        assert assigned.status == DELIVERY_ASSIGNED
        assert assigned.delivery_person_id == driver.id
        assert assigned.delivery_person == "Mphatso Phiri"
        assert _titles(db, driver.id) == ["New Delivery Assigned"]
        assert _titles(db, customer.id) == ["Delivery Assigned"]

    def test_only_delivery_staff_can_be_assigned(self, factory, db):
        customer = factory.user(phone=PHONE)
        order = factory.order(customer)
        with pytest.raises(ValidationError):
            delivery.assign(db, order.delivery.id, customer.id)

    def test_completed_delivery_cannot_be_reassigned(self, factory, db):
        customer = factory.user(phone=PHONE)
        driver = factory.user(role="delivery", phone="+265888000111")
        order = factory.order(customer, code=CODE)
        delivery.verify_by_challenge(db, CODE, PHONE)

        with pytest.raises(DeliveryStateConflict):
            delivery.assign(db, order.delivery.id, driver.id)

    def test_unknown_delivery(self, factory, db):
        driver = factory.user(role="delivery")
        with pytest.raises(DeliveryNotFound):
            delivery.assign(db, 999, driver.id)
