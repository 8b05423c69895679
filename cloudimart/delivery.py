import logging
import os
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .errors import (
    ChallengeFailed,
    DeliveryNotFound,
    DeliveryStateConflict,
    IntegrityViolation,
    OrderNotFound,
    ValidationError,
)
from .events import publish
from .models import (
    DELIVERY_ASSIGNED,
    DELIVERY_COMPLETED,
    ORDER_DELIVERED,
    Delivery,
    Order,
    Transaction,
    User,
)
from .notifications import notify
from .payments import CURRENCY

logger = logging.getLogger(__name__)

# When true, an unknown order code is reported exactly like a phone mismatch
UNIFORM_VERIFY_ERRORS = os.getenv("DELIVERY_VERIFY_UNIFORM_ERRORS", "false").lower() == "true"


def assign(db: Session, delivery_id: int, delivery_person_id: int) -> Delivery:
    delivery = db.get(Delivery, delivery_id)
    if delivery is None:
        raise DeliveryNotFound()
    if delivery.status == DELIVERY_COMPLETED:
        raise DeliveryStateConflict()

    person = db.get(User, delivery_person_id)
    if person is None or person.role != "delivery" or not person.is_active:
        raise ValidationError(
            "delivery_person_id must reference an active delivery user", field="delivery_person_id"
        )

    order = delivery.order
    delivery.delivery_person_id = person.id
    delivery.delivery_person = person.name
    delivery.status = DELIVERY_ASSIGNED

    notify(
        db,
        person.id,
        "New Delivery Assigned",
        f"You have been assigned to deliver order #{order.order_code} to {order.delivery_address}.",
    )
    notify(
        db,
        order.user_id,
        "Delivery Assigned",
        f"Your order #{order.order_code} has been assigned to {person.name} for delivery.",
    )

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Delivery.assign error delivery=%s person=%s", delivery_id, delivery_person_id)
        raise IntegrityViolation("could not assign delivery", delivery_id=delivery_id) from exc

    db.refresh(delivery)
    logger.info("delivery %s for order %s assigned to user %s", delivery.id, order.order_code, person.id)
    publish(
        "delivery.assigned",
        {
            "order_id": order.order_code,
            "delivery_id": delivery.id,
            "delivery_person_id": person.id,
            "email": person.email,
        },
        safe=True,
    )
    return delivery


def verify_by_challenge(
    db: Session,
    order_code: str,
    phone: str,
    delivery_person: Optional[str] = None,
    uniform_errors: Optional[bool] = None,
) -> Tuple[Order, bool]:
    """
    Confirm a delivery by order code plus the customer's phone number.

    The phone must equal the stored customer phone exactly. Returns the order
    and whether this call marked it delivered (False if it already was).
    """
    if uniform_errors is None:
        uniform_errors = UNIFORM_VERIFY_ERRORS

    order = db.execute(
        select(Order)
        .where(Order.order_code == order_code)
        .options(selectinload(Order.user), selectinload(Order.delivery))
    ).scalar_one_or_none()
    if order is None:
        if uniform_errors:
            raise ChallengeFailed()
        raise OrderNotFound()

    customer_phone = order.user.phone_number if order.user is not None else None
    if not customer_phone or customer_phone != phone:
        logger.info("delivery challenge failed for order %s", order_code)
        raise ChallengeFailed()

    return _mark_delivered(db, order, delivery_person=delivery_person)


def complete(db: Session, order_id: int, delivery_person: User) -> Tuple[Order, bool]:
    """Delivery staff marks an order delivered by its database id."""
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound()
    return _mark_delivered(db, order, delivery_person=delivery_person.name, delivery_person_id=delivery_person.id)


def _mark_delivered(
    db: Session,
    order: Order,
    delivery_person: Optional[str] = None,
    delivery_person_id: Optional[int] = None,
) -> Tuple[Order, bool]:
    if order.status == ORDER_DELIVERED:
        return order, False

    delivery = order.delivery
    if delivery is None:
        delivery = Delivery(order=order)
        db.add(delivery)
    delivery.delivery_person = delivery_person or delivery.delivery_person
    if delivery_person_id is not None:
        delivery.delivery_person_id = delivery_person_id
    delivery.status = DELIVERY_COMPLETED
    delivery.verification_code = None

    order.status = ORDER_DELIVERED

    db.add(
        Transaction(
            order_id=order.id,
            type="delivery",
            amount=order.total,
            currency=CURRENCY,
            status="completed",
            meta={"delivered_by": delivery.delivery_person or "unknown"},
        )
    )
    notify(
        db,
        order.user_id,
        "Order Delivered",
        f"Your order #{order.order_code} has been delivered. Thank you for shopping with Cloudimart.",
    )

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Delivery.complete error order=%s", order.id)
        raise IntegrityViolation("could not confirm delivery", order_id=order.id) from exc

    db.refresh(order)
    logger.info("order %s delivered by %s", order.order_code, delivery.delivery_person or "unknown")
    return order, True
