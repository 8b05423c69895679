"""Order placement.

``place_order`` turns a paid (or approvable) payment, or the live cart in a
direct checkout, into an Order with its items, a Delivery and a customer
notification. It runs every step in one database transaction:

1. an order already referencing the payment's tx_ref is returned unchanged
2. snapshot: the payment's frozen cart, else the live cart (empty -> EmptyCart)
3. geofence: checked live on checkout, else the payment's recorded result
   must say the point was inside a zone
4. amount: snapshot total + delivery fee must match the payment amount
5. stock: all-or-nothing reservation in ascending product order
6. persist order, items, delivery and notification
7. clear the live cart only if it still matches the placed snapshot
8. link the order code into the payment metadata, once

Any gate failure rolls the whole transaction back. On the payment path the
failure is then written into the payment's notes in a separate commit and the
payment stays pending for a retry.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import payments
from .cart_snapshot import (
    CartSnapshot,
    load_cart,
    money,
    resolve_stock_demands,
    snapshot_from_cart,
)
from .errors import (
    AmountMismatch,
    EmptyCart,
    InsufficientStock,
    IntegrityViolation,
    OutsideDeliveryZone,
    PaymentNotFound,
    PaymentStateConflict,
    StoreError,
    ValidationError,
)
from .events import publish
from .geozone import GeoZoneService
from .models import (
    DELIVERY_PENDING,
    ORDER_PENDING,
    ORDER_PENDING_DELIVERY,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    Delivery,
    Order,
    OrderItem,
    Payment,
)
from .notifications import notify
from .stock import reserve_and_decrement

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class DeliveryDetails:
    address: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    location_id: Optional[int] = None


@dataclass(frozen=True)
class PlacementResult:
    order: Order
    # False when the order already existed for this payment (idempotent replay)
    created: bool


def _random_code(length: int = 6) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_order_code(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{_random_code()}"


def generate_verification_code() -> str:
    return _random_code()


def find_order_for_payment(db: Session, tx_ref: str) -> Optional[Order]:
    return db.execute(select(Order).where(Order.payment_ref == tx_ref)).scalar_one_or_none()


# ---------- workflow ----------

def place_order(
    db: Session,
    user_id: int,
    payment: Optional[Payment] = None,
    delivery: Optional[DeliveryDetails] = None,
) -> PlacementResult:
    payment_id = payment.id if payment is not None else None
    tx_ref = payment.tx_ref if payment is not None else None

    try:
        result = _place(db, user_id, payment, delivery)
        db.commit()
    except IntegrityViolation as exc:
        db.rollback()
        logger.error("order placement integrity violation: %s user=%s tx_ref=%s", exc, user_id, tx_ref)
        raise
    except StoreError as exc:
        db.rollback()
        logger.info("order placement refused for user %s (tx_ref=%s): %s", user_id, tx_ref, exc.code)
        if payment_id is not None:
            _annotate_failure(db, payment_id, exc)
        raise
    except IntegrityError as exc:
        db.rollback()
        if tx_ref is not None:
            existing = find_order_for_payment(db, tx_ref)
            if existing is not None:
                # a concurrent approval won the unique payment_ref race
                logger.info("order for %s already created concurrently: %s", tx_ref, existing.order_code)
                return PlacementResult(order=existing, created=False)
        logger.exception("order placement hit a constraint violation user=%s tx_ref=%s", user_id, tx_ref)
        raise IntegrityViolation("constraint violation", user_id=user_id, tx_ref=tx_ref) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("order placement failed user=%s tx_ref=%s", user_id, tx_ref)
        raise IntegrityViolation("database error", user_id=user_id, tx_ref=tx_ref) from exc

    if result.created:
        order = result.order
        logger.info("order %s placed for user %s (tx_ref=%s)", order.order_code, user_id, tx_ref)
        publish(
            "order.placed",
            {
                "order_id": order.order_code,
                "user_id": user_id,
                "total": str(order.total),
                "delivery_fee": str(order.delivery_fee),
                "payment_ref": order.payment_ref,
            },
            safe=True,
        )
    return result


def _place(
    db: Session,
    user_id: int,
    payment: Optional[Payment],
    delivery: Optional[DeliveryDetails],
) -> PlacementResult:
    meta = None
    if payment is not None:
        # 1. idempotency
        existing = find_order_for_payment(db, payment.tx_ref)
        if existing is not None:
            payments.link_order(payment, existing.order_code)
            return PlacementResult(order=existing, created=False)
        if payment.status == PAYMENT_FAILED:
            raise PaymentStateConflict("Payment has failed and cannot be turned into an order", tx_ref=payment.tx_ref)
        meta = payments.meta_of(payment)

    # 2. snapshot; the cart row stays locked until commit, ahead of any product lock
    cart = load_cart(db, user_id, lock=True)
    if meta is not None and meta.cart_snapshot is not None and not meta.cart_snapshot.is_empty:
        snapshot = meta.cart_snapshot
    else:
        snapshot = snapshot_from_cart(cart)
    if snapshot.is_empty:
        raise EmptyCart()

    # 3. geofence
    zones = GeoZoneService.from_db(db)
    containing = None
    if delivery is not None:
        if delivery.lat is None or delivery.lng is None:
            raise ValidationError("Delivery coordinates are required", field="delivery_lat")
        containing = zones.find_containing_zone(delivery.lat, delivery.lng)
        if containing is None:
            raise OutsideDeliveryZone()
    elif meta is not None:
        geofence = meta.geofence
        if geofence is None or not (geofence.checked and geofence.inside):
            raise OutsideDeliveryZone()

    fee = _delivery_fee(zones, meta, delivery, containing)

    # 4. amount
    if payment is not None:
        expected = money(snapshot.cart_total + fee)
        received = money(payment.amount)
        if abs(expected - received) > payments.AMOUNT_TOLERANCE:
            raise AmountMismatch(expected=expected, received=received)

    # 5. stock
    reserve_and_decrement(db, resolve_stock_demands(snapshot))

    # 6. persist
    order = Order(
        order_code=generate_order_code(),
        user_id=user_id,
        total=snapshot.cart_total,
        delivery_fee=fee,
        delivery_address=_address(meta, delivery),
        delivery_lat=delivery.lat if delivery is not None else (meta.delivery_lat if meta else None),
        delivery_lng=delivery.lng if delivery is not None else (meta.delivery_lng if meta else None),
        status=ORDER_PENDING_DELIVERY if payment is not None else ORDER_PENDING,
        payment_ref=payment.tx_ref if payment is not None else None,
    )
    for item in snapshot.items:
        order.items.append(
            OrderItem(product_id=item.product_id, quantity=item.quantity, unit_price=item.unit_price)
        )
    order.delivery = Delivery(status=DELIVERY_PENDING, verification_code=generate_verification_code())
    db.add(order)

    if payment is not None and payment.status == PAYMENT_PENDING:
        payments.mark_success(db, payment)

    notify(
        db,
        user_id,
        "Order Placed",
        f"Your order #{order.order_code} has been placed successfully and is being processed.",
    )
    db.flush()

    # 7. cart clearing
    _clear_cart_if_unchanged(db, user_id, snapshot)

    # 8. linkage
    if payment is not None:
        payments.link_order(payment, order.order_code)

    return PlacementResult(order=order, created=True)


def _delivery_fee(zones, meta, delivery, containing) -> Decimal:
    if meta is not None and meta.delivery_fee is not None:
        return money(meta.delivery_fee)

    location = containing
    if delivery is not None and delivery.location_id is not None:
        location = zones.get(delivery.location_id)
        if location is None:
            raise ValidationError("Unknown or inactive delivery location", field="location_id")
    if location is None or location.delivery_fee is None:
        return money(0)
    return money(location.delivery_fee)


def _address(meta, delivery) -> str:
    if delivery is not None and delivery.address:
        return delivery.address
    if meta is not None and meta.delivery_address:
        return meta.delivery_address
    return ""


def _clear_cart_if_unchanged(db: Session, user_id: int, placed: CartSnapshot) -> None:
    cart = load_cart(db, user_id)
    if cart is None or not cart.items:
        return
    live = snapshot_from_cart(cart)
    if live.cart_hash != placed.cart_hash:
        logger.info("cart of user %s changed since it was charged; leaving it untouched", user_id)
        return
    cart.items.clear()


def _annotate_failure(db: Session, payment_id: int, exc: StoreError) -> None:
    """Write the refusal into the payment's notes; the payment itself stays as it was."""
    payment = db.get(Payment, payment_id)
    if payment is None:
        return

    if isinstance(exc, AmountMismatch):
        note = payments.AmountMismatchNote(expected=exc.expected, received=exc.received, source="approval")
    elif isinstance(exc, InsufficientStock):
        note = payments.StockIssueNote(items=exc.items)
    else:
        note = payments.Note(message=f"approval_issue: {exc.code}: {exc.message}")

    try:
        payments.add_note(payment, note)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("could not annotate payment %s", payment_id)


# ---------- payment entry points ----------

def approve_payment(db: Session, payment_id: int) -> PlacementResult:
    """Admin approval: place the order for a payment and mark it paid. Safe to repeat."""
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound()
    if payment.status == PAYMENT_FAILED:
        raise PaymentStateConflict("Payment was already marked failed", tx_ref=payment.tx_ref)
    if payment.user_id is None:
        raise IntegrityViolation("payment has no owner", payment_id=payment_id)
    return place_order(db, payment.user_id, payment=payment)


def reject_payment(db: Session, payment_id: int, reason: Optional[str] = None) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound()
    if payment.status == PAYMENT_SUCCESS:
        raise PaymentStateConflict("Payment already succeeded", tx_ref=payment.tx_ref)

    if payments.mark_failed(db, payment, reason=reason or "Rejected by admin"):
        if payment.user_id is not None:
            notify(
                db,
                payment.user_id,
                "Payment Rejected",
                f"Your payment {payment.tx_ref} could not be verified. {reason or ''}".strip(),
            )
    db.commit()
    db.refresh(payment)
    return payment


def settle_payment(
    db: Session,
    payment: Payment,
    status: Optional[str],
    payload: Optional[dict] = None,
    provider_ref: Optional[str] = None,
) -> Optional[PlacementResult]:
    """
    Apply a gateway status (callback or poll) and, once the payment is paid,
    place its order. Placement refusals are recorded on the payment and
    logged; they do not undo the payment status.
    """
    transitioned = payments.apply_gateway_status(db, payment, status, payload, provider_ref)
    db.commit()

    if transitioned and payment.status == PAYMENT_SUCCESS:
        publish(
            "payment.succeeded",
            {"tx_ref": payment.tx_ref, "user_id": payment.user_id, "amount": str(payment.amount)},
            safe=True,
        )

    if payment.status != PAYMENT_SUCCESS or payment.user_id is None:
        return None
    if payments.meta_of(payment).order_id:
        return None

    try:
        return place_order(db, payment.user_id, payment=payment)
    except StoreError as exc:
        logger.warning("payment %s is paid but its order was not placed: %s", payment.tx_ref, exc.code)
        return None
