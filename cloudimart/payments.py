"""Payment records: creation, state machine and reconciliation metadata.

A payment moves ``pending -> success`` or ``pending -> failed`` and never
leaves a terminal state. Its ``meta`` column stores a ``PaymentMeta``: the
cart snapshot it was priced from, the geofence result recorded at initiation,
the delivery details, the linked order code and a trail of reconciliation
notes. Metadata is merged, never replaced, so the notes from repeated
approval attempts accumulate.
"""

import logging
import os
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from .cart_snapshot import CartSnapshot, build_snapshot, money
from .errors import (
    EmptyCart,
    GatewayUnavailable,
    OutsideDeliveryZone,
    PaymentStateConflict,
    ValidationError,
)
from .gateway import PaymentGateway
from .geozone import GeoZoneService
from .models import PAYMENT_FAILED, PAYMENT_PENDING, PAYMENT_SUCCESS, Location, Payment
from .notifications import notify

logger = logging.getLogger(__name__)

CURRENCY = os.getenv("STORE_CURRENCY", "MWK")

# client amounts within one cent of the server amount are accepted as-is
AMOUNT_TOLERANCE = Decimal("0.01")

SUCCESS_STATUSES = {"successful", "success", "paid"}
FAILED_STATUSES = {"failed", "declined"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------- metadata ----------

class AmountMismatchNote(BaseModel):
    kind: Literal["amount_mismatch"] = "amount_mismatch"
    expected: Decimal
    received: Decimal
    source: str = "client"  # client | approval
    at: datetime = Field(default_factory=_now)


class StockIssueNote(BaseModel):
    kind: Literal["stock_issue"] = "stock_issue"
    items: List[Dict[str, int]]
    at: datetime = Field(default_factory=_now)


class Note(BaseModel):
    kind: Literal["note"] = "note"
    message: str
    at: datetime = Field(default_factory=_now)


ReconciliationNote = Annotated[
    Union[AmountMismatchNote, StockIssueNote, Note],
    Field(discriminator="kind"),
]


class GeofenceResult(BaseModel):
    checked: bool = False
    inside: Optional[bool] = None
    location_id: Optional[int] = None


class PaymentMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cart_snapshot: Optional[CartSnapshot] = None
    cart_hash: Optional[str] = None
    client_cart_hash: Optional[str] = None
    client_amount: Optional[Decimal] = None

    delivery_address: Optional[str] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    location_id: Optional[int] = None
    delivery_fee: Optional[Decimal] = None
    geofence: Optional[GeofenceResult] = None

    order_id: Optional[str] = None
    notes: List[ReconciliationNote] = Field(default_factory=list)
    gateway_events: List[Dict[str, Any]] = Field(default_factory=list)

    def merged(self, **changes: Any) -> "PaymentMeta":
        data = self.model_dump()
        for key, value in changes.items():
            if key not in PaymentMeta.model_fields:
                raise KeyError(f"unknown payment meta field {key!r}")
            if value is None:
                continue
            if key in ("notes", "gateway_events"):
                data[key] = list(data[key]) + list(value)
            else:
                data[key] = value
        return PaymentMeta.model_validate(data)


def meta_of(payment: Payment) -> PaymentMeta:
    return PaymentMeta.model_validate(payment.meta or {})


def merge_meta(payment: Payment, **changes: Any) -> PaymentMeta:
    meta = meta_of(payment).merged(**changes)
    payment.meta = meta.model_dump(mode="json")
    return meta


def add_note(payment: Payment, note: Union[AmountMismatchNote, StockIssueNote, Note]) -> PaymentMeta:
    return merge_meta(payment, notes=[note])


def link_order(payment: Payment, order_code: str) -> bool:
    """Record the order code once. An existing, different link is kept."""
    meta = meta_of(payment)
    if meta.order_id == order_code:
        return False
    if meta.order_id:
        logger.warning(
            "payment %s already linked to %s; not relinking to %s",
            payment.tx_ref, meta.order_id, order_code,
        )
        return False
    merge_meta(payment, order_id=order_code)
    return True


# ---------- state machine ----------

def mark_success(db: Session, payment: Payment, provider_ref: Optional[str] = None) -> bool:
    """pending -> success. Returns False (and changes nothing) when already successful."""
    if payment.status == PAYMENT_SUCCESS:
        return False
    if payment.status == PAYMENT_FAILED:
        raise PaymentStateConflict("Payment has already failed", tx_ref=payment.tx_ref)

    payment.status = PAYMENT_SUCCESS
    if provider_ref:
        payment.provider_ref = provider_ref
    if payment.user_id is not None:
        notify(
            db,
            payment.user_id,
            "Payment Successful",
            f"Your payment of {payment.currency} {money(payment.amount)} was successful. Ref: {payment.tx_ref}",
        )
    logger.info("payment %s marked success", payment.tx_ref)
    return True


def mark_failed(db: Session, payment: Payment, reason: Optional[str] = None) -> bool:
    """pending -> failed. Returns False when already failed."""
    if payment.status == PAYMENT_FAILED:
        return False
    if payment.status == PAYMENT_SUCCESS:
        raise PaymentStateConflict("Payment already succeeded", tx_ref=payment.tx_ref)

    payment.status = PAYMENT_FAILED
    if reason:
        add_note(payment, Note(message=reason))
    logger.info("payment %s marked failed: %s", payment.tx_ref, reason)
    return True


def map_gateway_status(status: Optional[str]) -> Optional[str]:
    status = (status or "").strip().lower()
    if status in SUCCESS_STATUSES:
        return PAYMENT_SUCCESS
    if status in FAILED_STATUSES:
        return PAYMENT_FAILED
    return None


def apply_gateway_status(
    db: Session,
    payment: Payment,
    status: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
    provider_ref: Optional[str] = None,
) -> bool:
    """
    Apply a status reported by the gateway (callback or poll).

    The payload is always kept in ``gateway_events``. Unrecognized statuses
    and statuses for terminal payments cause no transition. Returns True when
    the payment transitioned.
    """
    merge_meta(payment, gateway_events=[{"status": status, "received_at": _now().isoformat(), "payload": payload or {}}])

    mapped = map_gateway_status(status)
    if mapped is None:
        logger.info("payment %s: unrecognized gateway status %r kept in metadata", payment.tx_ref, status)
        return False
    if payment.status != PAYMENT_PENDING:
        if payment.status != mapped:
            logger.warning(
                "payment %s is %s; ignoring gateway status %r", payment.tx_ref, payment.status, status
            )
        return False

    if mapped == PAYMENT_SUCCESS:
        return mark_success(db, payment, provider_ref=provider_ref)
    return mark_failed(db, payment, reason=f"Gateway reported {status}")


# ---------- creation ----------

@dataclass(frozen=True)
class Quote:
    snapshot: CartSnapshot
    delivery_fee: Decimal
    amount: Decimal
    location: Optional[Location]
    geofence: GeofenceResult


def new_tx_ref() -> str:
    alphabet = string.ascii_letters + string.digits
    return "cloudimart_" + "".join(secrets.choice(alphabet) for _ in range(10))


def quote(
    db: Session,
    user_id: int,
    *,
    delivery_lat: Optional[float] = None,
    delivery_lng: Optional[float] = None,
    location_id: Optional[int] = None,
) -> Quote:
    """Snapshot the cart, check the geofence and price the delivery."""
    snapshot = build_snapshot(db, user_id)
    if snapshot.is_empty:
        raise EmptyCart()

    # placement from the payment trusts this check, so it is never skipped
    if delivery_lat is None or delivery_lng is None:
        raise ValidationError("Delivery coordinates are required", field="delivery_lat")

    zones = GeoZoneService.from_db(db)
    containing = zones.find_containing_zone(delivery_lat, delivery_lng)
    if containing is None:
        raise OutsideDeliveryZone()
    geofence = GeofenceResult(checked=True, inside=True, location_id=containing.id)

    location = containing
    if location_id is not None:
        location = zones.get(location_id)
        if location is None:
            raise ValidationError("Unknown or inactive delivery location", field="location_id")

    fee = money(location.delivery_fee) if location is not None and location.delivery_fee is not None else money(0)
    return Quote(
        snapshot=snapshot,
        delivery_fee=fee,
        amount=money(snapshot.cart_total + fee),
        location=location,
        geofence=geofence,
    )


def create_pending(
    db: Session,
    user_id: int,
    *,
    client_amount: Optional[Decimal] = None,
    mobile: Optional[str] = None,
    network: Optional[str] = None,
    delivery_lat: Optional[float] = None,
    delivery_lng: Optional[float] = None,
    delivery_address: Optional[str] = None,
    location_id: Optional[int] = None,
    client_cart_hash: Optional[str] = None,
    proof_url: Optional[str] = None,
    note: Optional[str] = None,
) -> Payment:
    """
    Build a pending payment priced by the server.

    The authoritative amount is snapshot total plus delivery fee. A client
    amount off by more than the tolerance is overridden and recorded as an
    ``amount_mismatch`` note. The caller commits.
    """
    q = quote(db, user_id, delivery_lat=delivery_lat, delivery_lng=delivery_lng, location_id=location_id)

    notes: list = []
    if client_amount is not None:
        received = money(client_amount)
        if abs(received - q.amount) > AMOUNT_TOLERANCE:
            logger.info(
                "client amount %s overridden by server amount %s for user %s", received, q.amount, user_id
            )
            notes.append(AmountMismatchNote(expected=q.amount, received=received, source="client"))
    if client_cart_hash and q.snapshot.cart_hash != client_cart_hash:
        notes.append(Note(message=f"client cart hash {client_cart_hash} differs from server snapshot"))
    if note:
        notes.append(Note(message=note))

    payment = Payment(
        user_id=user_id,
        tx_ref=new_tx_ref(),
        mobile=mobile,
        network=network,
        amount=q.amount,
        currency=CURRENCY,
        status=PAYMENT_PENDING,
        proof_url=proof_url,
    )
    merge_meta(
        payment,
        cart_snapshot=q.snapshot,
        cart_hash=q.snapshot.cart_hash,
        client_cart_hash=client_cart_hash,
        client_amount=money(client_amount) if client_amount is not None else None,
        delivery_address=delivery_address,
        delivery_lat=delivery_lat,
        delivery_lng=delivery_lng,
        location_id=q.location.id if q.location is not None else None,
        delivery_fee=q.delivery_fee,
        geofence=q.geofence,
        notes=notes,
    )
    db.add(payment)
    return payment


def record_proof(db: Session, user_id: int, *, proof_url: str, **fields: Any) -> Payment:
    """Manual / offline payment: pending until an admin approves it."""
    payment = create_pending(db, user_id, proof_url=proof_url, **fields)
    db.commit()
    db.refresh(payment)
    logger.info("proof of payment %s recorded for user %s", payment.tx_ref, user_id)
    return payment


async def initiate(
    db: Session,
    gateway: PaymentGateway,
    user_id: int,
    *,
    customer_name: Optional[str] = None,
    customer_email: Optional[str] = None,
    callback_url: str,
    return_url_base: str,
    **fields: Any,
):
    """
    Create the pending payment, commit it, then open a gateway checkout.

    The gateway is only called after the commit, so no row lock is ever held
    across the network call. Gateway failure marks the payment failed.
    """
    payment = create_pending(db, user_id, **fields)
    db.commit()
    db.refresh(payment)

    return_url = f"{return_url_base.rstrip('/')}/store/checkout?tx_ref={payment.tx_ref}"
    try:
        session = await gateway.initiate(
            amount=payment.amount,
            currency=payment.currency,
            tx_ref=payment.tx_ref,
            mobile=payment.mobile or "",
            network=payment.network or "",
            callback_url=callback_url,
            return_url=return_url,
            customer_name=customer_name,
            customer_email=customer_email,
        )
    except GatewayUnavailable as exc:
        mark_failed(db, payment, reason=f"Gateway initiation failed: {exc.message}")
        db.commit()
        raise

    payment.provider_ref = session.provider_ref
    db.commit()
    db.refresh(payment)
    return payment, session
