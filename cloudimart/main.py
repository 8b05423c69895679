import os
import uuid
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import List

import httpx
from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import delivery as delivery_flow
from . import ordering, payments
from .cart_snapshot import load_cart, snapshot_from_cart
from .db import get_db, init_schema
from .errors import (
    CartLocked,
    GatewayUnavailable,
    IntegrityViolation,
    OrderNotFound,
    PaymentNotFound,
    PaymentStateConflict,
    StoreError,
    ValidationError,
)
from .gateway import GATEWAY_TIMEOUT, PayChanguGateway, PaymentGateway
from .geozone import GeoZoneService
from .models import (
    ORDER_DELIVERED,
    PAYMENT_PENDING,
    PAYMENT_SUCCESS,
    Cart,
    CartItem,
    Notification,
    Order,
    Payment,
    Product,
    User,
)
from .notifications import broadcast, notify
from .schemas import (
    ApprovalOut,
    CartAddIn,
    CartItemOut,
    CartOut,
    DeliveryAssignIn,
    DeliveryDoneOut,
    DeliveryOut,
    DeliveryVerifyIn,
    LocationOut,
    NotificationOut,
    NotifyIn,
    OrderItemOut,
    OrderOut,
    PaymentCallbackIn,
    PaymentInitiateIn,
    PaymentInitiateOut,
    PaymentOut,
    PaymentRejectIn,
    PaymentStatusOut,
    PlaceOrderIn,
    PlaceOrderOut,
    PointCheckOut,
    PointIn,
    ProductOut,
)
from .security import require_admin, require_delivery, require_user, user_id_of

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PAYMENT_CALLBACK_URL = os.getenv("PAYMENT_CALLBACK_URL", "http://localhost:8000/payment/callback")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

ALLOWED_EXT = {".png", ".jpg", ".jpeg", ".webp"}

# Reuse client across requests
_http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Schema creation belongs to deploy-time migrations; DB_AUTO_CREATE=true
    creates tables at startup for local runs.
    """
    global _http_client
    if os.getenv("DB_AUTO_CREATE", "false").lower() == "true":
        init_schema()
    _http_client = httpx.AsyncClient(timeout=GATEWAY_TIMEOUT)
    yield
    if _http_client:
        await _http_client.aclose()
        _http_client = None


app = FastAPI(title="cloudimart-store", lifespan=lifespan)

app.mount("/static", StaticFiles(directory=str(UPLOAD_DIR)), name="static")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in prod
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if isinstance(exc, IntegrityViolation):
        logger.error("integrity violation on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------- dependencies ----------

def get_gateway() -> PaymentGateway:
    global _http_client
    if _http_client is None:
        # fallback in case lifespan didn't run
        _http_client = httpx.AsyncClient(timeout=GATEWAY_TIMEOUT)
    return PayChanguGateway(_http_client)


def _load_user(db: Session, claims: dict) -> User:
    user = db.get(User, user_id_of(claims))
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user


def current_user(claims: dict = Depends(require_user), db: Session = Depends(get_db)) -> User:
    return _load_user(db, claims)


def current_staff(claims: dict = Depends(require_delivery), db: Session = Depends(get_db)) -> User:
    return _load_user(db, claims)


# ---------- serializers ----------

def to_payment_out(p: Payment) -> PaymentOut:
    return PaymentOut.model_validate(p)


def to_order_out(o: Order) -> OrderOut:
    return OrderOut(
        id=o.id,
        order_id=o.order_code,
        status=o.status,
        total=float(o.total),
        delivery_fee=float(o.delivery_fee),
        delivery_address=o.delivery_address,
        payment_ref=o.payment_ref,
        items=[OrderItemOut.model_validate(i) for i in o.items],
        delivery=DeliveryOut.model_validate(o.delivery) if o.delivery is not None else None,
        created_at=o.created_at,
    )


def to_cart_out(cart: Cart | None) -> CartOut:
    snapshot = snapshot_from_cart(cart)
    items = []
    if cart is not None:
        for line in cart.items:
            items.append(
                CartItemOut(
                    id=line.id,
                    product_id=line.product_id,
                    product_name=line.product.name,
                    unit_price=float(line.product.price),
                    quantity=line.quantity,
                )
            )
    return CartOut(items=items, total=float(snapshot.cart_total), cart_hash=snapshot.cart_hash)


def _point_check(db: Session, point: PointIn) -> PointCheckOut:
    zone = GeoZoneService.from_db(db).find_containing_zone(point.lat, point.lng)
    return PointCheckOut(valid=zone is not None, location=LocationOut.model_validate(zone) if zone else None)


# ---------- public ----------

@app.get("/health")
def health():
    return {"ok": True}


@app.get("/products", response_model=list[ProductOut])
def list_products(db: Session = Depends(get_db)):
    rows = db.execute(
        select(Product).where(Product.published.is_(True)).order_by(Product.id.desc())
    ).scalars().all()
    return [ProductOut.model_validate(r) for r in rows]


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    p = db.get(Product, product_id)
    if not p or not p.published:
        raise HTTPException(404, "Not found")
    return ProductOut.model_validate(p)


@app.get("/locations", response_model=list[LocationOut])
def list_locations(db: Session = Depends(get_db)):
    return [LocationOut.model_validate(z) for z in GeoZoneService.from_db(db).zones]


@app.post("/locations/validate", response_model=PointCheckOut)
def validate_point(payload: PointIn, db: Session = Depends(get_db)):
    return _point_check(db, payload)


# ---------- cart ----------

def _pending_unordered_payment(db: Session, user_id: int) -> Payment | None:
    rows = db.execute(
        select(Payment)
        .where(Payment.user_id == user_id, Payment.status == PAYMENT_PENDING)
        .order_by(Payment.id.desc())
    ).scalars().all()
    for p in rows:
        if not payments.meta_of(p).order_id:
            return p
    return None


@app.get("/cart", response_model=CartOut)
def get_cart(user: User = Depends(current_user), db: Session = Depends(get_db)):
    return to_cart_out(load_cart(db, user.id))


@app.post("/cart/add", response_model=CartOut)
def add_to_cart(payload: CartAddIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    pending = _pending_unordered_payment(db, user.id)
    if pending is not None:
        raise CartLocked(pending_cart_hash=payments.meta_of(pending).cart_hash)

    product = db.get(Product, payload.product_id)
    if not product or not product.published:
        raise HTTPException(404, "Product not found")
    if product.stock <= 0:
        raise ValidationError("This product is out of stock.", field="product_id")

    cart = load_cart(db, user.id)
    if cart is None:
        cart = Cart(user_id=user.id)
        db.add(cart)

    line = next((i for i in cart.items if i.product_id == product.id), None)
    new_qty = (line.quantity if line else 0) + payload.quantity
    if new_qty > product.stock:
        raise ValidationError(f"Only {product.stock} items available in stock.", field="quantity")

    if line:
        line.quantity = new_qty
    else:
        cart.items.append(CartItem(product_id=product.id, quantity=payload.quantity, product=product))
    cart.updated_at = datetime.now(timezone.utc)

    db.commit()
    return to_cart_out(load_cart(db, user.id))


@app.delete("/cart/item/{item_id}", response_model=CartOut)
def remove_from_cart(item_id: int, user: User = Depends(current_user), db: Session = Depends(get_db)):
    item = db.get(CartItem, item_id)
    if not item:
        raise HTTPException(404, "Not found")
    if item.cart.user_id != user.id:
        raise HTTPException(403, "Forbidden")

    cart = item.cart
    db.delete(item)
    cart.updated_at = datetime.now(timezone.utc)
    db.commit()
    return to_cart_out(load_cart(db, user.id))


# ---------- payments ----------

@app.post("/payment/initiate", response_model=PaymentInitiateOut)
async def initiate_payment(
    payload: PaymentInitiateIn,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment, session = await payments.initiate(
        db,
        gateway,
        user.id,
        customer_name=user.name,
        customer_email=user.email,
        callback_url=PAYMENT_CALLBACK_URL,
        return_url_base=FRONTEND_URL,
        client_amount=payload.amount,
        mobile=payload.mobile,
        network=payload.network,
        delivery_lat=payload.delivery_lat,
        delivery_lng=payload.delivery_lng,
        delivery_address=payload.delivery_address,
        location_id=payload.location_id,
        client_cart_hash=payload.cart_hash,
    )
    return PaymentInitiateOut(
        checkout_url=session.checkout_url,
        tx_ref=payment.tx_ref,
        payment=to_payment_out(payment),
    )


@app.get("/payment/status", response_model=PaymentStatusOut)
async def payment_status(
    tx_ref: str,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment = db.execute(
        select(Payment).where(Payment.tx_ref == tx_ref, Payment.user_id == user.id)
    ).scalar_one_or_none()
    if not payment:
        raise PaymentNotFound()

    # terminal payments and manual proofs never hit the gateway
    if payment.status == PAYMENT_PENDING and not payment.proof_url:
        try:
            verification = await gateway.verify(payment.tx_ref)
        except GatewayUnavailable as e:
            logger.warning("status poll for %s failed: %s", payment.tx_ref, e.message)
        else:
            await run_in_threadpool(
                ordering.settle_payment,
                db,
                payment,
                verification.status,
                verification.raw,
                verification.provider_ref,
            )
            db.refresh(payment)

    return PaymentStatusOut(
        status=payment.status,
        payment=to_payment_out(payment),
        order_id=payments.meta_of(payment).order_id,
    )


@app.post("/payment/callback")
async def payment_callback(
    payload: PaymentCallbackIn,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    body = payload.model_dump(exclude_none=True)
    logger.info("PayChangu callback: %s", body)

    if not payload.ref:
        raise ValidationError("tx_ref is required", field="tx_ref")

    payment = db.execute(select(Payment).where(Payment.tx_ref == payload.ref)).scalar_one_or_none()
    if not payment:
        raise PaymentNotFound()

    # manual proofs are settled by an admin only
    if payment.proof_url:
        logger.warning("callback for manual payment %s ignored", payment.tx_ref)
        return {"message": "Callback ignored"}

    # the callback body is unauthenticated; only the gateway's own answer moves the payment
    try:
        verification = await gateway.verify(payment.tx_ref)
    except GatewayUnavailable as e:
        logger.warning("callback verification for %s failed: %s", payment.tx_ref, e.message)
        raise

    if payments.map_gateway_status(payload.status) != payments.map_gateway_status(verification.status):
        logger.warning(
            "callback for %s reported %r but the gateway reports %r",
            payment.tx_ref, payload.status, verification.status,
        )
    await run_in_threadpool(
        ordering.settle_payment,
        db,
        payment,
        verification.status,
        {"callback": body, "verification": verification.raw},
        verification.provider_ref,
    )
    return {"message": "Callback processed"}


@app.post("/payment/upload-proof", response_model=PaymentOut)
def upload_proof(
    file: UploadFile = File(...),
    amount: Decimal = Form(..., ge=0),
    mobile: str | None = Form(default=None),
    network: str | None = Form(default=None),
    note: str | None = Form(default=None),
    delivery_lat: float | None = Form(default=None),
    delivery_lng: float | None = Form(default=None),
    delivery_address: str | None = Form(default=None),
    location_id: int | None = Form(default=None),
    cart_hash: str | None = Form(default=None),
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    if (delivery_lat is None) != (delivery_lng is None):
        raise ValidationError("delivery_lat and delivery_lng must be given together", field="delivery_lat")

    filename = file.filename or "upload"
    ext = Path(filename).suffix.lower()
    if ext not in ALLOWED_EXT:
        raise ValidationError("Only .png, .jpg, .jpeg, .webp allowed", field="file")

    data = file.file.read()
    if not data:
        raise ValidationError("Empty file", field="file")

    out_name = f"proof_{user.id}_{uuid.uuid4().hex}{ext}"
    dest = UPLOAD_DIR / out_name
    dest.write_bytes(data)

    try:
        payment = payments.record_proof(
            db,
            user.id,
            proof_url=f"/static/{out_name}",
            client_amount=amount,
            mobile=mobile,
            network=network,
            note=note,
            delivery_lat=delivery_lat,
            delivery_lng=delivery_lng,
            delivery_address=delivery_address,
            location_id=location_id,
            client_cart_hash=cart_hash,
        )
    except StoreError:
        dest.unlink(missing_ok=True)
        raise
    return to_payment_out(payment)


@app.get("/payments", response_model=List[PaymentOut])
def list_my_payments(
    cart_hash: str | None = None,
    exclude_ordered: bool = False,
    user: User = Depends(current_user),
    db: Session = Depends(get_db),
):
    rows = db.execute(
        select(Payment).where(Payment.user_id == user.id).order_by(Payment.id.desc())
    ).scalars().all()

    out = []
    for p in rows:
        meta = payments.meta_of(p)
        if cart_hash and meta.cart_hash != cart_hash:
            continue
        if exclude_ordered and meta.order_id:
            continue
        out.append(to_payment_out(p))
    return out


# ---------- checkout & orders ----------

@app.post("/checkout/validate-location", response_model=PointCheckOut)
def checkout_validate_location(
    payload: PointIn, user: User = Depends(current_user), db: Session = Depends(get_db)
):
    return _point_check(db, payload)


@app.post("/checkout/place-order", response_model=PlaceOrderOut)
def place_order(payload: PlaceOrderIn, user: User = Depends(current_user), db: Session = Depends(get_db)):
    payment = None
    if payload.tx_ref:
        payment = db.execute(
            select(Payment).where(Payment.tx_ref == payload.tx_ref, Payment.user_id == user.id)
        ).scalar_one_or_none()
        if not payment:
            raise PaymentNotFound()
        if payment.status != PAYMENT_SUCCESS:
            raise PaymentStateConflict("Payment not confirmed yet.", tx_ref=payment.tx_ref)

    details = ordering.DeliveryDetails(
        address=payload.delivery_address,
        lat=payload.delivery_lat,
        lng=payload.delivery_lng,
        location_id=payload.location_id,
    )
    result = ordering.place_order(db, user.id, payment=payment, delivery=details)
    return PlaceOrderOut(
        already_processed=not result.created,
        order_id=result.order.order_code,
        order=to_order_out(result.order),
    )


def _orders_query():
    return select(Order).options(selectinload(Order.items), selectinload(Order.delivery))


@app.get("/orders", response_model=List[OrderOut])
def list_my_orders(user: User = Depends(current_user), db: Session = Depends(get_db)):
    rows = db.execute(
        _orders_query().where(Order.user_id == user.id).order_by(Order.id.desc())
    ).scalars().all()
    return [to_order_out(o) for o in rows]


@app.get("/orders/{order_code}", response_model=OrderOut)
def get_my_order(order_code: str, user: User = Depends(current_user), db: Session = Depends(get_db)):
    order = db.execute(
        _orders_query().where(Order.order_code == order_code, Order.user_id == user.id)
    ).scalar_one_or_none()
    if not order:
        raise OrderNotFound()
    return to_order_out(order)


# ---------- delivery ----------

@app.post("/delivery/verify", response_model=DeliveryDoneOut)
def verify_delivery(payload: DeliveryVerifyIn, staff: User = Depends(current_staff), db: Session = Depends(get_db)):
    order, changed = delivery_flow.verify_by_challenge(
        db,
        payload.order_id,
        payload.phone,
        delivery_person=payload.delivery_person or staff.name,
    )
    message = "Delivery confirmed" if changed else "Order already marked delivered"
    return DeliveryDoneOut(message=message, order_id=order.order_code)


@app.get("/delivery/dashboard", response_model=List[OrderOut])
def delivery_dashboard(mine: bool = False, staff: User = Depends(current_staff), db: Session = Depends(get_db)):
    q = _orders_query().where(Order.status != ORDER_DELIVERED).order_by(Order.created_at.asc(), Order.id.asc())
    rows = db.execute(q).scalars().all()
    if mine:
        rows = [o for o in rows if o.delivery is not None and o.delivery.delivery_person_id == staff.id]
    return [to_order_out(o) for o in rows]


@app.post("/delivery/orders/{order_id}/complete", response_model=DeliveryDoneOut)
def complete_delivery(order_id: int, staff: User = Depends(current_staff), db: Session = Depends(get_db)):
    order, changed = delivery_flow.complete(db, order_id, staff)
    message = "Order marked as delivered" if changed else "Order already marked delivered"
    return DeliveryDoneOut(message=message, order_id=order.order_code)


# ---------- notifications ----------

@app.get("/notifications", response_model=List[NotificationOut])
def my_notifications(user: User = Depends(current_user), db: Session = Depends(get_db)):
    rows = db.execute(
        select(Notification).where(Notification.user_id == user.id).order_by(Notification.id.desc())
    ).scalars().all()
    return [NotificationOut.model_validate(n) for n in rows]


# ---------- admin ----------

@app.get("/admin/payments", response_model=List[PaymentOut])
def admin_payments(status: str | None = None, claims: dict = Depends(require_admin), db: Session = Depends(get_db)):
    q = select(Payment).order_by(Payment.id.desc())
    if status:
        q = q.where(Payment.status == status)
    return [to_payment_out(p) for p in db.execute(q).scalars().all()]


@app.post("/admin/payments/{payment_id}/approve", response_model=ApprovalOut)
def admin_approve_payment(payment_id: int, claims: dict = Depends(require_admin), db: Session = Depends(get_db)):
    result = ordering.approve_payment(db, payment_id)
    payment = db.get(Payment, payment_id)
    logger.info(
        "admin %s approved payment %s -> order %s (created=%s)",
        claims.get("sub"), payment_id, result.order.order_code, result.created,
    )
    return ApprovalOut(
        already_processed=not result.created,
        order_id=result.order.order_code,
        payment=to_payment_out(payment),
    )


@app.post("/admin/payments/{payment_id}/reject", response_model=PaymentOut)
def admin_reject_payment(
    payment_id: int,
    payload: PaymentRejectIn,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return to_payment_out(ordering.reject_payment(db, payment_id, payload.reason))


@app.post("/admin/deliveries/{delivery_id}/assign", response_model=DeliveryOut)
def admin_assign_delivery(
    delivery_id: int,
    payload: DeliveryAssignIn,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return DeliveryOut.model_validate(delivery_flow.assign(db, delivery_id, payload.delivery_person_id))


@app.post("/admin/notify")
def admin_notify(
    payload: NotifyIn,
    background_tasks: BackgroundTasks,
    claims: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if payload.user_id is not None:
        if not db.get(User, payload.user_id):
            raise ValidationError("Unknown user", field="user_id")
        notify(db, payload.user_id, payload.title, payload.message)
        db.commit()
        return {"success": True, "queued": False}

    background_tasks.add_task(broadcast, payload.title, payload.message)
    return {"success": True, "queued": True}
