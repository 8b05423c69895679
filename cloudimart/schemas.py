from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------- catalog & zones ----------

class ProductOut(BaseModel):
    id: int
    name: str
    description: str
    price: float
    stock: int
    image_url: str | None = None

    model_config = ConfigDict(from_attributes=True)


class LocationOut(BaseModel):
    id: int
    name: str
    slug: str | None = None
    type: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    radius_km: float | None = None
    polygon_coordinates: list | None = None
    delivery_fee: float

    model_config = ConfigDict(from_attributes=True)


class PointIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PointCheckOut(BaseModel):
    success: bool = True
    valid: bool
    location: LocationOut | None = None


# ---------- cart ----------

class CartAddIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


class CartItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    unit_price: float
    quantity: int


class CartOut(BaseModel):
    success: bool = True
    items: list[CartItemOut]
    total: float
    cart_hash: str | None = None


# ---------- payments ----------

class PaymentInitiateIn(BaseModel):
    # advisory only; the server prices the cart
    amount: Decimal | None = Field(default=None, ge=0)
    mobile: str = Field(min_length=3)
    network: Literal["mpamba", "airtel"]
    delivery_lat: float | None = Field(default=None, ge=-90, le=90)
    delivery_lng: float | None = Field(default=None, ge=-180, le=180)
    delivery_address: str | None = Field(default=None, max_length=255)
    location_id: int | None = None
    cart_hash: str | None = None

    @model_validator(mode="after")
    def coords_together(self):
        if (self.delivery_lat is None) != (self.delivery_lng is None):
            raise ValueError("delivery_lat and delivery_lng must be given together")
        return self


class PaymentOut(BaseModel):
    id: int
    user_id: int | None
    tx_ref: str
    provider_ref: str | None = None
    mobile: str | None = None
    network: str | None = None
    amount: float
    currency: str
    status: str
    proof_url: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentInitiateOut(BaseModel):
    checkout_url: str
    tx_ref: str
    payment: PaymentOut


class PaymentStatusOut(BaseModel):
    status: str
    payment: PaymentOut
    order_id: str | None = None


class PaymentCallbackIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_ref: str | None = None
    transaction_reference: str | None = None
    status: str | None = None
    reference: str | None = None

    @property
    def ref(self) -> str | None:
        return self.tx_ref or self.transaction_reference


class PaymentRejectIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ApprovalOut(BaseModel):
    success: bool = True
    already_processed: bool
    order_id: str
    payment: PaymentOut


# ---------- orders ----------

class OrderItemOut(BaseModel):
    product_id: int
    quantity: int
    unit_price: float

    model_config = ConfigDict(from_attributes=True)


class DeliveryOut(BaseModel):
    id: int
    status: str
    delivery_person_id: int | None = None
    delivery_person: str | None = None
    verification_code: str | None = None

    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    order_id: str
    status: str
    total: float
    delivery_fee: float
    delivery_address: str
    payment_ref: str | None = None
    items: list[OrderItemOut]
    delivery: DeliveryOut | None = None
    created_at: datetime | None = None


class PlaceOrderIn(BaseModel):
    delivery_lat: float = Field(ge=-90, le=90)
    delivery_lng: float = Field(ge=-180, le=180)
    delivery_address: str = Field(min_length=1, max_length=255)
    location_id: int | None = None
    tx_ref: str | None = None
    payment_method: str | None = None


class PlaceOrderOut(BaseModel):
    success: bool = True
    already_processed: bool = False
    order_id: str
    order: OrderOut


# ---------- delivery ----------

class DeliveryVerifyIn(BaseModel):
    order_id: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    delivery_person: str | None = None


class DeliveryAssignIn(BaseModel):
    delivery_person_id: int


class DeliveryDoneOut(BaseModel):
    success: bool = True
    message: str
    order_id: str


# ---------- notifications ----------

class NotificationOut(BaseModel):
    id: int
    title: str
    message: str
    is_read: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class NotifyIn(BaseModel):
    user_id: int | None = None
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1)
