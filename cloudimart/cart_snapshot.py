"""Point-in-time copies of a user's cart.

A snapshot is taken when a payment is initiated and travels inside the
payment's metadata, so later cart edits cannot change what was charged.

Cart hash
---------
The hash lets the storefront correlate payment attempts with the cart state
they were made for. It must match what the browser client computes:

1. Encode the lines as compact JSON ``[{"id":1,"q":2,"p":2500}, ...]`` with
   numbers written the way JavaScript writes them (``2500``, ``2500.5``).
2. Run djb2-xor over the UTF-16 code units of that string:
   ``h = 5381; h = int32(h * 33) ^ unit``.
3. Return ``"ch_" + base36(uint32(h))``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .errors import IntegrityViolation
from .models import Cart, CartItem

CENT = Decimal("0.01")


def money(value) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class SnapshotItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    product_name: str = ""
    unit_price: Decimal
    quantity: int = Field(gt=0)

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class CartSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: Tuple[SnapshotItem, ...] = ()
    cart_total: Decimal = Decimal("0.00")
    cart_hash: Optional[str] = None
    taken_at: Optional[datetime] = None

    @classmethod
    def from_items(cls, items: Iterable[SnapshotItem]) -> "CartSnapshot":
        items = tuple(items)
        total = money(sum((i.line_total for i in items), Decimal("0")))
        return cls(
            items=items,
            cart_total=total,
            cart_hash=cart_hash(items) if items else None,
            taken_at=datetime.now(timezone.utc),
        )

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class StockDemand:
    product_id: int
    quantity: int


# ---------- hashing ----------

def _js_number(value) -> str:
    d = Decimal(value)
    if d == d.to_integral_value():
        return str(int(d))
    return format(d.normalize(), "f")


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def _hash_payload(items: Iterable[SnapshotItem]) -> str:
    parts = [
        '{"id":%d,"q":%d,"p":%s}' % (i.product_id, i.quantity, _js_number(i.unit_price))
        for i in items
    ]
    return "[" + ",".join(parts) + "]"


def cart_hash(items: Iterable[SnapshotItem]) -> str:
    payload = _hash_payload(items).encode("utf-16-le")
    h = 5381
    for k in range(0, len(payload), 2):
        unit = payload[k] | (payload[k + 1] << 8)
        h = _int32(h * 33) ^ unit
    return "ch_" + _base36(h & 0xFFFFFFFF)


# ---------- building ----------

def snapshot_from_cart(cart: Optional[Cart]) -> CartSnapshot:
    if cart is None:
        return CartSnapshot()

    items: List[SnapshotItem] = []
    for line in cart.items:
        product = line.product
        if product is None:
            raise IntegrityViolation("cart line references a missing product", cart_item_id=line.id)
        items.append(
            SnapshotItem(
                product_id=product.id,
                product_name=product.name,
                unit_price=money(product.price),
                quantity=int(line.quantity),
            )
        )
    if not items:
        return CartSnapshot()
    return CartSnapshot.from_items(items)


def cart_query(user_id: int, lock: bool = False):
    stmt = (
        select(Cart)
        .where(Cart.user_id == user_id)
        .options(selectinload(Cart.items).selectinload(CartItem.product))
    )
    if lock:
        # a concurrent checkout of the same cart waits here until the first one commits
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return stmt


def load_cart(db: Session, user_id: int, lock: bool = False) -> Optional[Cart]:
    return db.execute(cart_query(user_id, lock=lock)).scalar_one_or_none()


def build_snapshot(db: Session, user_id: int) -> CartSnapshot:
    """Freeze the user's live cart at current product prices. Missing or empty cart gives an empty snapshot."""
    return snapshot_from_cart(load_cart(db, user_id))


def resolve_stock_demands(source: Union[Cart, CartSnapshot, None]) -> List[StockDemand]:
    """One (product, quantity) demand per product, ascending product id, for a live cart or a snapshot."""
    snapshot = source if isinstance(source, CartSnapshot) else snapshot_from_cart(source)

    merged: dict = {}
    for item in snapshot.items:
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    return [StockDemand(product_id=pid, quantity=qty) for pid, qty in sorted(merged.items())]
