import logging
from typing import Dict, List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .cart_snapshot import StockDemand
from .errors import InsufficientStock, IntegrityViolation
from .models import Product

logger = logging.getLogger(__name__)


def reserve_and_decrement(db: Session, demands: Sequence[StockDemand]) -> List[Product]:
    """
    Check and decrement stock for every demand, all or nothing.

    Must run inside the caller's transaction. Rows are locked FOR UPDATE in
    ascending product id order so overlapping checkouts cannot deadlock. When
    any product is short, nothing is decremented and InsufficientStock lists
    every failing line.
    """
    wanted: Dict[int, int] = {}
    for d in demands:
        if d.quantity <= 0:
            raise IntegrityViolation("non-positive stock demand", product_id=d.product_id, quantity=d.quantity)
        wanted[d.product_id] = wanted.get(d.product_id, 0) + d.quantity

    locked: List[Product] = []
    insufficient = []
    for product_id in sorted(wanted):
        product = db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            raise IntegrityViolation("stock demand for a missing product", product_id=product_id)

        available = int(product.stock or 0)
        requested = wanted[product_id]
        if available < requested:
            insufficient.append(
                {"product_id": product_id, "available": available, "requested": requested}
            )
        locked.append(product)

    if insufficient:
        logger.info("stock reservation refused: %s", insufficient)
        raise InsufficientStock(insufficient)

    for product in locked:
        product.stock = int(product.stock) - wanted[product.id]
    db.flush()
    return locked
